"""Tests for the command line interface."""

import json

from typer.testing import CliRunner

from docextract.cli import app, load_schema_file

runner = CliRunner()


class TestLoadSchemaFile:
    def test_bare_property_list(self, tmp_path, property_list):
        path = tmp_path / "materials.json"
        path.write_text(json.dumps(property_list))
        schema = load_schema_file(path)
        assert schema.name == "materials"
        assert list(schema.compiled.root.properties)[0] == "itemCode"

    def test_full_definition(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text(
            json.dumps(
                {
                    "name": "Orders",
                    "properties": [{"name": "orderNo", "type": "string", "required": True}],
                    "examples": [{"orderNo": "4711"}],
                    "prompt": "One record per order.",
                }
            )
        )
        schema = load_schema_file(path)
        assert schema.name == "Orders"
        assert schema.examples == [{"orderNo": "4711"}]
        assert schema.prompt == "One record per order."


class TestCommands:
    def test_compile_writes_json_schema(self, tmp_path, property_list):
        source = tmp_path / "materials.json"
        source.write_text(json.dumps(property_list))
        target = tmp_path / "compiled.json"

        result = runner.invoke(app, ["compile", str(source), "--output", str(target)])

        assert result.exit_code == 0, result.output
        compiled = json.loads(target.read_text())
        assert compiled["properties"]["deliveryDate"]["format"] == "date"
        assert compiled["required"] == ["itemCode", "itemName"]

    def test_compile_rejects_invalid_schema(self, tmp_path):
        source = tmp_path / "bad.json"
        source.write_text(json.dumps([{"name": "price", "type": "money"}]))
        result = runner.invoke(app, ["compile", str(source)])
        assert result.exit_code == 1
        assert "Invalid schema" in result.output

    def test_plan(self):
        result = runner.invoke(app, ["plan", "7", "--max-pages", "3"])
        assert result.exit_code == 0, result.output
        assert "3 batch(es)" in result.output
        assert "pages 7-7 of 7" in result.output

    def test_plan_rejects_empty_document(self):
        result = runner.invoke(app, ["plan", "0"])
        assert result.exit_code == 1
