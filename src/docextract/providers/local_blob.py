"""Filesystem-backed blob store."""

import hashlib
from pathlib import Path
from typing import Optional, Union


class LocalBlobStore:
    """BlobStore that keeps objects as files under a root directory.

    Keys are ``/``-separated relative paths and may not escape the root.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Blob key escapes store root: {key!r}")
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get_object(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def get_file_as_string(self, key: str) -> str:
        # utf-8-sig drops the BOM spreadsheet exports prepend
        return self._path(key).read_text(encoding="utf-8-sig")

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def put_file(self, file_path: Union[str, Path], key: Optional[str] = None) -> str:
        """Copy a local file into the store.

        Defaults to ``uploads/<hash prefix>/<filename>`` so identical
        uploads share one object.
        """
        file_path = Path(file_path)
        data = file_path.read_bytes()
        if key is None:
            digest = hashlib.sha256(data).hexdigest()
            key = f"uploads/{digest[:16]}/{file_path.name}"
        return self.put_object(key, data)
