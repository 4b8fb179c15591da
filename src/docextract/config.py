"""Configuration management for the document extraction pipeline."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "docextract"
    postgres_password: str = "localdev"
    postgres_db: str = "docextract"

    # LLM provider (OpenAI-compatible endpoint, Ollama by default)
    ollama_host: str = "http://localhost:11434"
    llm_model: str = "llama3.1"
    llm_api_key: str = "ollama"
    llm_temperature: float = 0.2
    llm_max_output_tokens: int = 16384

    # Batching
    max_pages_per_batch: int = 5
    max_concurrent_batches: int = 3

    # Retry policy
    max_attempts: int = 3
    call_timeout_seconds: float = 240.0
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0

    # Progress
    progress_reserve_percent: int = 10

    # Prompting
    max_prompt_examples: int = 1

    # Ingestion
    render_dpi: int = 150
    ocr_language: str = "eng"
    csv_rows_per_page: int = 50

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def llm_base_url(self) -> str:
        """OpenAI-compatible base URL of the LLM endpoint."""
        return self.ollama_host.rstrip("/") + "/v1"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
