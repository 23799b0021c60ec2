"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "run-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    app_base_url: str = "https://app.example.com"
    database_url: str = ""

    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    bedrock_api_key: str = ""
    bedrock_base_url_template: str = "https://bedrock-runtime.{region}.amazonaws.com"
    model_timeout_s: float = Field(default=60.0, ge=0.5)
    model_max_attempts: int = Field(default=5, ge=1)
    model_retry_backoff_s: float = Field(default=0.5, ge=0.0)
    default_context_window: int = Field(default=100_000, ge=1_000)

    rate_limit_per_minute: int = Field(default=800_000, ge=1)
    rate_limit_per_hour: int = Field(default=8_000_000, ge=1)

    tool_max_concurrency: int = Field(default=8, ge=1)
    summarization_threshold_chars: int = Field(default=10_000, ge=1)
    tool_search_limit: int = Field(default=30, ge=1)
    cluster_settings_ttl_s: float = Field(default=120.0, ge=0.0)
    job_poll_timeout_s: float = Field(default=5.0, ge=0.0)
    enable_knowledgebase: bool = False
    enable_tool_vector_search: bool = False
    chroma_path: str = str(PROJECT_ROOT / "data" / "chroma")

    queue_concurrency: int = Field(default=5, ge=1)
    queue_poll_interval_s: float = Field(default=1.0, ge=0.0)
    queue_visibility_timeout_s: float = Field(default=300.0, ge=1.0)
    max_process_lock_attempts: int = Field(default=5, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="RUN_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
        protected_namespaces=(),
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")

    def resolved_bedrock_api_key(self) -> str:
        return self.bedrock_api_key or os.getenv("AWS_BEARER_TOKEN_BEDROCK", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
