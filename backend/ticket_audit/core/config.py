"""Application configuration."""
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = Field(default="ticket-audit", validation_alias="APP_NAME")
    environment: str = Field(default="dev", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: Literal["json", "text"] = Field(default="json", validation_alias="LOG_FORMAT")

    artifacts_path: Path = Field(default=Path("artifacts"), validation_alias="ARTIFACTS_PATH")

    llm_api_key: str | None = Field(default=None, validation_alias="LLM_API_KEY")
    llm_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="LLM_BASE_URL")
    llm_model: str = Field(default="gpt-5-mini-2025-08-07", validation_alias="LLM_MODEL")
    llm_timeout_seconds: float = Field(default=60.0, gt=0, validation_alias="LLM_TIMEOUT_SECONDS")
    evaluation_max_completion_tokens: int = Field(
        default=3000, ge=1, validation_alias="EVALUATION_MAX_COMPLETION_TOKENS"
    )
    summary_max_completion_tokens: int = Field(
        default=500, ge=1, validation_alias="SUMMARY_MAX_COMPLETION_TOKENS"
    )

    embedding_provider: Literal["hash", "openai"] = Field(default="hash", validation_alias="EMBEDDING_PROVIDER")
    embedding_model: str = Field(default="text-embedding-3-small", validation_alias="EMBEDDING_MODEL")
    embedding_dimension: int = Field(default=256, ge=8, validation_alias="EMBEDDING_DIMENSION")

    retrieval_semantic_limit: int = Field(default=5, ge=1, validation_alias="RETRIEVAL_SEMANTIC_LIMIT")
    retrieval_mandatory_limit: int = Field(default=5, ge=0, validation_alias="RETRIEVAL_MANDATORY_LIMIT")
    retrieval_total_limit: int = Field(default=8, ge=1, validation_alias="RETRIEVAL_TOTAL_LIMIT")
    retrieval_min_similarity: float = Field(default=0.40, ge=-1, le=1, validation_alias="RETRIEVAL_MIN_SIMILARITY")
    mandatory_default_similarity: float = Field(
        default=0.5, ge=-1, le=1, validation_alias="MANDATORY_DEFAULT_SIMILARITY"
    )
    corpus_cache_ttl_seconds: float = Field(default=300.0, ge=0, validation_alias="CORPUS_CACHE_TTL_SECONDS")

    summary_input_chars: int = Field(default=4000, ge=1, validation_alias="SUMMARY_INPUT_CHARS")
    summary_fallback_chars: int = Field(default=500, ge=1, validation_alias="SUMMARY_FALLBACK_CHARS")
    summary_direct_chars: int = Field(default=500, ge=0, validation_alias="SUMMARY_DIRECT_CHARS")
    summary_min_chars: int = Field(default=50, ge=0, validation_alias="SUMMARY_MIN_CHARS")

    llm_max_retries: int = Field(default=2, ge=0, validation_alias="LLM_MAX_RETRIES")
    llm_retry_delay_seconds: float = Field(default=1.0, ge=0, validation_alias="LLM_RETRY_DELAY_SECONDS")
    prompt_transcript_chars: int = Field(default=1500, ge=1, validation_alias="PROMPT_TRANSCRIPT_CHARS")

    batch_concurrency: int = Field(default=3, ge=1, validation_alias="BATCH_CONCURRENCY")
    progress_buffer_size: int = Field(default=100, ge=1, validation_alias="PROGRESS_BUFFER_SIZE")

    class Config:
        env_prefix = ""
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True

    @property
    def corpus_db_path(self) -> Path:
        return self.artifacts_path / "rule_corpus.sqlite"

    @property
    def evaluations_db_path(self) -> Path:
        return self.artifacts_path / "evaluations.sqlite"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings."""
    return Settings()
