"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """chatmem configuration. All values come from environment variables."""

    # Ownership (bypasses permission checks)
    owner_user_id: str = Field(default="")

    # Database
    database_path: Path = Field(default=Path("data/chatmem.db"))
    store_max_retries: int = Field(default=3)
    store_backoff_seconds: float = Field(default=0.2)

    # Embeddings (OpenAI-compatible /embeddings endpoint)
    embedding_api_url: str = Field(default="https://api.openai.com/v1/embeddings")
    embedding_api_key: str = Field(default="")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimension: int = Field(default=1024)
    embedding_timeout_seconds: float = Field(default=30.0)
    embedding_max_retries: int = Field(default=3)
    embedding_backoff_seconds: float = Field(default=1.0)
    embedding_cache_size: int = Field(default=1000)

    # Anthropic (conversation summaries)
    anthropic_api_key: str = Field(default="")
    summary_model: str = Field(default="claude-haiku-4-5")

    # Short-term context
    short_term_limit: int = Field(default=35)
    session_timeout_seconds: float = Field(default=3600.0)
    sweep_interval_seconds: float = Field(default=600.0)
    history_seed_limit: int = Field(default=35)
    command_prefix: str = Field(default="/")

    # Decision / retrieval thresholds
    memory_decision_threshold: float = Field(default=6.0)
    memory_relevance_threshold: float = Field(default=0.65)
    duplicate_threshold: float = Field(default=0.9)
    consolidation_threshold: float = Field(default=0.85)
    relationship_similarity_threshold: float = Field(default=0.75)
    max_relevant_memories: int = Field(default=8)

    # Feature flags
    enable_auto_transfer: bool = Field(default=True)
    enable_tool_driven_mode: bool = Field(default=False)
    enable_memory_relationships: bool = Field(default=True)
    enable_memory_consolidation: bool = Field(default=False)
    enable_llm_summaries: bool = Field(default=False)
    consolidation_interval_seconds: float = Field(default=21600.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)


settings = Settings()
