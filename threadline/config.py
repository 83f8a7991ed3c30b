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
    """Threadline configuration. All values come from environment variables."""

    # Anthropic
    anthropic_api_key: str = Field(default="")
    chat_model: str = Field(default="claude-sonnet-4-5-20250929")
    summary_model: str = Field(default="claude-haiku-4-5-20251001")
    max_output_tokens: int = Field(default=4096)

    # Database
    database_path: Path = Field(default=Path("data/threadline.db"))

    # Agentic loop
    max_tool_iterations: int = Field(default=5)
    turn_timeout_seconds: float = Field(default=300.0)
    tool_call_timeout_seconds: float = Field(default=60.0)
    default_system_prompt: str = Field(default="")

    # Rolling summary
    summary_threshold: int = Field(default=10)
    summary_batch_size: int = Field(default=10)
    summary_timeout_seconds: float = Field(default=300.0)

    # Remote tool servers
    mcp_request_timeout_seconds: float = Field(default=15.0)

    # Skills catalog
    skills_enabled: bool = Field(default=True)
    skills_repo: str = Field(default="besoeasy/open-skills")
    skills_branch: str = Field(default="main")
    skills_cache_ttl_seconds: int = Field(default=3600)
    skills_fetch_timeout_seconds: float = Field(default=30.0)

    # Per-session memory
    memory_enabled: bool = Field(default=True)
    memory_extraction_timeout_seconds: float = Field(default=60.0)

    # Telegram
    telegram_bot_token: str = Field(default="")
    allowed_user_ids: str = Field(default="")

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

    def get_allowed_user_ids(self) -> set[int]:
        """Parse ALLOWED_USER_IDS into a set of ints."""
        if not self.allowed_user_ids.strip():
            return set()
        return {int(uid.strip()) for uid in self.allowed_user_ids.split(",") if uid.strip()}


settings = Settings()
