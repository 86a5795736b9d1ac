from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _default_data_dir() -> Path:
    override = _env("WISE365_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_name: str = Field(default_factory=lambda: _env("WISE365_DB_NAME", "wise365"))
    onboarding_funnel: str = Field(
        default_factory=lambda: _env("WISE365_ONBOARDING_FUNNEL", "Onboarding Funnel")
    )
    log_level: str = Field(default_factory=lambda: _env("WISE365_LOG_LEVEL", "INFO").upper())

    http_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("WISE365_HTTP_TIMEOUT", "15") or 15)
    )
    user_agent: str = "Wise365Bot/1.0 (+https://wise365.local)"

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))

    completion_keywords: list[str] = Field(default_factory=lambda: ["completed", "finished"])
    default_action_limit: int = 10

    @property
    def database_path(self) -> Path:
        return self.data_dir / f"{self.db_name}.db"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API and MCP entry points."""
    lvl = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, lvl, logging.INFO), format=_LOG_FORMAT)
