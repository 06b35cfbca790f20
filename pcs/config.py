from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("PCS_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=lambda: _resolve_home() / "data")
    database_url_override: str = Field(default_factory=lambda: os.getenv("PCS_DATABASE_URL", "").strip())

    base_url: str = Field(default_factory=lambda: os.getenv("PCS_BASE_URL", "http://localhost:8001").rstrip("/"))

    email_api_url: str = Field(default_factory=lambda: os.getenv("PCS_EMAIL_API_URL", "").strip())
    email_api_key: str = Field(default_factory=lambda: os.getenv("PCS_EMAIL_API_KEY", "").strip())
    email_from: str = Field(default_factory=lambda: os.getenv("PCS_EMAIL_FROM", "no-reply@plasticcleverschools.org"))
    notify_max_attempts: int = Field(default_factory=lambda: _env_int("PCS_NOTIFY_MAX_ATTEMPTS", 3))
    notify_backoff_seconds: float = Field(default_factory=lambda: _env_float("PCS_NOTIFY_BACKOFF_SECONDS", 1.0))
    notify_timeout_seconds: float = Field(default_factory=lambda: _env_float("PCS_NOTIFY_TIMEOUT_SECONDS", 15.0))

    reconcile_workers: int = Field(default_factory=lambda: _env_int("PCS_RECONCILE_WORKERS", 8))
    write_attempts: int = Field(default_factory=lambda: _env_int("PCS_WRITE_ATTEMPTS", 5))

    @property
    def database_path(self) -> Path:
        return self.data_dir / "pcs.db"

    @property
    def database_url(self) -> str:
        return self.database_url_override or f"sqlite:///{self.database_path}"

    def certificate_url(self, certificate_id: int) -> str:
        return f"{self.base_url}/api/certificates/{certificate_id}/download"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
