from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

SETTINGS_ENV = "PGCRUD_SETTINGS"
DEFAULT_SETTINGS_FILE = "pgcrud.json"
SUPPORTED_DRIVERS = {"psycopg2"}


@dataclass(frozen=True)
class DataSourceSettings:
    """
    Connection settings for the shared pool.

    ``url`` is anything libpq accepts as a DSN: a keyword string
    ("host=localhost dbname=app") or a URI ("postgresql://localhost/app").
    """
    url: str
    user: Optional[str] = None
    password: Optional[str] = None
    driver: str = "psycopg2"
    capacity: int = 5
    max_slots: int = 50
    acquire_timeout: Optional[float] = None

    def __post_init__(self):
        if not self.url or not str(self.url).strip():
            raise ValueError("Data source settings require a non-empty 'url'.")
        if self.driver not in SUPPORTED_DRIVERS:
            raise ValueError(f"Unsupported driver '{self.driver}'. Supported: {sorted(SUPPORTED_DRIVERS)}")
        if not isinstance(self.capacity, int) or self.capacity <= 0:
            raise ValueError("capacity must be a positive integer.")
        if not isinstance(self.max_slots, int) or self.max_slots < self.capacity:
            raise ValueError("max_slots must be an integer no smaller than capacity.")
        if self.acquire_timeout is not None and self.acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be positive when set.")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DataSourceSettings":
        if not isinstance(payload, dict):
            raise ValueError("Settings payload must be a JSON object.")
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown settings keys: {unknown}")
        return cls(**payload)

    def client_kwargs(self) -> dict[str, Any]:
        return {
            "dsn": self.url,
            "user": self.user,
            "password": self.password,
            "capacity": self.capacity,
            "max_slots": self.max_slots,
            "acquire_timeout": self.acquire_timeout,
        }


def _resolve_settings_path(path: str | Path | None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(SETTINGS_ENV)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_SETTINGS_FILE


def load_settings(path: str | Path | None = None) -> DataSourceSettings:
    """
    Load settings from a JSON file: ``path`` if given, else $PGCRUD_SETTINGS,
    else ./pgcrud.json.
    """
    json_path = _resolve_settings_path(path)
    if not json_path.exists() or not json_path.is_file():
        raise ValueError(f"Settings file not found: {json_path}")
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Failed to parse JSON settings: {json_path}") from exc
    logger.debug("Loaded data source settings from %s", json_path)
    return DataSourceSettings.from_payload(payload)
