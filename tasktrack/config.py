from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from tasktrack.domain.enums import SortDirection, SortKey

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def load_env() -> None:
    env_name = os.getenv("APP_ENV", "development")
    candidates = [Path.cwd(), PROJECT_ROOT]
    for base in candidates:
        env_path = base / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            break

    for base in candidates:
        env_specific = base / f".env.{env_name}"
        if env_specific.exists():
            load_dotenv(env_specific, override=True)
            break


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str = "INFO"
    log_dir: str = "logs"
    refetch_debounce: float = 0.0
    default_sort_key: SortKey = SortKey.DUE_DATE
    default_sort_direction: SortDirection = SortDirection.ASC


def _read_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{PROJECT_ROOT / 'tasktrack.db'}"

    try:
        debounce_ms = int(os.getenv("REFETCH_DEBOUNCE_MS", "0"))
        sort_key = SortKey(os.getenv("DEFAULT_SORT_KEY", SortKey.DUE_DATE.value))
        sort_direction = SortDirection(
            os.getenv("DEFAULT_SORT_DIRECTION", SortDirection.ASC.value)
        )
    except ValueError as exc:
        raise RuntimeError(f"Invalid task tracker setting: {exc}") from exc

    return Settings(
        database_url=database_url,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        refetch_debounce=max(debounce_ms, 0) / 1000,
        default_sort_key=sort_key,
        default_sort_direction=sort_direction,
    )


load_env()

SETTINGS = _read_settings()
