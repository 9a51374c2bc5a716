from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import streamlit as st

CONFIG_FILE_NAME = "settings.json"
ENV_DATA_DIR = "FISH_PLANT_DATA_DIR"
ENV_BUSY_TIMEOUT = "FISH_PLANT_BUSY_TIMEOUT"
ENV_RETRY_ATTEMPTS = "FISH_PLANT_RETRY_ATTEMPTS"
ENV_LOG_LEVEL = "FISH_PLANT_LOG_LEVEL"
SESSION_DATA_DIR = "fish_plant_data_dir"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    currency: str = "KES"
    busy_timeout_s: float = 5.0
    retry_attempts: int = 3
    retry_base_delay_s: float = 0.05
    log_level: str = "INFO"


def _default_data_dir() -> Path:
    # Not a hard-coded absolute path: uses the user's home directory.
    return Path.home() / ".fish_plant"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            payload = json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}
    return {}


def _number(raw, default, cast):
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = data_dir / CONFIG_FILE_NAME
    payload = _load_persisted_settings(data_dir)
    payload["data_dir"] = str(data_dir)
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # Update session for immediate effect
    st.session_state[SESSION_DATA_DIR] = str(data_dir)


def load_settings(data_dir: Optional[str | Path] = None) -> Settings:
    # Priority order:
    # 1) Explicit data_dir (session override)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    persisted: dict = {}
    if data_dir:
        resolved = Path(data_dir).expanduser().resolve()
    elif os.getenv(ENV_DATA_DIR):
        resolved = Path(os.getenv(ENV_DATA_DIR, "")).expanduser().resolve()
    else:
        default_dir = _default_data_dir()
        persisted = _load_persisted_settings(default_dir)
        resolved = Path(persisted.get("data_dir", default_dir)).expanduser().resolve()

    resolved.mkdir(parents=True, exist_ok=True)
    if not persisted:
        persisted = _load_persisted_settings(resolved)

    return Settings(
        data_dir=resolved,
        db_path=resolved / "plant.db",
        currency=str(persisted.get("currency", "KES")),
        busy_timeout_s=_number(os.getenv(ENV_BUSY_TIMEOUT, persisted.get("busy_timeout_s")), 5.0, float),
        retry_attempts=_number(os.getenv(ENV_RETRY_ATTEMPTS, persisted.get("retry_attempts")), 3, int),
        retry_base_delay_s=_number(persisted.get("retry_base_delay_s"), 0.05, float),
        log_level=str(os.getenv(ENV_LOG_LEVEL) or persisted.get("log_level") or "INFO").upper(),
    )


def get_settings() -> Settings:
    return _cached_settings(st.session_state.get(SESSION_DATA_DIR))


@st.cache_resource
def _cached_settings(session_dir: Optional[str]) -> Settings:
    return load_settings(session_dir)
