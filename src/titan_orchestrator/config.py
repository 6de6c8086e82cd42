# src/titan_orchestrator/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time.
- An unconfigured backend is a valid state: tasks are refused at execute time,
  the app still starts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "TITAN"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Global switches ----
    console_enabled: bool
    offline_mode: bool
    save_history: bool

    # ---- Inference backend (OpenAI-compatible) ----
    openai_api_key: str | None
    openai_base_url: str
    llm_models: list[str]
    temperature: float
    max_tokens: int
    first_token_timeout_seconds: float
    read_timeout_seconds: float
    connect_timeout_seconds: float

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path
    export_path: Path

    # ---- Retention ----
    retention_days: int
    sweep_interval_seconds: float

    extra_headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        return self.offline_mode or bool((self.openai_api_key or "").strip())

    @staticmethod
    def from_env() -> Settings:
        app_name = _env(_k("APP_NAME"), "titan") or "titan"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)
        offline_mode = _env_bool(_k("OFFLINE_MODE"), False)
        save_history = _env_bool(_k("SAVE_HISTORY"), True)

        openai_api_key = _first_env(_k("OPENAI_API_KEY"), "OPENAI_API_KEY", default=None)
        openai_base_url = _env(_k("OPENAI_BASE_URL"), "https://api.openai.com/v1")
        llm_models = _env_list(_k("LLM_MODELS"), ["gpt-4o-mini"])
        temperature = _env_float(_k("LLM_TEMPERATURE"), 0.7)
        max_tokens = _env_int(_k("LLM_MAX_TOKENS"), 4000)

        first_token = _env_float(_k("LLM_FIRST_TOKEN_TIMEOUT_SECONDS"), 20.0)
        read_timeout = _env_float(_k("LLM_READ_TIMEOUT_SECONDS"), 25.0)
        connect_timeout = _env_float(_k("LLM_CONNECT_TIMEOUT_SECONDS"), 5.0)
        # keep read >= first_token as a sane baseline
        read_timeout = max(read_timeout, first_token)

        http_referer = _env(_k("HTTP_REFERER"), "")
        extra_headers = {"X-Title": _env(_k("APP_TITLE"), app_name)}
        if http_referer:
            extra_headers["HTTP-Referer"] = http_referer

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/titan"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")
        export_path = _env_path(_k("EXPORT_PATH"), data_dir / "tasks_export.json")

        retention_days = max(1, _env_int(_k("RETENTION_DAYS"), 7))
        sweep_interval_seconds = max(1.0, _env_float(_k("SWEEP_INTERVAL_SECONDS"), 300.0))

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            offline_mode=offline_mode,
            save_history=save_history,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            llm_models=llm_models,
            temperature=temperature,
            max_tokens=max_tokens,
            first_token_timeout_seconds=first_token,
            read_timeout_seconds=read_timeout,
            connect_timeout_seconds=connect_timeout,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            export_path=export_path,
            retention_days=retention_days,
            sweep_interval_seconds=sweep_interval_seconds,
            extra_headers=extra_headers,
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
