from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, Field, field_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Provide a sensible env-only config so most users only need `.env`.

    YAML remains an optional override layered on top of this.
    """
    return {
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "slow_mo_ms": os.getenv("BROWSER_SLOW_MO_MS", "0") or "0",
            "channel": os.getenv("BROWSER_CHANNEL", ""),
        },
        "queue": {
            "max_concurrent": os.getenv("AUTOMATION_MAX_CONCURRENT", "3") or "3",
        },
        "portal": {
            "settle_timeout_ms": os.getenv("PORTAL_SETTLE_TIMEOUT_MS", "10000") or "10000",
        },
        "artifacts": {
            "root_dir": os.getenv("ARTIFACTS_DIR", "data/automation"),
        },
        "stream": {
            "poll_interval_seconds": os.getenv("STREAM_POLL_INTERVAL", "1.0") or "1.0",
        },
        "security": {
            "secret_key": os.getenv("CREDENTIALS_SECRET_KEY", ""),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/automation.log"),
        },
    }


class BrowserConfig(BaseModel):
    """
    Shared browser process + per-user session settings.

    Locale/timezone/viewport/user-agent are fixed for every session so the portal sees a stable client.
    """

    headless: bool = True
    slow_mo_ms: int = 0
    # Optional system browser channel (e.g. "chrome", "msedge") instead of Playwright's bundled Chromium.
    channel: str = ""
    launch_args: list[str] = Field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    locale: str = "es-AR"
    timezone_id: str = "America/Buenos_Aires"
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str = DEFAULT_USER_AGENT
    default_timeout_ms: int = 60_000


class QueueConfig(BaseModel):
    max_concurrent: int = 3

    @field_validator("max_concurrent")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("queue.max_concurrent must be >= 1")
        return v


class PortalConfig(BaseModel):
    settle_timeout_ms: int = 10_000


class ArtifactsConfig(BaseModel):
    root_dir: str = "data/automation"


class StreamConfig(BaseModel):
    poll_interval_seconds: float = 1.0

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("stream.poll_interval_seconds must be > 0")
        return v


class SecurityConfig(BaseModel):
    # Used to derive the AES key that protects stored portal passwords.
    secret_key: str = Field(default="", repr=False)


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/automation.log"


class AppConfig(BaseModel):
    browser: BrowserConfig = BrowserConfig()
    queue: QueueConfig = QueueConfig()
    portal: PortalConfig = PortalConfig()
    artifacts: ArtifactsConfig = ArtifactsConfig()
    stream: StreamConfig = StreamConfig()
    security: SecurityConfig = SecurityConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
