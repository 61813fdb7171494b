from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


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


def _env_number(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        # Keep it permissive: a junk value falls back to the default rather than crashing startup.
        return default


def _env_int_list(name: str) -> list[int]:
    out: list[int] = []
    for part in (os.getenv(name, "") or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            out.append(int(part))
    return out


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
    Env-only config so a deployment only needs `.env`; YAML remains an optional override.

    OTP_CHECK_INTERVAL is accepted in milliseconds (values >= 1000) for compatibility with older
    deployments, otherwise in seconds.
    """
    interval = _env_number("OTP_CHECK_INTERVAL", 10)
    if interval >= 1000:
        interval = interval / 1000
    return {
        "portal": {
            "base_url": os.getenv("IVAS_BASE_URL", "https://www.ivasms.com"),
            "email": os.getenv("IVAS_EMAIL", ""),
            "password": os.getenv("IVAS_PASSWORD", ""),
            "headless": _env_bool("BROWSER_HEADLESS", default=False),
            "browser_executable": os.getenv("BROWSER_EXECUTABLE_PATH", ""),
            "challenge_mode": os.getenv("CHALLENGE_MODE", "polling"),
        },
        "telegram": {
            "bot_token": os.getenv("TELEGRAM_BOT_TOKEN", ""),
            "group_id": os.getenv("TELEGRAM_GROUP_ID", ""),
            "channel_link": os.getenv("CHANNEL_LINK", "https://t.me/yourchannel"),
            "panel_link": os.getenv("PANEL_LINK", ""),
            "menu_enabled": _env_bool("TELEGRAM_MENU", default=True),
            "admin_ids": _env_int_list("ADMIN_IDS"),
        },
        "monitor": {
            "check_interval_s": interval,
        },
        "state": {
            "data_dir": os.getenv("STATE_DIR", "data"),
        },
        "control": {
            "enabled": _env_bool("CONTROL_ENABLED", default=True),
            "port": int(_env_number("PORT", 5000)),
            "admin_password": os.getenv("ADMIN_PASSWORD", ""),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/relay.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Connection and timing settings for the SMS portal.

    All durations are in seconds.
    """

    base_url: str = "https://www.ivasms.com"
    email: str = ""
    password: str = Field(default="", repr=False)

    headless: bool = False
    browser_executable: str = ""
    challenge_mode: Literal["polling", "interactive"] = "polling"

    challenge_timeout_s: float = 40
    challenge_poll_s: float = 2
    login_timeout_s: float = 60
    manual_login_window_s: float = 90
    manual_login_poll_s: float = 3
    auth_timeout_s: float = 300
    request_timeout_s: float = 30
    branch_timeout_s: float = 45
    date_days_back: int = 7

    @model_validator(mode="after")
    def _normalize(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.base_url must be a full URL like 'https://www.ivasms.com'")
        self.base_url = base_url

        for name in (
            "challenge_timeout_s",
            "challenge_poll_s",
            "login_timeout_s",
            "manual_login_window_s",
            "manual_login_poll_s",
            "auth_timeout_s",
            "request_timeout_s",
            "branch_timeout_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"portal.{name} must be positive")
        if self.date_days_back < 0:
            raise ValueError("portal.date_days_back must be >= 0")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    @property
    def sms_page_url(self) -> str:
        return f"{self.base_url}/portal/sms/received"

    @property
    def numbers_page_url(self) -> str:
        return f"{self.base_url}/portal/numbers"


class TelegramConfig(BaseModel):
    bot_token: str = Field(default="", repr=False)
    group_id: str = ""
    channel_link: str = "https://t.me/yourchannel"
    # Defaults to the bot's own t.me link when empty.
    panel_link: str = ""
    # Polls for /start and menu buttons while `run` is active.
    menu_enabled: bool = True
    # Telegram user ids that receive every range as a text file instead of a single number.
    admin_ids: list[int] = Field(default_factory=list)


class MonitorConfig(BaseModel):
    check_interval_s: float = 10
    backoff_s: float = 30
    failure_threshold: int = 5

    @model_validator(mode="after")
    def _validate(self) -> "MonitorConfig":
        if self.check_interval_s <= 0 or self.backoff_s <= 0:
            raise ValueError("monitor intervals must be positive")
        if self.failure_threshold < 1:
            raise ValueError("monitor.failure_threshold must be >= 1")
        return self


class NumbersConfig(BaseModel):
    ttl_s: float = 600
    page_size: int = 500


class StateConfig(BaseModel):
    data_dir: str = "data"

    @property
    def cookies_path(self) -> Path:
        return Path(self.data_dir) / "cookies.json"

    @property
    def otp_history_path(self) -> Path:
        return Path(self.data_dir) / "otp_history.json"

    @property
    def numbers_cache_path(self) -> Path:
        return Path(self.data_dir) / "numbers_cache.json"

    @property
    def known_ranges_path(self) -> Path:
        return Path(self.data_dir) / "known_ranges.json"

    @property
    def debug_dir(self) -> Path:
        return Path(self.data_dir) / "debug"


class ControlConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 5000
    # The cookie-injection and assignment endpoints stay locked while this is empty.
    admin_password: str = Field(default="", repr=False)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/relay.log"


class ServicePattern(BaseModel):
    label: str
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _must_compile(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid service pattern {v!r}: {e}") from e
        return v


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    telegram: TelegramConfig = TelegramConfig()
    monitor: MonitorConfig = MonitorConfig()
    numbers: NumbersConfig = NumbersConfig()
    state: StateConfig = StateConfig()
    control: ControlConfig = ControlConfig()
    logging: LoggingConfig = LoggingConfig()
    # Empty means "use the built-in service table".
    services: list[ServicePattern] = Field(default_factory=list)


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
