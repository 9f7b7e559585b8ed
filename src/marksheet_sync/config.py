from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, PositiveInt, model_validator

from .extraction.rules import ExtractionRules


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


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


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


def _join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _is_full_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


def _default_config_from_env() -> dict:
    """
    Env-only config so a `.env` file is enough for most setups; YAML stays an optional override.
    """
    return {
        "portal": {
            "base_url": os.getenv("PORTAL_BASE_URL", ""),
            "login_url": os.getenv("PORTAL_LOGIN_URL", ""),
            "session_check_url": os.getenv("PORTAL_SESSION_CHECK_URL", ""),
            "records_url": os.getenv("PORTAL_RECORDS_URL", ""),
            "username": os.getenv("PORTAL_USERNAME", ""),
            "password": os.getenv("PORTAL_PASSWORD", ""),
        },
        "timing": {
            "navigation_timeout_ms": _env_int("NAVIGATION_TIMEOUT_MS", 30_000),
            "page_load_wait_ms": _env_int("PAGE_LOAD_WAIT_MS", 2_000),
            "login_field_timeout_ms": _env_int("LOGIN_FIELD_TIMEOUT_MS", 15_000),
            "challenge_timeout_ms": _env_int("CHALLENGE_TIMEOUT_MS", 120_000),
            "challenge_poll_interval_ms": _env_int("CHALLENGE_POLL_INTERVAL_MS", 2_000),
            "stabilization_max_wait_ms": _env_int("STABILIZATION_MAX_WAIT_MS", 90_000),
            "stabilization_poll_interval_ms": _env_int("STABILIZATION_POLL_INTERVAL_MS", 2_000),
            "stabilization_required_stable_polls": _env_int("STABILIZATION_REQUIRED_STABLE_POLLS", 3),
            "typing_delay_ms": _env_int("TYPING_DELAY_MS", 50),
        },
        "browser": {
            "headless": _env_bool("HEADLESS", default=True),
            "slow_mo_ms": _env_int("SLOW_MO_MS", 0),
            "cookies_path": os.getenv("COOKIES_PATH", "data/cookies.json"),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
            "step_debug": _env_bool("STEP_DEBUG", default=False),
        },
        "persistence": {
            "fallback_student_id": os.getenv("FALLBACK_STUDENT_ID", "unknown-student"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/marksheet.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/scrape.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Where the portal lives and how to log into it.

    Only `base_url` is required; the login, session-check and records pages default to the
    usual ASP.NET page names under it. Set them explicitly if your portal differs.
    """

    base_url: str = ""
    login_url: str = ""
    session_check_url: str = ""
    records_url: str = ""
    username: str
    password: str = Field(repr=False)
    # Lower-cased URL fragments that only appear inside the authenticated area.
    authenticated_url_patterns: tuple[str, ...] = ("dashboard", "home.aspx", "marksheet")

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        if not base_url:
            if not (self.login_url and self.session_check_url and self.records_url):
                raise ValueError("portal.base_url is required unless login_url, session_check_url and records_url are all set")
        elif not _is_full_url(base_url):
            raise ValueError("portal.base_url must be a full URL like 'https://mis.example.ac'")

        self.base_url = base_url
        self.login_url = (self.login_url or "").strip() or _join_url(base_url, "Login.aspx")
        self.session_check_url = (self.session_check_url or "").strip() or _join_url(base_url, "Home.aspx")
        self.records_url = (self.records_url or "").strip() or _join_url(base_url, "Marksheet.aspx")

        for name in ("login_url", "session_check_url", "records_url"):
            if not _is_full_url(getattr(self, name)):
                raise ValueError(f"portal.{name} must be a full URL")

        if not self.username or not self.password:
            raise ValueError("portal.username and portal.password are required (PORTAL_USERNAME / PORTAL_PASSWORD)")
        self.authenticated_url_patterns = tuple(p.strip().lower() for p in self.authenticated_url_patterns if p.strip())
        return self


class TimingConfig(BaseModel):
    navigation_timeout_ms: PositiveInt = 30_000
    page_load_wait_ms: PositiveInt = 2_000
    login_field_timeout_ms: PositiveInt = 15_000
    challenge_timeout_ms: PositiveInt = 120_000
    challenge_poll_interval_ms: PositiveInt = 2_000
    stabilization_max_wait_ms: PositiveInt = 90_000
    stabilization_poll_interval_ms: PositiveInt = 2_000
    stabilization_required_stable_polls: PositiveInt = 3
    typing_delay_ms: int = 50


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0
    cookies_path: str = "data/cookies.json"
    debug_dir: str = "data/debug"
    step_debug: bool = False
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )


class PersistenceConfig(BaseModel):
    # Used when the page yields no usable registration number. Every such run lands under this one key.
    fallback_student_id: str = "unknown-student"
    not_available_values: tuple[str, ...] = ("", "n/a", "na", "-", "none", "null")
    placeholder_text: str = "N/A"
    null_numeric_default: int = 0
    on_conflict: Literal["skip", "update"] = "skip"

    @model_validator(mode="after")
    def _validate_fallback(self) -> "PersistenceConfig":
        if not (self.fallback_student_id or "").strip():
            raise ValueError("persistence.fallback_student_id must not be empty")
        return self


class StateConfig(BaseModel):
    db_path: str = "data/marksheet.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/scrape.log"


class AppConfig(BaseModel):
    portal: PortalConfig
    timing: TimingConfig = TimingConfig()
    browser: BrowserConfig = BrowserConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()
    extraction: ExtractionRules = Field(default_factory=ExtractionRules)


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
