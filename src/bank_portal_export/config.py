from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .models import Credentials


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_INSTITUTION_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


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


def _derive_institution_from_login_url(login_url: str) -> str:
    parsed = urlparse(login_url)
    host = (parsed.netloc or parsed.path or "").strip().lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    labels = [x for x in host.split(".") if x and x != "www"]
    # e.g. "www.max.co.il" -> "max", "online.examplebank.com" -> "online"
    return labels[0] if labels else host


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
        return default


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
    Env-only config so most users only need `.env`. YAML remains an optional override.
    """
    return {
        "portal": {
            "login_url": os.getenv("BANK_LOGIN_URL", ""),
            "institution": os.getenv("BANK_INSTITUTION_ID", ""),
            "username": os.getenv("BANK_USERNAME", ""),
            "password": os.getenv("BANK_PASSWORD", ""),
            "mfa_method": os.getenv("BANK_MFA_METHOD", "manual"),
        },
        "totp": {
            "secret": os.getenv("MFA_TOTP_SECRET", ""),
        },
        "imap": {
            "host": os.getenv("MFA_IMAP_HOST", "imap.gmail.com"),
            "port": _env_int("MFA_IMAP_PORT", 993),
            "user": os.getenv("MFA_IMAP_USER", ""),
            "app_password": os.getenv("MFA_IMAP_APP_PASSWORD", ""),
            "folder": os.getenv("MFA_IMAP_FOLDER", "INBOX"),
            "sender_hint": os.getenv("MFA_IMAP_SENDER_HINT", ""),
            "subject_hint": os.getenv("MFA_IMAP_SUBJECT_HINT", ""),
            "code_regex": os.getenv("MFA_IMAP_CODE_REGEX", r"\b(\d{4,8})\b"),
        },
        "code_file": {
            "path": os.getenv("MFA_CODE_FILE", ""),
        },
        "browser": {
            "headless": not _env_bool("BROWSER_HEADFUL", default=False),
            "slow_mo_ms": _env_int("BROWSER_SLOW_MO_MS", 0),
            "storage_state_path": os.getenv("BROWSER_STORAGE_STATE", ""),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "timeouts": {
            "navigation_ms": _env_int("NAVIGATION_TIMEOUT_MS", 30_000),
            "mfa_manual_seconds": _env_int("MFA_MANUAL_TIMEOUT_SECONDS", 120),
        },
        "export": {
            "out_dir": os.getenv("EXPORT_DIR", "data/exports"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/export.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Where and how to log in.

    `institution` is a short slug used for file names and session isolation; if empty it is derived from
    the login URL host.
    """

    login_url: str
    institution: str = ""
    username: str
    password: str = Field(repr=False)
    mfa_method: Literal["manual", "totp", "email", "file"] = "manual"

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        login_url = (self.login_url or "").strip()
        parsed = urlparse(login_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.login_url must be a full URL like 'https://bank.example.com/login'")

        institution = (self.institution or "").strip().lower()
        if not institution:
            institution = _derive_institution_from_login_url(login_url)
        if not _INSTITUTION_SLUG_RE.match(institution):
            raise ValueError(
                "portal.institution must be a slug like 'max' (lowercase letters, numbers, hyphen only)"
            )

        self.login_url = login_url
        self.institution = institution
        return self

    def credentials(self) -> Credentials:
        return Credentials(username=self.username, secret=self.password, institution=self.institution)


class TotpConfig(BaseModel):
    secret: str = Field(default="", repr=False)
    digits: int = 6
    interval: int = 30


class ImapCodeConfig(BaseModel):
    host: str = "imap.gmail.com"
    port: int = 993
    user: str = ""
    app_password: str = Field(default="", repr=False)
    folder: str = "INBOX"
    sender_hint: str = ""
    subject_hint: str = ""
    code_regex: str = r"\b(\d{4,8})\b"
    timeout_seconds: int = 120
    poll_interval_seconds: int = 5


class CodeFileConfig(BaseModel):
    path: str = ""


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0
    storage_state_path: str = ""
    debug_dir: str = "data/debug"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    viewport_width: int = 1280
    viewport_height: int = 720
    accept_language: str = "en-US,en;q=0.9"


class TimeoutsConfig(BaseModel):
    navigation_ms: int = 30_000
    settle_ms: int = 10_000
    probe_ms: int = 3_000
    verify_probe_ms: int = 5_000
    submit_probe_ms: int = 2_000
    mfa_manual_seconds: int = 120
    mfa_min_code_length: int = 4
    table_settle_ms: int = 2_000


class ExportConfig(BaseModel):
    out_dir: str = "data/exports"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/export.log"


class AppConfig(BaseModel):
    portal: PortalConfig
    totp: TotpConfig = TotpConfig()
    imap: ImapCodeConfig = ImapCodeConfig()
    code_file: CodeFileConfig = CodeFileConfig()
    browser: BrowserConfig = BrowserConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    export: ExportConfig = ExportConfig()
    logging: LoggingConfig = LoggingConfig()
    # Optional overrides for candidate selector lists, keyed by PortalSelectors field name.
    selectors: dict[str, Union[str, list[str]]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_mfa_source(self) -> "AppConfig":
        method = self.portal.mfa_method
        if method == "totp" and not self.totp.secret:
            raise ValueError("portal.mfa_method=totp requires totp.secret (MFA_TOTP_SECRET)")
        if method == "email" and not (self.imap.user and self.imap.app_password):
            raise ValueError("portal.mfa_method=email requires imap.user and imap.app_password")
        if method == "file" and not self.code_file.path:
            raise ValueError("portal.mfa_method=file requires code_file.path (MFA_CODE_FILE)")
        return self


def load_config(path: Union[str, Path, None]) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)


def selector_overrides(cfg: Optional[AppConfig]) -> dict[str, tuple[str, ...]]:
    if cfg is None:
        return {}
    out: dict[str, tuple[str, ...]] = {}
    for key, value in cfg.selectors.items():
        items = [value] if isinstance(value, str) else list(value)
        items = [s.strip() for s in items if s and s.strip()]
        if items:
            out[key] = tuple(items)
    return out
