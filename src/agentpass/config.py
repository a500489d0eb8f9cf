"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


APP_URL_ENV = "AGENTPASS_APP_URL"
DB_PATH_ENV = "AGENTPASS_DB_PATH"
KEY_PATH_ENV = "AGENTPASS_KEY_PATH"
DEFAULT_CURRENCY_ENV = "AGENTPASS_DEFAULT_CURRENCY"
REVOCATION_FAIL_OPEN_ENV = "AGENTPASS_REVOCATION_FAIL_OPEN"

AGENT_JWT_SECRET_ENV = "AGENT_JWT_SECRET"
AGENT_JWT_RSA_PRIVATE_KEY_ENV = "AGENT_JWT_RSA_PRIVATE_KEY_PEM"
PAYMENT_TOKEN_SECRET_ENV = "PAYMENT_TOKEN_SECRET"
AGENT_ACCESS_TOKEN_EXPIRY_ENV = "AGENT_ACCESS_TOKEN_EXPIRY"
PAYMENT_TOKEN_EXPIRY_ENV = "PAYMENT_TOKEN_EXPIRY"
STEP_UP_EXPIRY_MINUTES_ENV = "STEP_UP_EXPIRY_MINUTES"
DEVICE_CODE_EXPIRY_MINUTES_ENV = "DEVICE_CODE_EXPIRY_MINUTES"
AUTH_CODE_EXPIRY_MINUTES_ENV = "AUTH_CODE_EXPIRY_MINUTES"
DAILY_LIMIT_RESET_TIMEZONE_ENV = "DAILY_LIMIT_RESET_TIMEZONE"
INTROSPECTION_CLIENT_ID_ENV = "INTROSPECTION_CLIENT_ID"
INTROSPECTION_CLIENT_SECRET_ENV = "INTROSPECTION_CLIENT_SECRET"
WEBHOOK_TIMEOUT_ENV = "WEBHOOK_TIMEOUT_SECONDS"

DEFAULT_DATA_DIR = Path.home() / ".agentpass"
DEFAULT_APP_URL = "http://localhost:3000"
DEFAULT_TIMEZONE = "America/Toronto"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class Settings:
    app_url: str = DEFAULT_APP_URL
    db_path: Path = DEFAULT_DATA_DIR / "agentpass.sqlite3"
    key_path: Optional[Path] = None
    jwt_secret: Optional[str] = None
    rsa_private_key_pem_b64: Optional[str] = None
    payment_token_secret: Optional[str] = None
    access_token_expiry: int = 3600
    payment_token_expiry: int = 300
    step_up_expiry_minutes: int = 15
    device_code_expiry_minutes: int = 15
    device_poll_interval: int = 5
    auth_code_expiry_minutes: int = 10
    daily_limit_timezone: str = DEFAULT_TIMEZONE
    introspection_client_id: Optional[str] = None
    introspection_client_secret: Optional[str] = None
    webhook_timeout_seconds: float = 10.0
    revocation_fail_open: bool = True
    default_currency: str = "CAD"

    def __post_init__(self) -> None:
        self.app_url = self.app_url.rstrip("/")
        self.db_path = Path(self.db_path)
        if self.key_path is not None:
            self.key_path = Path(self.key_path)
        try:
            ZoneInfo(self.daily_limit_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(
                f"Unknown timezone for daily limit reset: {self.daily_limit_timezone}"
            ) from exc
        for name in (
            "access_token_expiry",
            "payment_token_expiry",
            "step_up_expiry_minutes",
            "device_code_expiry_minutes",
            "auth_code_expiry_minutes",
        ):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive")

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.daily_limit_timezone)

    @property
    def token_endpoint(self) -> str:
        return f"{self.app_url}/api/agent/v1/oauth/token"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the process environment (or a given mapping)."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}
        if env.get(APP_URL_ENV):
            kwargs["app_url"] = env[APP_URL_ENV]
        if env.get(DB_PATH_ENV):
            kwargs["db_path"] = Path(env[DB_PATH_ENV]).expanduser()
        if env.get(KEY_PATH_ENV):
            kwargs["key_path"] = Path(env[KEY_PATH_ENV]).expanduser()
        if env.get(DEFAULT_CURRENCY_ENV):
            kwargs["default_currency"] = env[DEFAULT_CURRENCY_ENV].upper()
        if env.get(DAILY_LIMIT_RESET_TIMEZONE_ENV):
            kwargs["daily_limit_timezone"] = env[DAILY_LIMIT_RESET_TIMEZONE_ENV]

        kwargs["jwt_secret"] = env.get(AGENT_JWT_SECRET_ENV) or None
        kwargs["rsa_private_key_pem_b64"] = env.get(AGENT_JWT_RSA_PRIVATE_KEY_ENV) or None
        kwargs["payment_token_secret"] = env.get(PAYMENT_TOKEN_SECRET_ENV) or None
        kwargs["introspection_client_id"] = env.get(INTROSPECTION_CLIENT_ID_ENV) or None
        kwargs["introspection_client_secret"] = env.get(INTROSPECTION_CLIENT_SECRET_ENV) or None

        for env_name, field_name in (
            (AGENT_ACCESS_TOKEN_EXPIRY_ENV, "access_token_expiry"),
            (PAYMENT_TOKEN_EXPIRY_ENV, "payment_token_expiry"),
            (STEP_UP_EXPIRY_MINUTES_ENV, "step_up_expiry_minutes"),
            (DEVICE_CODE_EXPIRY_MINUTES_ENV, "device_code_expiry_minutes"),
            (AUTH_CODE_EXPIRY_MINUTES_ENV, "auth_code_expiry_minutes"),
        ):
            raw = env.get(env_name)
            if raw:
                kwargs[field_name] = _parse_int(env_name, raw)

        raw_timeout = env.get(WEBHOOK_TIMEOUT_ENV)
        if raw_timeout:
            try:
                kwargs["webhook_timeout_seconds"] = float(raw_timeout)
            except ValueError as exc:
                raise ValidationError(f"{WEBHOOK_TIMEOUT_ENV} must be a number") from exc

        raw_fail_open = env.get(REVOCATION_FAIL_OPEN_ENV)
        if raw_fail_open:
            kwargs["revocation_fail_open"] = _parse_bool(REVOCATION_FAIL_OPEN_ENV, raw_fail_open)

        return cls(**kwargs)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from exc


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValidationError(f"{name} must be a boolean, got {raw!r}")
