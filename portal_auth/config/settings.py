"""Environment-backed application settings with strict validation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = ("DATABASE_URL",)

_INT_DEFAULTS = {
    "SESSION_TTL_SECONDS": 24 * 60 * 60,
    "MAX_FAILED_LOGINS": 5,
    "LOCKOUT_MINUTES": 30,
    "OTP_CODE_TTL_SECONDS": 10 * 60,
    "OTP_RESEND_COOLDOWN_SECONDS": 60,
    "OTP_MAX_ATTEMPTS": 5,
    "VERIFICATION_TOKEN_TTL_SECONDS": 15 * 60,
    "CLEANUP_INTERVAL_SECONDS": 60 * 60,
}


def _read_env_var(name: str, env: Mapping[str, str | None]) -> str:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return str(value)


def _read_optional(name: str, env: Mapping[str, str | None], default: str | None = None) -> str | None:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip()


def _read_positive_int(name: str, env: Mapping[str, str | None]) -> int:
    raw = _read_optional(name, env)
    if raw is None:
        return _INT_DEFAULTS[name]
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer") from None
    if value <= 0:
        raise RuntimeError(f"Environment variable {name} must be positive")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str
    app_env: str = "development"
    session_ttl_seconds: int = _INT_DEFAULTS["SESSION_TTL_SECONDS"]
    max_failed_logins: int = _INT_DEFAULTS["MAX_FAILED_LOGINS"]
    lockout_minutes: int = _INT_DEFAULTS["LOCKOUT_MINUTES"]
    otp_code_ttl_seconds: int = _INT_DEFAULTS["OTP_CODE_TTL_SECONDS"]
    otp_resend_cooldown_seconds: int = _INT_DEFAULTS["OTP_RESEND_COOLDOWN_SECONDS"]
    otp_max_attempts: int = _INT_DEFAULTS["OTP_MAX_ATTEMPTS"]
    verification_token_ttl_seconds: int = _INT_DEFAULTS["VERIFICATION_TOKEN_TTL_SECONDS"]
    cleanup_interval_seconds: int = _INT_DEFAULTS["CLEANUP_INTERVAL_SECONDS"]
    mail_api_url: str | None = None
    mail_api_token: str | None = None
    mail_from: str = "no-reply@portal.local"
    portal_name: str = "Case Portal"


def load_settings(env: Mapping[str, str | None] | None = None) -> Settings:
    """Load and validate environment variables into a Settings object."""
    source_env = os.environ if env is None else env

    missing = [key for key in REQUIRED_ENV_VARS if not str(source_env.get(key) or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    app_env = str(source_env.get("APP_ENV", "development")).strip() or "development"

    settings = Settings(
        database_url=_read_env_var("DATABASE_URL", source_env),
        app_env=app_env,
        session_ttl_seconds=_read_positive_int("SESSION_TTL_SECONDS", source_env),
        max_failed_logins=_read_positive_int("MAX_FAILED_LOGINS", source_env),
        lockout_minutes=_read_positive_int("LOCKOUT_MINUTES", source_env),
        otp_code_ttl_seconds=_read_positive_int("OTP_CODE_TTL_SECONDS", source_env),
        otp_resend_cooldown_seconds=_read_positive_int("OTP_RESEND_COOLDOWN_SECONDS", source_env),
        otp_max_attempts=_read_positive_int("OTP_MAX_ATTEMPTS", source_env),
        verification_token_ttl_seconds=_read_positive_int("VERIFICATION_TOKEN_TTL_SECONDS", source_env),
        cleanup_interval_seconds=_read_positive_int("CLEANUP_INTERVAL_SECONDS", source_env),
        mail_api_url=_read_optional("MAIL_API_URL", source_env),
        mail_api_token=_read_optional("MAIL_API_TOKEN", source_env),
        mail_from=_read_optional("MAIL_FROM", source_env, "no-reply@portal.local"),
        portal_name=_read_optional("PORTAL_NAME", source_env, "Case Portal"),
    )

    logger.info("Loaded application settings for env=%s", settings.app_env)
    return settings
