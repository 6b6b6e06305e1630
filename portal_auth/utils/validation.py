from __future__ import annotations

import re

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
OTP_CODE_PATTERN = re.compile(r"^\d{6}$")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256
MAX_EMAIL_LENGTH = 255
MAX_TOKEN_LENGTH = 256


def normalize_email(email: object) -> str | None:
    """Trim and lower-case *email*; ``None`` when it is not a plausible address."""
    if not isinstance(email, str):
        return None
    normalized = email.strip().lower()
    if not normalized or len(normalized) > MAX_EMAIL_LENGTH:
        return None
    if not EMAIL_PATTERN.match(normalized):
        return None
    return normalized


def normalize_username(username: object) -> str | None:
    if not isinstance(username, str):
        return None
    normalized = username.strip()
    if not USERNAME_PATTERN.match(normalized):
        return None
    return normalized


def password_problem(password: object) -> str | None:
    """Return an error string if the password is unacceptable, else ``None``."""
    if not isinstance(password, str):
        return "Password is required"
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
    return None


def is_otp_code(code: object) -> bool:
    return isinstance(code, str) and bool(OTP_CODE_PATTERN.match(code))


def is_token_shaped(token: object) -> bool:
    return isinstance(token, str) and 0 < len(token) <= MAX_TOKEN_LENGTH
