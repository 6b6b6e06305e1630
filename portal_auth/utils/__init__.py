from .clock import as_utc, seconds_until, utcnow
from .diff import extract_changed_values
from .tokens import digests_match, generate_otp_code, generate_token, hash_token
from .validation import (
    is_otp_code,
    is_token_shaped,
    normalize_email,
    normalize_username,
    password_problem,
)

__all__ = [
    "as_utc",
    "digests_match",
    "extract_changed_values",
    "generate_otp_code",
    "generate_token",
    "hash_token",
    "is_otp_code",
    "is_token_shaped",
    "normalize_email",
    "normalize_username",
    "password_problem",
    "seconds_until",
    "utcnow",
]
