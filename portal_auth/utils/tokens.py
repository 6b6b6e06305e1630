from __future__ import annotations

import hashlib
import hmac
import secrets

OTP_LENGTH = 6


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    """Zero-padded numeric code drawn from the OS CSPRNG."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_token(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def digests_match(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("ascii"), right.encode("ascii"))
