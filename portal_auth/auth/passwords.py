from __future__ import annotations

import secrets
from typing import Any

from passlib.hash import argon2


class PasswordHasher:
    """Salted argon2 hashing with constant-time verification."""

    def __init__(self, **hash_settings: Any) -> None:
        self._scheme = argon2.using(**hash_settings) if hash_settings else argon2
        self._dummy_hash: str | None = None

    def hash(self, plaintext: str) -> str:
        return self._scheme.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str | None) -> bool:
        if not isinstance(plaintext, str) or not password_hash:
            return False
        try:
            return self._scheme.verify(plaintext, password_hash)
        except (ValueError, TypeError):
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash.

        Used when the account is unknown so lookups cost the same either way.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._scheme.hash(secrets.token_hex(16))
        self.verify(plaintext if isinstance(plaintext, str) else "", self._dummy_hash)
