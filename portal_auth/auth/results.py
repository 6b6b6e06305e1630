from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from portal_auth.errors import ErrorCode
from portal_auth.models import User


@dataclass(frozen=True)
class UserView:
    """A user record safe to hand to callers: no password hash."""

    id: int
    username: str
    email: str | None
    full_name: str
    role: str
    is_active: bool
    is_approved: bool
    is_first_login: bool
    last_login: datetime | None
    password_changed_at: datetime | None
    created_by: int | None
    created_at: datetime | None
    updated_at: datetime | None

    @staticmethod
    def from_model(user: User) -> "UserView":
        return UserView(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            is_active=bool(user.is_active),
            is_approved=bool(user.is_approved),
            is_first_login=bool(user.is_first_login),
            last_login=user.last_login,
            password_changed_at=user.password_changed_at,
            created_by=user.created_by,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@dataclass(frozen=True)
class LoginResult:
    success: bool
    user: UserView | None = None
    token: str | None = None
    expires_at: datetime | None = None
    error: ErrorCode | None = None
    message: str | None = None
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class UserResult:
    success: bool
    user: UserView | None = None
    error: ErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error: ErrorCode | None = None
    message: str | None = None


def failure(error: ErrorCode, message: str) -> OperationResult:
    return OperationResult(success=False, error=error, message=message)


OK = OperationResult(success=True)
