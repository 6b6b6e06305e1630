from .flows import AccountFlows
from .passwords import PasswordHasher
from .results import LoginResult, OperationResult, UserResult, UserView
from .service import ASSIGNABLE_ROLES, AuthService, build_auth_service
from .sessions import SessionStore

__all__ = [
    "ASSIGNABLE_ROLES",
    "AccountFlows",
    "AuthService",
    "LoginResult",
    "OperationResult",
    "PasswordHasher",
    "SessionStore",
    "UserResult",
    "UserView",
    "build_auth_service",
]
