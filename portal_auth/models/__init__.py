from .auth import ROLES, User, UserSession
from .db import Base
from .jobs import JobRun
from .log import AuditLog
from .otp import OtpChallenge, VerificationToken

__all__ = [
	"AuditLog",
	"Base",
	"JobRun",
	"OtpChallenge",
	"ROLES",
	"User",
	"UserSession",
	"VerificationToken",
]
