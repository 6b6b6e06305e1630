from .mailer import HttpMailSender, MailSender
from .service import (
    OtpConsumeResult,
    OtpRequestResult,
    OtpService,
    OtpVerificationResult,
    build_otp_service,
)
from .stores import OtpChallengeStore, VerificationTokenStore

__all__ = [
    "HttpMailSender",
    "MailSender",
    "OtpChallengeStore",
    "OtpConsumeResult",
    "OtpRequestResult",
    "OtpService",
    "OtpVerificationResult",
    "VerificationTokenStore",
    "build_otp_service",
]
