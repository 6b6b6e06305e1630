from __future__ import annotations

from datetime import datetime

from portal_auth.errors import ErrorCode
from portal_auth.logging import log_security_event
from portal_auth.otp import OtpRequestResult, OtpService
from portal_auth.utils import normalize_email, normalize_username, password_problem

from .results import OperationResult, UserResult, failure
from .service import AuthService

RESET_REQUESTED_MESSAGE = (
    "If an applicant account exists with that email or username, a verification code has been sent."
)
_VERIFICATION_FAILED = "Invalid or expired verification. Please start over."


class AccountFlows:
    """Registration and password reset, gated by a redeemed verification token.

    The token is consumed only after the inputs and the target account have
    been checked, so a typo in the new password does not burn the user's
    verification. One gap remains: a username or email taken by a concurrent
    registration between the availability check and the insert surfaces as a
    conflict after the token is spent, and the applicant needs a new code.
    """

    def __init__(self, auth: AuthService, otp: OtpService) -> None:
        self.auth = auth
        self.otp = otp

    def request_password_reset(self, identifier: str, now: datetime | None = None) -> OtpRequestResult:
        """Send a reset code to an applicant account.

        Every well-formed request gets the same answer whether or not the
        account exists; cooldown and delivery problems are only logged.
        """
        if not isinstance(identifier, str) or not identifier.strip():
            return OtpRequestResult(
                success=False,
                error=ErrorCode.VALIDATION_ERROR,
                message="Please enter your email address or username.",
            )
        needle = identifier.strip()
        if normalize_email(needle) is not None:
            user = self.auth.get_user_by_email(needle)
        else:
            user = self.auth.get_user_by_username(needle)

        if user is not None and user.role == "applicant" and user.email:
            result = self.otp.request_otp(user.email, now=now)
            if not result.success:
                log_security_event(
                    "password_reset_request",
                    "failure",
                    result.error.value if result.error else None,
                    {"user_id": user.id, "retry_after": result.retry_after_seconds},
                )
        else:
            log_security_event("password_reset_request", "ignored", "no_applicant_account")

        return OtpRequestResult(success=True, message=RESET_REQUESTED_MESSAGE)

    def complete_password_reset(
        self,
        email: str,
        verification_token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        normalized = normalize_email(email)
        if normalized is None:
            return failure(ErrorCode.VALIDATION_ERROR, "Please provide a valid email address.")
        if not verification_token:
            return failure(ErrorCode.VALIDATION_ERROR, "Verification token is required.")
        problem = password_problem(new_password)
        if problem:
            return failure(ErrorCode.VALIDATION_ERROR, problem)

        # same answer as a bad token, so the account's role is not revealed
        user = self.auth.get_user_by_email(normalized)
        if user is None or user.role != "applicant":
            return failure(ErrorCode.INVALID_OR_EXPIRED_TOKEN, _VERIFICATION_FAILED)

        consumed = self.otp.consume_verification_token(normalized, verification_token, now=now)
        if not consumed.success:
            return failure(ErrorCode.INVALID_OR_EXPIRED_TOKEN, _VERIFICATION_FAILED)
        return self.auth.set_password(user.id, new_password, ip_address=ip_address, user_agent=user_agent, now=now)

    def complete_registration(
        self,
        username: str,
        email: str,
        password: str,
        full_name: str,
        verification_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> UserResult:
        normalized_email = normalize_email(email)
        if normalized_email is None:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Please provide a valid email address.")
        normalized_username = normalize_username(username)
        if normalized_username is None:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Invalid username")
        problem = password_problem(password)
        if problem:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message=problem)
        if not isinstance(full_name, str) or not full_name.strip():
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Full name is required")
        if not verification_token:
            return UserResult(success=False, error=ErrorCode.VALIDATION_ERROR, message="Verification token is required.")
        if self.auth.get_user_by_username(normalized_username) or self.auth.get_user_by_email(normalized_email):
            return UserResult(success=False, error=ErrorCode.CONFLICT, message="Username or email already exists")

        consumed = self.otp.consume_verification_token(normalized_email, verification_token, now=now)
        if not consumed.success:
            return UserResult(success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message=_VERIFICATION_FAILED)

        return self.auth.create_user(
            normalized_username,
            normalized_email,
            password,
            full_name,
            role="applicant",
            is_approved=True,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
