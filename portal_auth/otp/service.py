from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from portal_auth.config import Settings
from portal_auth.errors import ErrorCode
from portal_auth.logging import get_logger, log_security_event
from portal_auth.utils import (
    as_utc,
    digests_match,
    generate_otp_code,
    generate_token,
    hash_token,
    is_otp_code,
    is_token_shaped,
    normalize_email,
    utcnow,
)

from .mailer import HttpMailSender, MailSender
from .stores import OtpChallengeStore, VerificationTokenStore

logger = get_logger("otp")


@dataclass(frozen=True)
class OtpRequestResult:
    success: bool
    expires_at: datetime | None = None
    retry_after_seconds: int | None = None
    error: ErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True)
class OtpVerificationResult:
    success: bool
    verification_token: str | None = None
    remaining_attempts: int | None = None
    error: ErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True)
class OtpConsumeResult:
    success: bool
    error: ErrorCode | None = None
    message: str | None = None


_INVALID_EMAIL = "Please provide a valid email address"
_NO_CHALLENGE = "No active verification code. Please request a new one."


class OtpService:
    """Email one-time codes and the single-use tokens they unlock.

    Per email there is at most one challenge. A correct code deletes it and
    mints a verification token; a wrong code spends one attempt. An
    exhausted challenge stays in place until it expires so the resend
    cooldown keeps applying, but it no longer accepts codes.
    """

    def __init__(
        self,
        session: Session,
        mail_sender: MailSender,
        code_ttl_seconds: int = 10 * 60,
        resend_cooldown_seconds: int = 60,
        max_attempts: int = 5,
        token_ttl_seconds: int = 15 * 60,
        portal_name: str = "Case Portal",
        challenge_store: OtpChallengeStore | None = None,
        token_store: VerificationTokenStore | None = None,
    ) -> None:
        self.session = session
        self.mail_sender = mail_sender
        self.code_ttl_seconds = code_ttl_seconds
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self.max_attempts = max_attempts
        self.token_ttl_seconds = token_ttl_seconds
        self.portal_name = portal_name
        self.challenges = challenge_store or OtpChallengeStore(session)
        self.tokens = token_store or VerificationTokenStore(session)

    def request_otp(self, email: str, now: datetime | None = None) -> OtpRequestResult:
        moment = as_utc(now) or utcnow()
        normalized = normalize_email(email)
        if normalized is None:
            return OtpRequestResult(success=False, error=ErrorCode.VALIDATION_ERROR, message=_INVALID_EMAIL)

        code = generate_otp_code()
        code_hash = hash_token(code)
        try:
            reserved = self.challenges.reserve(
                normalized,
                code_hash,
                moment,
                self.code_ttl_seconds,
                self.resend_cooldown_seconds,
                self.max_attempts,
            )
            if reserved:
                self.session.commit()
            else:
                self.session.rollback()
        except IntegrityError:
            # a concurrent request inserted the row first
            self.session.rollback()
            reserved = False
        except SQLAlchemyError:
            self.session.rollback()
            raise

        if not reserved:
            retry_after = self.challenges.retry_after(normalized, moment, self.resend_cooldown_seconds)
            log_security_event("otp_request", "failure", "cooldown", {"email": normalized})
            return OtpRequestResult(
                success=False,
                retry_after_seconds=retry_after,
                error=ErrorCode.RATE_LIMITED,
                message=f"Please wait {retry_after} seconds before requesting a new code",
            )

        expires_at = moment + timedelta(seconds=self.code_ttl_seconds)
        subject, body = self._compose(code, expires_at)
        if not self._deliver(normalized, subject, body):
            self._release(normalized, code_hash)
            log_security_event("otp_request", "failure", "delivery_failed", {"email": normalized})
            return OtpRequestResult(
                success=False,
                error=ErrorCode.DELIVERY_FAILED,
                message="Failed to send verification code. Please try again.",
            )

        log_security_event("otp_request", "success", None, {"email": normalized})
        return OtpRequestResult(
            success=True,
            expires_at=expires_at,
            retry_after_seconds=self.resend_cooldown_seconds,
        )

    def verify_otp(self, email: str, code: str, now: datetime | None = None) -> OtpVerificationResult:
        moment = as_utc(now) or utcnow()
        normalized = normalize_email(email)
        if normalized is None:
            return OtpVerificationResult(success=False, error=ErrorCode.VALIDATION_ERROR, message=_INVALID_EMAIL)

        challenge = self.challenges.get_active(normalized, moment)
        if challenge is None:
            return OtpVerificationResult(
                success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message=_NO_CHALLENGE
            )
        challenge_id = challenge.id
        stored_hash = challenge.code_hash

        candidate = code.strip() if isinstance(code, str) else ""
        if is_otp_code(candidate) and digests_match(hash_token(candidate), stored_hash):
            token = generate_token()
            try:
                claimed = self.challenges.claim(challenge_id, stored_hash, moment)
                if claimed:
                    self.tokens.issue(normalized, hash_token(token), moment, self.token_ttl_seconds)
                    self.session.commit()
                else:
                    self.session.rollback()
            except SQLAlchemyError:
                self.session.rollback()
                raise
            if not claimed:
                return OtpVerificationResult(
                    success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message=_NO_CHALLENGE
                )
            log_security_event("otp_verify", "success", None, {"email": normalized})
            return OtpVerificationResult(success=True, verification_token=token)

        try:
            remaining = self.challenges.charge_attempt(challenge_id, moment)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        if remaining is None:
            return OtpVerificationResult(
                success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message=_NO_CHALLENGE
            )

        log_security_event("otp_verify", "failure", "wrong_code", {"email": normalized, "remaining": remaining})
        if remaining == 0:
            message = "Too many incorrect attempts. Please request a new code."
        else:
            message = f"Incorrect code. {remaining} attempt(s) remaining."
        return OtpVerificationResult(
            success=False,
            remaining_attempts=remaining,
            error=ErrorCode.INVALID_OR_EXPIRED_TOKEN,
            message=message,
        )

    def consume_verification_token(
        self, email: str, token: str, now: datetime | None = None
    ) -> OtpConsumeResult:
        moment = as_utc(now) or utcnow()
        normalized = normalize_email(email)
        if normalized is None or not is_token_shaped(token):
            return OtpConsumeResult(
                success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message="Invalid or expired verification"
            )
        try:
            redeemed = self.tokens.redeem(normalized, hash_token(token), moment)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        if not redeemed:
            log_security_event("otp_token", "failure", "invalid_or_expired", {"email": normalized})
            return OtpConsumeResult(
                success=False, error=ErrorCode.INVALID_OR_EXPIRED_TOKEN, message="Invalid or expired verification"
            )
        log_security_event("otp_token", "success", None, {"email": normalized})
        return OtpConsumeResult(success=True)

    def purge_expired(self, now: datetime | None = None) -> tuple[int, int]:
        """Delete expired challenges and tokens; returns both counts."""
        moment = as_utc(now) or utcnow()
        try:
            challenges = self.challenges.purge_expired(moment)
            tokens = self.tokens.purge_expired(moment)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return challenges, tokens

    def _deliver(self, email: str, subject: str, body: str) -> bool:
        try:
            return bool(self.mail_sender.send(email, subject, body))
        except Exception:
            logger.exception("Mail sender raised while delivering verification code")
            return False

    def _release(self, email: str, code_hash: str) -> None:
        try:
            self.challenges.release(email, code_hash)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _compose(self, code: str, expires_at: datetime) -> tuple[str, str]:
        minutes = max(1, self.code_ttl_seconds // 60)
        subject = f"{self.portal_name} Verification Code"
        body = "\n".join(
            [
                "Dear Applicant,",
                "",
                f"Your {self.portal_name} verification code is: {code}",
                "",
                "For your security:",
                "- Do not share this code with anyone.",
                f"- This code expires in {minutes} minutes.",
                "- If you did not request this code, please ignore this email.",
                "",
                f"Expires at: {expires_at.strftime('%H:%M')} UTC",
                "",
                f"{self.portal_name} Team",
            ]
        )
        return subject, body


def build_otp_service(settings: Settings, session: Session, mail_sender: MailSender | None = None) -> OtpService:
    if mail_sender is None:
        if not settings.mail_api_url:
            raise RuntimeError("MAIL_API_URL must be set to send verification codes")
        mail_sender = HttpMailSender(settings.mail_api_url, settings.mail_api_token, settings.mail_from)
    return OtpService(
        session,
        mail_sender,
        code_ttl_seconds=settings.otp_code_ttl_seconds,
        resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
        max_attempts=settings.otp_max_attempts,
        token_ttl_seconds=settings.verification_token_ttl_seconds,
        portal_name=settings.portal_name,
    )
