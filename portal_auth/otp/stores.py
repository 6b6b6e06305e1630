from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from portal_auth.models import OtpChallenge, VerificationToken
from portal_auth.utils import seconds_until


class OtpChallengeStore:
    """One challenge row per normalized email.

    Every state change is a single conditional statement whose rowcount
    tells the caller whether it won; nothing here commits.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, email: str) -> OtpChallenge | None:
        stmt = select(OtpChallenge).where(OtpChallenge.email == email)
        return self.session.scalars(stmt.execution_options(populate_existing=True)).first()

    def get_active(self, email: str, now: datetime) -> OtpChallenge | None:
        stmt = select(OtpChallenge).where(
            OtpChallenge.email == email,
            OtpChallenge.attempts_remaining > 0,
            OtpChallenge.expires_at > now,
        )
        return self.session.scalars(stmt.execution_options(populate_existing=True)).first()

    def reserve(
        self,
        email: str,
        code_hash: str,
        now: datetime,
        ttl_seconds: int,
        cooldown_seconds: int,
        max_attempts: int,
    ) -> bool:
        """Replace or create the challenge unless the cooldown still holds.

        An existing row is overwritten only when its cooldown has elapsed or
        it has expired. A missing row is inserted; a concurrent insert for the
        same email surfaces as ``IntegrityError`` at flush or commit.
        """
        values = {
            "code_hash": code_hash,
            "attempts_remaining": max_attempts,
            "expires_at": now + timedelta(seconds=ttl_seconds),
            "last_sent_at": now,
        }
        stmt = (
            update(OtpChallenge)
            .where(
                OtpChallenge.email == email,
                or_(
                    OtpChallenge.last_sent_at <= now - timedelta(seconds=cooldown_seconds),
                    OtpChallenge.expires_at <= now,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 1:
            return True
        exists = self.session.scalar(select(OtpChallenge.id).where(OtpChallenge.email == email))
        if exists is not None:
            return False
        self.session.add(OtpChallenge(email=email, **values))
        self.session.flush()
        return True

    def release(self, email: str, code_hash: str) -> int:
        stmt = delete(OtpChallenge).where(OtpChallenge.email == email, OtpChallenge.code_hash == code_hash)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def retry_after(self, email: str, now: datetime, cooldown_seconds: int) -> int:
        last_sent_at = self.session.scalar(select(OtpChallenge.last_sent_at).where(OtpChallenge.email == email))
        if last_sent_at is None:
            return 1
        return seconds_until(last_sent_at + timedelta(seconds=cooldown_seconds), now)

    def charge_attempt(self, challenge_id: int, now: datetime) -> int | None:
        """Spend one attempt; ``None`` when the challenge is gone or spent."""
        stmt = (
            update(OtpChallenge)
            .where(
                OtpChallenge.id == challenge_id,
                OtpChallenge.attempts_remaining > 0,
                OtpChallenge.expires_at > now,
            )
            .values(attempts_remaining=OtpChallenge.attempts_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            return None
        return self.session.scalar(
            select(OtpChallenge.attempts_remaining).where(OtpChallenge.id == challenge_id)
        )

    def claim(self, challenge_id: int, code_hash: str, now: datetime) -> bool:
        stmt = delete(OtpChallenge).where(
            OtpChallenge.id == challenge_id,
            OtpChallenge.code_hash == code_hash,
            OtpChallenge.attempts_remaining > 0,
            OtpChallenge.expires_at > now,
        )
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        stmt = delete(OtpChallenge).where(OtpChallenge.expires_at <= now)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount


class VerificationTokenStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def issue(self, email: str, token_hash: str, now: datetime, ttl_seconds: int) -> VerificationToken:
        record = VerificationToken(
            email=email,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        self.session.add(record)
        return record

    def redeem(self, email: str, token_hash: str, now: datetime) -> bool:
        # check-and-delete in one statement: of two racing callers only one sees rowcount 1
        stmt = delete(VerificationToken).where(
            VerificationToken.email == email,
            VerificationToken.token_hash == token_hash,
            VerificationToken.expires_at > now,
        )
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        stmt = delete(VerificationToken).where(VerificationToken.expires_at <= now)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount
