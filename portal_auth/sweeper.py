from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from portal_auth.auth import SessionStore
from portal_auth.config import Settings, load_settings
from portal_auth.logging import log_security_event
from portal_auth.models import JobRun
from portal_auth.otp import OtpChallengeStore, VerificationTokenStore
from portal_auth.utils import as_utc, utcnow

logger = logging.getLogger("portal_auth.sweeper")

JOB_NAME = "expired_credentials_cleanup"


@dataclass(frozen=True)
class CleanupReport:
    ran: bool
    period_key: str
    sessions: int = 0
    challenges: int = 0
    tokens: int = 0


def period_key_for(moment: datetime, interval_seconds: int) -> str:
    return str(int(moment.timestamp()) // interval_seconds)


def run_cleanup_cycle(session: Session, settings: Settings, now: datetime | None = None) -> CleanupReport:
    """Run one sweep unless another instance already claimed this period.

    The claim row and the deletions share one transaction, so a crashed
    sweep leaves the period unclaimed.
    """
    moment = as_utc(now) or utcnow()
    period_key = period_key_for(moment, settings.cleanup_interval_seconds)
    try:
        session.add(JobRun(job_name=JOB_NAME, period_key=period_key, started_at=moment))
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.info("Cleanup for period %s already claimed", period_key)
        return CleanupReport(ran=False, period_key=period_key)

    try:
        sessions = SessionStore(session).delete_expired(moment)
        challenges = OtpChallengeStore(session).purge_expired(moment)
        tokens = VerificationTokenStore(session).purge_expired(moment)
        session.commit()
    except IntegrityError:
        # another instance committed the same claim first
        session.rollback()
        logger.info("Cleanup for period %s already claimed", period_key)
        return CleanupReport(ran=False, period_key=period_key)
    except SQLAlchemyError:
        session.rollback()
        raise

    report = CleanupReport(True, period_key, sessions, challenges, tokens)
    log_security_event(
        "cleanup",
        "success",
        None,
        {"period": period_key, "sessions": sessions, "challenges": challenges, "tokens": tokens},
    )
    return report


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = load_settings()

    engine = None
    SessionLocal = None

    while True:
        try:
            if engine is None:
                engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
                SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
            with SessionLocal() as session:
                run_cleanup_cycle(session, settings)
        except SQLAlchemyError:
            logger.exception("Cleanup cycle failed")
        await asyncio.sleep(settings.cleanup_interval_seconds)


if __name__ == "__main__":
    asyncio.run(main())
