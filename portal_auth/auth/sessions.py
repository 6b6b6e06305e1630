from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from portal_auth.models import User, UserSession


class SessionStore:
    """Rows of the ``sessions`` table, keyed by the SHA-256 of the bearer token.

    Methods only stage statements; the owning service commits.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self,
        user_id: int,
        token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserSession:
        record = UserSession(
            user_id=user_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=expires_at,
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:512] if user_agent else None,
        )
        self.session.add(record)
        return record

    def find_with_user(self, token_hash: str) -> tuple[UserSession, User] | None:
        stmt = (
            select(UserSession, User)
            .join(User, User.id == UserSession.user_id)
            .where(UserSession.token_hash == token_hash)
        )
        row = self.session.execute(stmt.execution_options(populate_existing=True)).first()
        if row is None:
            return None
        return row[0], row[1]

    def delete(self, token_hash: str) -> int:
        stmt = delete(UserSession).where(UserSession.token_hash == token_hash)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def delete_if_expired(self, token_hash: str, now: datetime) -> int:
        stmt = delete(UserSession).where(
            UserSession.token_hash == token_hash,
            UserSession.expires_at <= now,
        )
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def delete_for_user(self, user_id: int, keep_token_hash: str | None = None) -> int:
        stmt = delete(UserSession).where(UserSession.user_id == user_id)
        if keep_token_hash is not None:
            stmt = stmt.where(UserSession.token_hash != keep_token_hash)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def delete_expired(self, now: datetime) -> int:
        stmt = delete(UserSession).where(UserSession.expires_at < now)
        return self.session.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def count_for_user(self, user_id: int) -> int:
        return self.session.query(UserSession).filter_by(user_id=user_id).count()
