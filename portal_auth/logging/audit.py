from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.orm import Session

from portal_auth.models import AuditLog


class AuditLogger:
    """Append-only writer for the ``audit_logs`` table.

    Each call commits its own row immediately, so entries are ordered
    right after the state change they describe. Write failures roll back
    and re-raise; callers decide whether to swallow them.
    """

    def __init__(self, session: Session, logger: logging.Logger | None = None) -> None:
        self.session = session
        self.logger = logger or logging.getLogger("portal_auth.audit")

    def record(
        self,
        actor_id: int | None,
        action: str,
        table_name: str,
        record_id: int | str,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=actor_id,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=dict(old_values) if old_values is not None else None,
            new_values=dict(new_values) if new_values is not None else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if now is not None:
            entry.created_at = now
        self._persist(entry)
        return entry

    def entries_for(self, table_name: str, record_id: int | str) -> list[AuditLog]:
        query = (
            self.session.query(AuditLog)
            .filter_by(table_name=table_name, record_id=str(record_id))
            .order_by(AuditLog.id.asc())
        )
        return list(query.all())

    def _persist(self, entry: AuditLog) -> None:
        self.session.add(entry)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(entry)
        self._log_entry(entry)

    def _log_entry(self, entry: AuditLog) -> None:
        payload = {"category": "audit"}
        for column in entry.__table__.columns:
            payload[column.name] = getattr(entry, column.name)
        self.logger.info(json.dumps(payload, default=str))
