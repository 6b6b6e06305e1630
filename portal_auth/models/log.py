from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, JSON, String, event, func

from .db import Base


class ImmutableLogMixin:
    @classmethod
    def __declare_last__(cls) -> None:
        event.listen(cls, "before_update", cls._deny_mutation)
        event.listen(cls, "before_delete", cls._deny_mutation)

    @staticmethod
    def _deny_mutation(mapper, connection, target) -> None:
        raise ValueError("Log entries are immutable")


class AuditLog(ImmutableLogMixin, Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    # no foreign key: entries outlive the users they mention
    user_id = Column(Integer, nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    table_name = Column(String(64), nullable=False)
    record_id = Column(String(64), nullable=False)
    old_values = Column(JSON)
    new_values = Column(JSON)
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
