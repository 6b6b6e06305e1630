from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from .db import Base


class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (UniqueConstraint("job_name", "period_key", name="uq_job_runs_job_period"),)

    id = Column(Integer, primary_key=True)
    job_name = Column(String(64), nullable=False)
    period_key = Column(String(32), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
