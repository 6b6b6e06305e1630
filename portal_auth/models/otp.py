from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func

from .db import Base


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    code_hash = Column(String(64), nullable=False)
    attempts_remaining = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_sent_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class VerificationToken(Base):
    __tablename__ = "verification_tokens"
    __table_args__ = (UniqueConstraint("email", "token_hash", name="uq_verification_tokens_email_token"),)

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
