"""
Verification code model for WhatsApp phone verification.

A record is created when a user starts signup or a password reset and is
flipped to verified exactly once, when the code arrives from the user's phone.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Index
from app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationCode(Base):
    """
    Lifecycle: created (unverified) -> verified. Expired records are only
    read back to tell a late set-password that the code expired.
    """
    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # 6-character uppercase alphanumeric code, unique across all records
    code = Column(String(6), unique=True, nullable=False, index=True)

    # Who the code was issued for
    name = Column(String(100), nullable=False)
    phone = Column(String(15), nullable=False, index=True)

    verified = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('ix_verification_codes_code_expires', 'code', 'expires_at'),
    )

    def __repr__(self):
        return f"<VerificationCode(id={self.id}, phone={self.phone}, verified={self.verified}, expires_at={self.expires_at})>"
