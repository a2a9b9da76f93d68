"""
User model for phone-verified accounts.

An account is keyed by phone number and only exists once a verification code
for that phone has been confirmed and a password has been set.
"""

import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Uuid, func
from app.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)

    # Authentication credentials
    phone = Column(String(15), unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)

    # User profile
    name = Column(String(100), nullable=False)

    # Account status
    verified = Column(Boolean, default=False, nullable=False)  # Phone verification

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, phone='{self.phone}', verified={self.verified})>"
