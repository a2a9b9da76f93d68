"""
Pydantic schemas for signed session claims.
"""

import enum
from typing import Optional
from pydantic import BaseModel, Field


class AuthMethod(str, enum.Enum):
    """How the bearer of a session proved their identity."""
    VERIFICATION = "verification"  # subject is a verification code
    PASSWORD = "password"  # subject is a random session id


class SessionClaims(BaseModel):
    """Claims carried inside an auth_token cookie."""
    subject: str = Field(..., min_length=1)
    display_name: str
    phone: str
    role: str = "user"
    method: AuthMethod
    verified: bool = False
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None

    @property
    def is_password_session(self) -> bool:
        return self.method == AuthMethod.PASSWORD
