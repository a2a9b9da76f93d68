"""
Pydantic schemas for the phone verification and password endpoints.

Fields are only type- and size-checked here; the verification flow applies
the full name, phone and password rules so that every rejection produces the
same generic error.
"""

from pydantic import BaseModel, Field
from typing import Optional


class GenerateCodeRequest(BaseModel):
    """Request to start signup for a phone number."""
    name: str = Field(..., max_length=500)
    phone: str = Field(..., max_length=50)


class ExchangeCodeRequest(BaseModel):
    """Request to trade a verified code for a session."""
    code: str = Field(..., max_length=50)


class SetPasswordRequest(BaseModel):
    code: str = Field(..., max_length=50)
    password: str = Field(..., max_length=1024)


class PasswordLoginRequest(BaseModel):
    phone: str = Field(..., max_length=50)
    password: str = Field(..., max_length=1024)


class ResetPasswordRequest(BaseModel):
    phone: str = Field(..., max_length=50)


class CodeIssuedResponse(BaseModel):
    """Returned by signup and password reset; the user sends code over WhatsApp."""
    success: bool = True
    code: str
    message: str
    expires_in_minutes: int


class SessionView(BaseModel):
    """Session payload shown to the browser."""
    code: str
    name: str
    verified: bool


class SessionResponse(BaseModel):
    success: bool = True
    data: SessionView


class AccountView(BaseModel):
    id: str
    name: str
    phone: str


class AccountResponse(BaseModel):
    success: bool = True
    message: str
    user: AccountView


class CsrfTokenResponse(BaseModel):
    success: bool = True
    token: str
    expiresIn: int
    message: str


class SimpleResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
