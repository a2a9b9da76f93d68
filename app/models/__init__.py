"""
Database models package.
"""

from app.models.user import User
from app.models.verification_code import VerificationCode

__all__ = ["User", "VerificationCode"]
