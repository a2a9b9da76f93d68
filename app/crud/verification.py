"""
CRUD operations for verification codes and phone accounts.

Database errors never leave this module raw: unique violations become
RecordExists, anything else becomes UpstreamError, after a rollback.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import RecordExists, UpstreamError
from app.models.user import User
from app.models.verification_code import VerificationCode

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fail(db: Session, operation: str, error: SQLAlchemyError):
    db.rollback()
    if isinstance(error, IntegrityError):
        return RecordExists(detail=error, operation=operation)
    logger.error(f"Database error in {operation}: {type(error).__name__}")
    return UpstreamError(detail=error, operation=operation)


def find_verification_by_code(
    db: Session,
    code: str,
    include_expired: bool = False,
    now: Optional[datetime] = None,
) -> Optional[VerificationCode]:
    """
    Look up a verification record by code.

    Args:
        db: Database session
        code: 6-character code (already upper-cased)
        include_expired: Return the record even if it has expired
        now: Reference time for the expiry check (default: current UTC time)

    Returns:
        VerificationCode if found (and unexpired unless include_expired), None otherwise
    """
    try:
        query = db.query(VerificationCode).filter(VerificationCode.code == code)
        if not include_expired:
            query = query.filter(VerificationCode.expires_at > (now or _utcnow()))
        return query.first()
    except SQLAlchemyError as e:
        raise _fail(db, "find_verification_by_code", e)


def insert_verification(db: Session, record: VerificationCode) -> VerificationCode:
    """
    Persist a new verification record.

    Raises:
        RecordExists: If the code collides with an existing record
        UpstreamError: On any other database failure
    """
    try:
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    except SQLAlchemyError as e:
        raise _fail(db, "insert_verification", e)


def update_verification_verified(db: Session, code: str, now: Optional[datetime] = None) -> bool:
    """
    Flip an unexpired, unverified record to verified.

    Runs as a single conditional UPDATE so that concurrent deliveries of the
    same code cannot both succeed.

    Returns:
        True if this call performed the flip, False if nothing matched
    """
    now = now or _utcnow()
    try:
        result = db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.code == code,
                VerificationCode.verified == False,  # noqa: E712
                VerificationCode.expires_at > now,
            )
            .values(verified=True, verified_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1
    except SQLAlchemyError as e:
        raise _fail(db, "update_verification_verified", e)


def find_user_by_phone(db: Session, phone: str) -> Optional[User]:
    try:
        return db.query(User).filter(User.phone == phone).first()
    except SQLAlchemyError as e:
        raise _fail(db, "find_user_by_phone", e)


def upsert_user(db: Session, phone: str, name: str, password_hash: str) -> User:
    """
    Create the account for phone, or update it in place if it already exists.

    A concurrent insert for the same phone is resolved by updating the row
    that won.
    """
    for attempt in range(2):
        try:
            user = db.query(User).filter(User.phone == phone).first()
            if user is None:
                user = User(phone=phone, name=name, password_hash=password_hash, verified=True)
                db.add(user)
            else:
                user.name = name
                user.password_hash = password_hash
                user.verified = True
            db.commit()
            db.refresh(user)
            return user
        except IntegrityError as e:
            db.rollback()
            if attempt == 1:
                raise _fail(db, "upsert_user", e)
        except SQLAlchemyError as e:
            raise _fail(db, "upsert_user", e)


def delete_expired_verifications(db: Session, cutoff: datetime) -> int:
    """
    Delete records whose expiry is older than cutoff.

    Returns:
        Number of records deleted
    """
    try:
        deleted = db.query(VerificationCode).filter(
            VerificationCode.expires_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
        return deleted
    except SQLAlchemyError as e:
        raise _fail(db, "delete_expired_verifications", e)
