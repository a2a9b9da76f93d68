"""
Periodic maintenance of verification records.
"""

import logging
from datetime import datetime, timedelta, timezone

from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import SessionLocal
from app.crud import verification as verification_crud

logger = logging.getLogger(__name__)

# Expired records are kept this long before being purged
RETENTION_HOURS = 24


@shared_task(name="cleanup_expired_verification_codes")
def cleanup_expired_verification_codes_task():
    """
    Delete verification records that expired more than 24 hours ago.

    Scheduled daily through Celery Beat (see celery_app.beat_schedule).
    """
    cutoff = datetime.now(timezone.utc) - timedelta(hours=RETENTION_HOURS)
    db = SessionLocal()
    try:
        deleted_count = verification_crud.delete_expired_verifications(db, cutoff)
        logger.info(f"Cleaned up {deleted_count} expired verification codes")
        return {"status": "success", "deleted_count": deleted_count}
    except SQLAlchemyError as e:
        logger.error(f"Error cleaning up verification codes: {type(e).__name__}")
        raise
    finally:
        db.close()
