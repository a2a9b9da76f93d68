"""
Health check and monitoring endpoints.

Provides health status for the database and the shared security state store.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import redis
from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.kv_store import state_store

router = APIRouter(tags=["Health"])
logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns 200 OK if the service is running.
    Use this for simple uptime monitoring and load balancer health checks.
    """
    return {
        "status": "healthy",
        "timestamp": _timestamp()
    }


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
def detailed_health_check(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Database connectivity
    - Security state store (rate limits, CSRF tokens, message dedup)

    Failure details are logged, never returned.
    """
    health_status = {
        "status": "healthy",
        "timestamp": _timestamp(),
        "checks": {}
    }

    # Check database connectivity
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {type(e).__name__}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {"status": "unhealthy"}

    # Check state store
    try:
        state_store.get("health:probe")
        health_status["checks"]["state_store"] = {
            "status": "healthy",
            "backend": type(state_store).__name__,
        }
    except redis.RedisError as e:
        logger.error(f"State store health check failed: {type(e).__name__}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["state_store"] = {"status": "unhealthy"}

    return health_status
