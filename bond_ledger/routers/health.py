"""
Health Check Endpoints

- /health - Liveness check (is process running)
- /health/ready - Readiness check (is the database reachable)
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
import time

from ..database import get_db
from ..utils.db_helpers import is_postgres

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": "postgresql" if is_postgres(db) else "sqlite"
        }
    except SQLAlchemyError as e:
        return {
            "status": "down",
            "error": str(e)[:100]
        }


@router.get("")
@router.get("/")
async def liveness_check():
    """Liveness probe - is the process running?"""
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
@router.get("/ready/")
def readiness_check(db: Session = Depends(get_db)):
    """Readiness probe - checks database connectivity."""
    db_health = get_db_health(db)

    if db_health["status"] == "up":
        return {
            "status": "ready",
            "database": db_health,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "not_ready",
            "reason": "database_unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )
