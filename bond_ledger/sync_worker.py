"""
Feed Sync Cycle

One pass of the background worker: sync every due feed, then drop records
left behind by deleted feeds. Used by the in-process worker (main.py) and the
standalone worker.py.
"""

import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal
from .services.ical_sync import CalendarSyncService
from .utils.db_helpers import atomic

logger = logging.getLogger(__name__)


def run_sync_cycle(batch_size: int = None) -> dict:
    """Returns counts of synced, failed and skipped feeds plus orphans removed"""
    start_time = time.time()
    stats = {"synced": 0, "failed": 0, "skipped": 0, "orphans_removed": 0}

    db = SessionLocal()
    try:
        service = CalendarSyncService(db)
        for result in service.sync_due_feeds(limit=batch_size or settings.worker_batch_size):
            if result.success:
                stats["synced"] += 1
            elif result.skipped:
                stats["skipped"] += 1
            else:
                stats["failed"] += 1

        try:
            with atomic(db):
                stats["orphans_removed"] = service.cleanup_orphaned_records()
        except SQLAlchemyError as e:
            logger.error(f"Orphan cleanup failed: {e}")
    finally:
        db.close()

    if stats["synced"] + stats["failed"] + stats["orphans_removed"] > 0:
        logger.info(
            f"Sync cycle: {stats['synced']} synced / {stats['failed']} failed / "
            f"{stats['skipped']} skipped | {stats['orphans_removed']} orphans | "
            f"{time.time() - start_time:.2f}s"
        )
    return stats
