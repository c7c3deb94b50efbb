#!/usr/bin/env python
"""
Feed Sync Worker

Standalone background process that keeps external iCal feeds reconciled
with the availability ledger. Use it instead of the in-process worker
by running the API with ICAL_SYNC_ENABLED=false.

Run with:
    python worker.py

Or with environment:
    WORKER_POLL_INTERVAL=300 python worker.py
"""

import logging
import signal
import time

from bond_ledger.config import settings
from bond_ledger.sync_worker import run_sync_cycle
from bond_ledger.utils.logging_config import setup_logging

setup_logging(settings.log_level, json_format=settings.log_json or settings.is_production, include_uvicorn=False)
logger = logging.getLogger("worker")

RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current cycle...")
    RUNNING = False


def run_worker():
    """Main worker loop"""
    logger.info("Starting feed sync worker")
    logger.info(f"Poll interval: {settings.worker_poll_interval}s")
    logger.info(f"Batch size: {settings.worker_batch_size}")

    cycle = 0
    while RUNNING:
        cycle += 1
        try:
            stats = run_sync_cycle(settings.worker_batch_size)
            logger.debug(f"Cycle {cycle}: {stats}")
        except Exception as e:
            logger.error(f"Critical error in cycle {cycle}: {e}")

        # Sleep until next poll
        if RUNNING:
            time.sleep(settings.worker_poll_interval)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
