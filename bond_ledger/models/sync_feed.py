"""
External Calendar Feed Model

One remote iCal URL per row. Records the feed imports into the ledger carry its id,
so a sync only ever touches what it created.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, ForeignKey, DateTime, Integer, Boolean, Index
from sqlalchemy.orm import relationship
import enum

from ..database import Base


class FeedSyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


class SyncFeed(Base):
    __tablename__ = "sync_feeds"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    apartment_id = Column(String(36), ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False)

    feed_name = Column(String(100), nullable=False)
    remote_url = Column(String(1000), nullable=False)
    is_active = Column(Boolean, default=True)

    # Sync state machine: idle -> syncing -> {idle, failed}
    sync_status = Column(String(20), default=FeedSyncStatus.IDLE.value, nullable=False)
    sync_started_at = Column(DateTime, nullable=True)
    last_sync_timestamp = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0)

    # Last successful run stats
    last_events_processed = Column(Integer, default=0)
    last_dates_updated = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    apartment = relationship("Apartment")

    __table_args__ = (
        Index("ix_sync_feed_apartment", "apartment_id"),
        Index("ix_sync_feed_due", "is_active", "last_sync_timestamp"),
    )

    def __repr__(self):
        return f"<SyncFeed {self.feed_name} apartment={self.apartment_id} {self.sync_status}>"
