"""
Availability Ledger Models

Sparse per-(apartment, date) status store. A date with no record is available;
records exist only for booked or blocked days.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, DateTime, Integer, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
import enum

from ..database import Base


class DayStatus(str, enum.Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"


class RecordSource(str, enum.Enum):
    """Which writer owns a ledger record"""
    MANUAL = "manual"      # Admin override, never touched by sync
    BOOKING = "booking"    # Written by the booking lifecycle
    ICAL = "ical"          # Imported from an external feed (feed_id is set)


# Status of any date without a record
DEFAULT_STATUS = DayStatus.AVAILABLE


class AvailabilityRecord(Base):
    """
    Day-level availability for one apartment.

    reference is a booking id (source=booking) or an external event UID (source=ical).
    """
    __tablename__ = "apartment_availability"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    apartment_id = Column(String(36), ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)

    status = Column(String(20), nullable=False, default=DayStatus.BOOKED.value)
    reference = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)

    # Sync tagging
    source = Column(String(20), nullable=False, default=RecordSource.MANUAL.value)
    feed_id = Column(String(36), ForeignKey("sync_feeds.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    apartment = relationship("Apartment")

    __table_args__ = (
        UniqueConstraint('apartment_id', 'date', name='uq_availability_apartment_date'),
        Index('ix_availability_apartment_status_date', 'apartment_id', 'status', 'date'),
        Index('ix_availability_feed', 'feed_id'),
    )

    def __repr__(self):
        return f"<AvailabilityRecord {self.apartment_id} {self.date} {self.status}>"


class LedgerVersion(Base):
    """
    Per-apartment sequence token.

    Every range mutation bumps the version with a compare-and-swap, so two
    writers on the same apartment cannot interleave unnoticed.
    """
    __tablename__ = "ledger_versions"

    apartment_id = Column(String(36), ForeignKey("apartments.id", ondelete="CASCADE"), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<LedgerVersion {self.apartment_id} v{self.version}>"
