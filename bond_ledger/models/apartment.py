import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import Column, String, Numeric, Integer, DateTime, Index
import enum

from ..database import Base


class ApartmentStatus(str, enum.Enum):
    """Operational flag, distinct from date-level availability"""
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class Apartment(Base):
    """
    Apartment catalog entry.

    Owned by the catalog; the availability core only reads it.
    """
    __tablename__ = "apartments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(200), nullable=False)

    # Monthly rate; nightly_price overrides the derived nightly rate when set
    price = Column(Numeric(10, 2), default=0)
    nightly_price = Column(Numeric(10, 2), nullable=True)

    capacity = Column(Integer, default=1)
    status = Column(String(20), default=ApartmentStatus.AVAILABLE.value)
    sort_order = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_apartment_status_sort", "status", "sort_order"),
    )

    def nightly_rate(self, days_per_month: int = 30) -> Decimal:
        """Nightly rate in cents precision"""
        if self.nightly_price is not None:
            rate = Decimal(str(self.nightly_price))
        else:
            rate = Decimal(str(self.price or 0)) / Decimal(days_per_month)
        return rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def __repr__(self):
        return f"<Apartment {self.title} ({self.status})>"
