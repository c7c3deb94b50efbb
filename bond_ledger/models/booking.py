import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, Numeric, Text, ForeignKey, DateTime, Integer, Boolean, Index
from sqlalchemy.orm import relationship
import enum

from ..database import Base


class BookingStatus(str, enum.Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookingSource(str, enum.Enum):
    """Where the booking was made"""
    DIRECT = "direct"      # Guest checkout
    ADMIN = "admin"        # Admin calendar
    API = "api"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # First segment's apartment and the overall stay
    apartment_id = Column(String(36), ForeignKey("apartments.id", ondelete="SET NULL"), nullable=True)
    check_in_date = Column(Date, nullable=False)
    check_out_date = Column(Date, nullable=False)

    guest_name = Column(String(200), nullable=False)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(30), nullable=True)
    guest_count = Column(Integer, default=1)
    special_instructions = Column(Text, nullable=True)

    total_amount = Column(Numeric(10, 2), default=0)
    status = Column(String(20), default=BookingStatus.REQUESTED.value)
    booking_source = Column(String(20), default=BookingSource.DIRECT.value)
    is_split_stay = Column(Boolean, default=False)

    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    segments = relationship(
        "BookingSegment",
        back_populates="booking",
        order_by="BookingSegment.segment_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_booking_status", "status"),
        Index("ix_booking_dates", "check_in_date", "check_out_date"),
    )

    def __repr__(self):
        return f"<Booking {self.guest_name} {self.check_in_date}..{self.check_out_date} {self.status}>"


class BookingSegment(Base):
    """One contiguous apartment stay; check_out_date is exclusive"""
    __tablename__ = "booking_segments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    apartment_id = Column(String(36), ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False)
    segment_order = Column(Integer, nullable=False, default=0)
    check_in_date = Column(Date, nullable=False)
    check_out_date = Column(Date, nullable=False)
    segment_price = Column(Numeric(10, 2), default=0)
    notes = Column(Text, nullable=True)

    booking = relationship("Booking", back_populates="segments")
    apartment = relationship("Apartment")

    __table_args__ = (
        Index("ix_segment_booking", "booking_id"),
        Index("ix_segment_apartment_dates", "apartment_id", "check_in_date"),
    )

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days

    def __repr__(self):
        return f"<BookingSegment {self.apartment_id} {self.check_in_date}..{self.check_out_date}>"
