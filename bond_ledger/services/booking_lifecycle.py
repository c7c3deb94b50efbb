"""
Booking Lifecycle Coordinator

The only path through which bookings touch the ledger.

State machine: requested -> confirmed -> cancelled (a requested booking may also be cancelled).

Confirmation is all-or-nothing:
- lock every involved apartment and re-validate every segment under the lock
- any segment taken -> Conflict(reason="unavailable"), nothing written
- lost compare-and-swap -> roll back, retry once, then Conflict(reason="concurrent_write")
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from ..config import settings
from ..exceptions import Conflict, InvalidRange, InvalidTransition, NotFound, VersionConflict
from ..models.availability import DayStatus, RecordSource
from ..models.booking import Booking, BookingSegment, BookingStatus, BookingSource
from ..utils.db_helpers import atomic
from ..utils.logging_config import get_logger
from ..utils.metrics import record_booking_transition, record_conflict
from .availability_query import AvailabilityQuery
from .catalog import CatalogService
from .ledger import LedgerService, validate_range
from .split_stay import segment_price

logger = get_logger(__name__)


@dataclass
class SegmentRequest:
    apartment_id: str
    check_in: date
    check_out: date
    price: Optional[Decimal] = None
    notes: Optional[str] = None

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days


class BookingCoordinator:
    """
    Drives the ledger from booking transitions.

    Commits its own units of work through atomic().
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger = LedgerService(db)
        self.query = AvailabilityQuery(db)
        self.catalog = CatalogService(db)

    # ==================
    # Helpers
    # ==================

    def get(self, booking_id: str) -> Booking:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise NotFound(f"Booking {booking_id} not found", booking_id=booking_id)
        return booking

    def _validate_segments(self, segments: Sequence[SegmentRequest]) -> List[SegmentRequest]:
        """
        Segments must hand off on the same date, each apartment must differ
        from the previous one, and the whole stay must meet the minimum stay.
        """
        if not segments:
            raise InvalidRange("A booking needs at least one segment")

        ordered = sorted(segments, key=lambda s: s.check_in)
        for segment in ordered:
            validate_range(segment.check_in, segment.check_out, max_days=settings.ledger_max_range_days)
            self.catalog.get_apartment(segment.apartment_id)

        for previous, current in zip(ordered, ordered[1:]):
            if previous.check_out != current.check_in:
                raise InvalidRange(
                    f"Segments must hand off on the same date: {previous.check_out} != {current.check_in}"
                )
            if previous.apartment_id == current.apartment_id:
                raise InvalidRange("Adjacent segments must use different apartments")

        total_nights = sum(s.nights for s in ordered)
        if total_nights < settings.minimum_stay_nights:
            raise InvalidRange(
                f"Minimum stay is {settings.minimum_stay_nights} nights, got {total_nights}",
                minimum_stay_nights=settings.minimum_stay_nights,
            )
        return ordered

    def _priced(self, segment: SegmentRequest) -> Decimal:
        if segment.price is not None:
            return Decimal(segment.price)
        apartment = self.catalog.get_apartment(segment.apartment_id)
        return segment_price(apartment.nightly_rate(settings.days_per_month_rate), segment.nights)

    def _replace_segments(self, booking: Booking, segments: Sequence[SegmentRequest]) -> None:
        booking.segments.clear()
        total = Decimal("0.00")
        for order, segment in enumerate(segments):
            price = self._priced(segment)
            total += price
            booking.segments.append(BookingSegment(
                apartment_id=segment.apartment_id,
                segment_order=order,
                check_in_date=segment.check_in,
                check_out_date=segment.check_out,
                segment_price=price,
                notes=segment.notes,
            ))
        booking.apartment_id = segments[0].apartment_id
        booking.check_in_date = segments[0].check_in
        booking.check_out_date = segments[-1].check_out
        booking.total_amount = total
        booking.is_split_stay = len(segments) > 1

    def _lock_all(self, apartment_ids) -> Dict[str, int]:
        # Fixed lock order across writers
        return {apartment_id: self.ledger.lock_apartment(apartment_id) for apartment_id in sorted(set(apartment_ids))}

    def _revalidate(self, booking: Booking, segments) -> None:
        for segment in segments:
            if not self.query.is_fully_available(
                segment.apartment_id, segment.check_in_date, segment.check_out_date,
                ignore_reference=booking.id
            ):
                record_conflict(Conflict.UNAVAILABLE)
                logger.warning(
                    f"Booking {booking.id} segment {segment.segment_order} no longer available "
                    f"({segment.apartment_id} {segment.check_in_date}..{segment.check_out_date})"
                )
                raise Conflict(
                    "Someone else just booked one of these dates",
                    reason=Conflict.UNAVAILABLE,
                    booking_id=booking.id,
                    apartment_id=segment.apartment_id,
                    segment_order=segment.segment_order,
                )

    def _write_segments(self, booking: Booking, versions: Dict[str, int]) -> None:
        for segment in booking.segments:
            self.ledger.set_range(
                segment.apartment_id,
                segment.check_in_date,
                segment.check_out_date,
                DayStatus.BOOKED,
                reference=booking.id,
                source=RecordSource.BOOKING,
                expected_version=versions.pop(segment.apartment_id, None),
            )

    def _release_segments(self, booking: Booking, versions: Dict[str, int]) -> None:
        for segment in booking.segments:
            self.ledger.clear_range(
                segment.apartment_id,
                segment.check_in_date,
                segment.check_out_date,
                reference=booking.id,
                source=RecordSource.BOOKING,
                expected_version=versions.pop(segment.apartment_id, None),
            )

    def _with_retry(self, booking_id: str, unit: Callable[[], Booking]) -> Booking:
        """Run unit in its own transaction, retrying lost compare-and-swaps"""
        attempts = settings.confirm_retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                with atomic(self.db):
                    booking = unit()
                return booking
            except (VersionConflict, IntegrityError) as e:
                record_conflict(Conflict.CONCURRENT_WRITE)
                logger.warning(f"Concurrent write on booking {booking_id} (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    raise Conflict(
                        "The calendar changed while saving, please try again",
                        reason=Conflict.CONCURRENT_WRITE,
                        booking_id=booking_id,
                    ) from e

    # ==================
    # Transitions
    # ==================

    def request(
        self,
        segments: Sequence[SegmentRequest],
        guest_name: str,
        guest_email: Optional[str] = None,
        guest_phone: Optional[str] = None,
        guest_count: int = 1,
        special_instructions: Optional[str] = None,
        booking_source: str = BookingSource.DIRECT.value,
    ) -> Booking:
        """
        Create a booking in 'requested' state. The ledger is not touched.

        Raises Conflict when a segment is already unavailable, so the caller can re-search early.
        """
        ordered = self._validate_segments(segments)
        for segment in ordered:
            if not self.query.is_fully_available(segment.apartment_id, segment.check_in, segment.check_out):
                raise Conflict(
                    "Requested dates are not available",
                    reason=Conflict.UNAVAILABLE,
                    apartment_id=segment.apartment_id,
                )

        with atomic(self.db):
            booking = Booking(
                guest_name=guest_name,
                guest_email=guest_email,
                guest_phone=guest_phone,
                guest_count=guest_count,
                special_instructions=special_instructions,
                booking_source=booking_source,
                status=BookingStatus.REQUESTED.value,
                check_in_date=ordered[0].check_in,
                check_out_date=ordered[-1].check_out,
            )
            self._replace_segments(booking, ordered)
            self.db.add(booking)

        logger.booking_transition(booking.id, "new", BookingStatus.REQUESTED.value)
        record_booking_transition(BookingStatus.REQUESTED.value)
        return booking

    def confirm(self, booking_id: str) -> Booking:
        """
        requested -> confirmed, writing every segment to the ledger in one unit.
        """
        def unit() -> Booking:
            booking = self.get(booking_id)
            if booking.status != BookingStatus.REQUESTED.value:
                raise InvalidTransition(
                    f"Cannot confirm a {booking.status} booking",
                    booking_id=booking_id, status=booking.status,
                )
            versions = self._lock_all(s.apartment_id for s in booking.segments)
            self._revalidate(booking, booking.segments)
            self._write_segments(booking, versions)
            booking.status = BookingStatus.CONFIRMED.value
            booking.confirmed_at = datetime.utcnow()
            return booking

        booking = self._with_retry(booking_id, unit)
        logger.booking_transition(booking_id, BookingStatus.REQUESTED.value, BookingStatus.CONFIRMED.value)
        record_booking_transition(BookingStatus.CONFIRMED.value)
        return booking

    def cancel(self, booking_id: str) -> Booking:
        """
        confirmed -> cancelled releases the booking's ledger records.
        requested -> cancelled has no ledger effect.
        """
        previous = {}

        def unit() -> Booking:
            booking = self.get(booking_id)
            if booking.status == BookingStatus.CANCELLED.value:
                raise InvalidTransition("Booking is already cancelled", booking_id=booking_id)
            previous["status"] = booking.status
            if booking.status == BookingStatus.CONFIRMED.value:
                versions = self._lock_all(s.apartment_id for s in booking.segments)
                self._release_segments(booking, versions)
            booking.status = BookingStatus.CANCELLED.value
            booking.cancelled_at = datetime.utcnow()
            return booking

        booking = self._with_retry(booking_id, unit)
        logger.booking_transition(booking_id, previous["status"], BookingStatus.CANCELLED.value)
        record_booking_transition(BookingStatus.CANCELLED.value)
        return booking

    def modify(self, booking_id: str, segments: Sequence[SegmentRequest]) -> Booking:
        """
        Replace a booking's segments.

        For a confirmed booking the old ranges are released and the new ones written
        in one unit; dates the booking already holds count as free for itself.
        On failure the old segments and ledger records stay as they were.
        """
        ordered = self._validate_segments(segments)

        def unit() -> Booking:
            booking = self.get(booking_id)
            if booking.status == BookingStatus.CANCELLED.value:
                raise InvalidTransition("Cannot modify a cancelled booking", booking_id=booking_id)

            if booking.status == BookingStatus.REQUESTED.value:
                for segment in ordered:
                    if not self.query.is_fully_available(segment.apartment_id, segment.check_in, segment.check_out):
                        raise Conflict("Requested dates are not available", reason=Conflict.UNAVAILABLE)
                self._replace_segments(booking, ordered)
                return booking

            apartment_ids = [s.apartment_id for s in booking.segments] + [s.apartment_id for s in ordered]
            versions = self._lock_all(apartment_ids)

            for segment in ordered:
                if not self.query.is_fully_available(
                    segment.apartment_id, segment.check_in, segment.check_out, ignore_reference=booking.id
                ):
                    record_conflict(Conflict.UNAVAILABLE)
                    raise Conflict(
                        "New dates are not available",
                        reason=Conflict.UNAVAILABLE,
                        booking_id=booking_id,
                        apartment_id=segment.apartment_id,
                    )

            self._release_segments(booking, versions)
            self._replace_segments(booking, ordered)
            self.db.flush()
            self._write_segments(booking, versions)
            return booking

        booking = self._with_retry(booking_id, unit)
        logger.log_with_context(
            logging.INFO,
            f"Booking {booking_id} modified: {len(ordered)} segments",
            entity_type="booking",
            entity_id=booking_id,
        )
        return booking
