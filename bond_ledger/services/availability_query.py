"""
Availability Query

Read-only answers over the sparse ledger. A date with no record is available,
and every range is half-open: the checkout date itself stays free for the next guest.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session

from ..config import settings
from ..models.apartment import Apartment
from ..models.availability import AvailabilityRecord, DEFAULT_STATUS
from ..utils.dates import add_months, iter_dates, month_windows
from .catalog import CatalogService
from .ledger import validate_range

logger = logging.getLogger(__name__)

Interval = Tuple[date, date]


class AvailabilityQuery:
    def __init__(self, db: Session):
        self.db = db

    def _unavailable_query(self, start: date, end: date, ignore_reference: Optional[str] = None):
        query = self.db.query(AvailabilityRecord).filter(
            AvailabilityRecord.date >= start,
            AvailabilityRecord.date < end,
            AvailabilityRecord.status != DEFAULT_STATUS.value
        )
        if ignore_reference:
            # Dates a booking already holds count as free for that booking
            query = query.filter(
                (AvailabilityRecord.reference.is_(None)) | (AvailabilityRecord.reference != ignore_reference)
            )
        return query

    def is_fully_available(
        self,
        apartment_id: str,
        start: date,
        end: date,
        ignore_reference: Optional[str] = None
    ) -> bool:
        """True iff no date in [start, end) is booked or blocked"""
        validate_range(start, end)
        blocking = self._unavailable_query(start, end, ignore_reference).filter(
            AvailabilityRecord.apartment_id == apartment_id
        ).first()
        return blocking is None

    def unavailable_dates(self, apartment_id: str, start: date, end: date) -> List[date]:
        validate_range(start, end)
        rows = self._unavailable_query(start, end).filter(
            AvailabilityRecord.apartment_id == apartment_id
        ).with_entities(AvailabilityRecord.date).order_by(AvailabilityRecord.date).all()
        return [row.date for row in rows]

    def free_intervals(self, apartment_id: str, start: date, end: date) -> List[Interval]:
        """Maximal free [start, end) runs of one apartment, clipped to the range"""
        return self.free_intervals_for([apartment_id], start, end)[apartment_id]

    def free_intervals_for(
        self,
        apartment_ids: Sequence[str],
        start: date,
        end: date
    ) -> Dict[str, List[Interval]]:
        """Free intervals for many apartments with a single ledger read"""
        validate_range(start, end)
        taken: Dict[str, set] = {apartment_id: set() for apartment_id in apartment_ids}
        if apartment_ids:
            rows = self._unavailable_query(start, end).filter(
                AvailabilityRecord.apartment_id.in_(list(apartment_ids))
            ).with_entities(AvailabilityRecord.apartment_id, AvailabilityRecord.date).all()
            for row in rows:
                taken[row.apartment_id].add(row.date)

        result: Dict[str, List[Interval]] = {}
        for apartment_id, busy in taken.items():
            intervals: List[Interval] = []
            run_start = None
            for d in iter_dates(start, end):
                if d in busy:
                    if run_start is not None:
                        intervals.append((run_start, d))
                        run_start = None
                elif run_start is None:
                    run_start = d
            if run_start is not None:
                intervals.append((run_start, end))
            result[apartment_id] = intervals
        return result

    def next_available_date(
        self,
        apartment_id: str,
        from_date: Optional[date] = None,
        min_nights: int = 1
    ) -> Optional[date]:
        """
        Earliest date starting a free run of at least min_nights.

        Scans one calendar month at a time up to the configured horizon, never
        past the ledger's supported future; returns None when nothing is free within it.
        """
        from_date = from_date or date.today()
        horizon = min(
            add_months(from_date, settings.next_available_horizon_months),
            date.today() + timedelta(days=settings.ledger_max_future_days),
        )
        min_nights = max(1, min_nights)

        run_start = None
        run_length = 0
        for window_start, window_end in month_windows(from_date, horizon):
            busy = set(self.unavailable_dates(apartment_id, window_start, window_end))
            for d in iter_dates(window_start, window_end):
                if d in busy:
                    run_start = None
                    run_length = 0
                    continue
                if run_start is None:
                    run_start = d
                run_length += 1
                if run_length >= min_nights:
                    return run_start

        logger.debug(f"No availability for apartment {apartment_id} before {horizon}")
        return None

    def available_apartments(self, start: date, end: date) -> List[Apartment]:
        """Operationally available apartments free for the whole of [start, end)"""
        validate_range(start, end)
        busy_ids = {
            row.apartment_id
            for row in self._unavailable_query(start, end).with_entities(
                AvailabilityRecord.apartment_id
            ).distinct()
        }
        return [
            apartment for apartment in CatalogService(self.db).list_operationally_available()
            if apartment.id not in busy_ids
        ]

    def booked_days_count(
        self,
        apartment_id: str,
        start: date,
        end: date,
        status: Optional[str] = "booked"
    ) -> int:
        """Number of dates in [start, end) with the given status (any non-available when None)"""
        validate_range(start, end)
        query = self._unavailable_query(start, end).filter(AvailabilityRecord.apartment_id == apartment_id)
        if status:
            query = query.filter(AvailabilityRecord.status == status)
        return query.count()
