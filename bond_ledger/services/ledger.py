"""
Availability Ledger Service

Single write path for day-level availability.

- set_range / clear_range apply a half-open [start, end) range as one unit
- every mutation takes the apartment's ledger lock and bumps its version (compare-and-swap)
- absence of a record means available; writing "available" deletes records
"""

import logging
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from ..config import settings
from ..exceptions import InvalidRange, VersionConflict
from ..models.availability import AvailabilityRecord, LedgerVersion, DayStatus, RecordSource, DEFAULT_STATUS
from ..utils.dates import iter_dates, compress_dates
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from ..utils.metrics import record_ledger_write

logger = get_logger(__name__)

UNAVAILABLE_STATUSES = (DayStatus.BOOKED.value, DayStatus.BLOCKED.value)


def validate_range(start: date, end: date, max_days: Optional[int] = None) -> None:
    """
    Reject empty/reversed ranges and dates outside the supported horizon.

    Raises:
        InvalidRange
    """
    if end <= start:
        raise InvalidRange(f"Range end {end} must be after start {start}", start=str(start), end=str(end))

    if start < settings.ledger_min_date:
        raise InvalidRange(f"Start {start} is before {settings.ledger_min_date}", start=str(start))

    latest = date.today() + timedelta(days=settings.ledger_max_future_days)
    if end > latest:
        raise InvalidRange(f"End {end} is beyond the supported horizon ({latest})", end=str(end))

    if max_days is not None and (end - start).days > max_days:
        raise InvalidRange(f"Range of {(end - start).days} days exceeds {max_days} days")


def _status_value(status) -> str:
    value = status.value if isinstance(status, DayStatus) else str(status)
    if value not in {s.value for s in DayStatus}:
        raise InvalidRange(f"Unknown status: {value}")
    return value


def _source_value(source) -> str:
    return source.value if isinstance(source, RecordSource) else str(source)


class LedgerService:
    """
    Ledger mutator and calendar reads.

    Never commits; callers wrap mutations in utils.db_helpers.atomic().
    """

    def __init__(self, db: Session):
        self.db = db

    # ==================
    # Versioning
    # ==================

    def current_version(self, apartment_id: str) -> int:
        version = self.db.query(LedgerVersion.version).filter(
            LedgerVersion.apartment_id == apartment_id
        ).scalar()
        return version or 0

    def lock_apartment(self, apartment_id: str) -> int:
        """
        Lock the apartment's ledger row for the rest of the transaction.

        Returns the version seen under the lock.
        """
        row = acquire_row_lock(self.db, LedgerVersion, LedgerVersion.apartment_id == apartment_id)
        if row is None:
            row = LedgerVersion(apartment_id=apartment_id, version=0)
            self.db.add(row)
            try:
                self.db.flush()
            except IntegrityError as e:
                # Another writer created the row first
                raise VersionConflict(apartment_id) from e
        return row.version

    def _bump_version(self, apartment_id: str, expected_version: Optional[int] = None) -> int:
        seen = self.lock_apartment(apartment_id)
        if expected_version is not None and expected_version != seen:
            logger.warning(
                f"Stale ledger version for apartment {apartment_id}: expected {expected_version}, found {seen}"
            )
            raise VersionConflict(apartment_id, expected=expected_version)

        updated = self.db.query(LedgerVersion).filter(
            LedgerVersion.apartment_id == apartment_id,
            LedgerVersion.version == seen
        ).update({"version": LedgerVersion.version + 1}, synchronize_session="fetch")

        if updated == 0:
            logger.warning(f"Lost ledger compare-and-swap for apartment {apartment_id} at version {seen}")
            raise VersionConflict(apartment_id, expected=seen)
        return seen + 1

    # ==================
    # Mutations
    # ==================

    def set_range(
        self,
        apartment_id: str,
        start: date,
        end: date,
        status,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        source=RecordSource.MANUAL,
        feed_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> int:
        """
        Write one record per date in [start, end). Last writer wins per date.

        Writing "available" clears the range instead, since no record already means available.
        Returns count of dates written.
        """
        status_value = _status_value(status)
        if status_value == DEFAULT_STATUS.value:
            return self.clear_range(apartment_id, start, end, expected_version=expected_version)

        validate_range(start, end, max_days=settings.ledger_max_range_days)
        source_value = _source_value(source)
        self._bump_version(apartment_id, expected_version)

        existing: Dict[date, AvailabilityRecord] = {
            record.date: record
            for record in self.db.query(AvailabilityRecord).filter(
                AvailabilityRecord.apartment_id == apartment_id,
                AvailabilityRecord.date >= start,
                AvailabilityRecord.date < end
            )
        }

        count = 0
        for d in iter_dates(start, end):
            record = existing.get(d)
            if record is None:
                record = AvailabilityRecord(apartment_id=apartment_id, date=d)
                self.db.add(record)
            record.status = status_value
            record.reference = reference
            record.note = note
            record.source = source_value
            record.feed_id = feed_id
            count += 1

        try:
            self.db.flush()
        except IntegrityError as e:
            logger.warning(f"Concurrent insert on apartment {apartment_id} range {start}..{end}")
            raise VersionConflict(apartment_id) from e

        logger.range_written(apartment_id, start, end, status_value, count, source_value)
        record_ledger_write("set_range", source_value)
        return count

    def clear_range(
        self,
        apartment_id: str,
        start: date,
        end: date,
        reference: Optional[str] = None,
        feed_id: Optional[str] = None,
        source=None,
        expected_version: Optional[int] = None,
        extra_filters: Iterable = ()
    ) -> int:
        """
        Delete records in [start, end), reverting those dates to available.

        reference / feed_id / source restrict the clear to records one writer owns.
        Returns count of dates cleared.
        """
        validate_range(start, end, max_days=settings.ledger_max_range_days)
        self._bump_version(apartment_id, expected_version)

        query = self.db.query(AvailabilityRecord).filter(
            AvailabilityRecord.apartment_id == apartment_id,
            AvailabilityRecord.date >= start,
            AvailabilityRecord.date < end
        )
        if reference is not None:
            query = query.filter(AvailabilityRecord.reference == reference)
        if feed_id is not None:
            query = query.filter(AvailabilityRecord.feed_id == feed_id)
        if source is not None:
            query = query.filter(AvailabilityRecord.source == _source_value(source))
        for condition in extra_filters:
            query = query.filter(condition)

        count = query.delete(synchronize_session="fetch")
        self.db.flush()

        logger.range_cleared(apartment_id, start, end, count)
        record_ledger_write("clear_range", _source_value(source) if source is not None else "any")
        return count

    def set_bulk_availability(
        self,
        apartment_id: str,
        dates: List[date],
        status,
        note: Optional[str] = None
    ) -> dict:
        """
        Manual admin override for an arbitrary set of dates.

        Dates are grouped into consecutive runs, each written as one range tagged manual.
        """
        if not dates:
            raise InvalidRange("No dates given")

        runs = compress_dates(sorted(set(dates)))
        count = 0
        for start, end in runs:
            count += self.set_range(apartment_id, start, end, status, note=note, source=RecordSource.MANUAL)

        logger.info(f"Bulk availability for apartment {apartment_id}: {len(runs)} ranges, {count} dates")
        return {"dates_updated": count, "ranges": len(runs)}

    # ==================
    # Reads
    # ==================

    def get_records(self, apartment_id: str, start: date, end: date) -> List[AvailabilityRecord]:
        """Stored records in [start, end), ordered by date"""
        return self.db.query(AvailabilityRecord).filter(
            AvailabilityRecord.apartment_id == apartment_id,
            AvailabilityRecord.date >= start,
            AvailabilityRecord.date < end
        ).order_by(AvailabilityRecord.date).all()

    def get_calendar(self, apartment_id: str, start: date, end: date) -> List[dict]:
        """
        Dense day-by-day calendar for display.

        Dates without a record are reported with the default status.
        """
        validate_range(start, end, max_days=settings.ledger_max_range_days)
        records = {r.date: r for r in self.get_records(apartment_id, start, end)}

        days = []
        for d in iter_dates(start, end):
            record = records.get(d)
            if record is None:
                days.append({
                    "date": d,
                    "status": DEFAULT_STATUS.value,
                    "reference": None,
                    "note": None,
                    "source": None,
                })
            else:
                days.append({
                    "date": d,
                    "status": record.status,
                    "reference": record.reference,
                    "note": record.note,
                    "source": record.source,
                })
        return days

    def blockout_ranges(
        self,
        apartment_id: Optional[str] = None,
        from_date: Optional[date] = None,
        split_on_reference: bool = True
    ) -> List[dict]:
        """
        Consecutive booked/blocked days compressed into [start, end) ranges.

        Ranges break on apartment and status, and on reference unless split_on_reference is False.
        """
        from_date = from_date or date.today()
        query = self.db.query(AvailabilityRecord).filter(
            AvailabilityRecord.status.in_(UNAVAILABLE_STATUSES),
            AvailabilityRecord.date >= from_date
        )
        if apartment_id:
            query = query.filter(AvailabilityRecord.apartment_id == apartment_id)

        ranges: List[dict] = []
        for record in query.order_by(AvailabilityRecord.apartment_id, AvailabilityRecord.date):
            last = ranges[-1] if ranges else None
            if (
                last is not None
                and last["apartment_id"] == record.apartment_id
                and last["end"] == record.date
                and last["status"] == record.status
                and (not split_on_reference or last["reference"] == record.reference)
            ):
                last["end"] = record.date + timedelta(days=1)
                continue

            ranges.append({
                "apartment_id": record.apartment_id,
                "start": record.date,
                "end": record.date + timedelta(days=1),
                "status": record.status,
                "reference": record.reference,
                "source": record.source,
                "note": record.note,
            })
        return ranges
