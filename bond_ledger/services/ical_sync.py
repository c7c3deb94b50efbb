"""
External Calendar Synchronizer

Import: fetch a remote iCal feed, diff it against the ledger records this feed
created, and apply the difference in one transaction.
- never touches manual blocks, direct bookings or other feeds' records
- fetch/parse failure leaves the ledger untouched and marks the feed failed
- the same feed never syncs twice at once (conditional claim idle|failed -> syncing)

Export: booked/blocked ranges of an apartment serialized as an iCal feed (read-only),
served publicly only through a per-apartment token that can be regenerated or deactivated.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

import httpx
from icalendar import Calendar, Event, vDuration
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import FeedFetchFailed, FeedParseFailed, LedgerError, NotFound
from ..models.availability import AvailabilityRecord, DayStatus, RecordSource
from ..models.export_link import CalendarExportLink
from ..models.sync_feed import SyncFeed, FeedSyncStatus
from ..utils.dates import add_months, compress_dates, iter_dates
from ..utils.db_helpers import atomic
from ..utils.logging_config import get_logger
from ..utils.metrics import record_feed_sync
from .catalog import CatalogService
from .ledger import LedgerService

logger = get_logger(__name__)


# ================================
# FETCH / PARSE
# ================================

def fetch_feed(url: str, timeout: float) -> str:
    """
    Download a remote calendar.

    Raises:
        FeedFetchFailed: timeout, connection error or non-2xx response
    """
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(url, headers={"Accept": "text/calendar"})
            response.raise_for_status()
            return response.text
    except httpx.TimeoutException as e:
        raise FeedFetchFailed(f"Timed out fetching feed after {timeout}s", url=url) from e
    except httpx.HTTPStatusError as e:
        raise FeedFetchFailed(f"Feed returned HTTP {e.response.status_code}", url=url) from e
    except httpx.HTTPError as e:
        raise FeedFetchFailed(f"Could not fetch feed: {e}", url=url) from e


@dataclass(frozen=True)
class RemoteEvent:
    """A busy interval from a remote feed, clipped to the sync window"""
    uid: str
    start: date
    end: date


@dataclass
class ParsedFeed:
    events: List[RemoteEvent] = field(default_factory=list)
    skipped: int = 0


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Not a date: {value!r}")


def _event_interval(component):
    start = _as_date(component.decoded("DTSTART"))
    if component.get("DTEND") is not None:
        end = _as_date(component.decoded("DTEND"))
    elif component.get("DURATION") is not None:
        end = _as_date(component.decoded("DTSTART") + component.decoded("DURATION"))
    else:
        end = start + timedelta(days=1)
    # Date-times truncate to dates; a same-day event still holds its night
    if end <= start:
        end = start + timedelta(days=1)
    return start, end


def parse_feed(text: str, window_start: date, window_end: date) -> ParsedFeed:
    """
    Parse iCal text into busy intervals within [window_start, window_end).

    All-day DTEND is exclusive. Events outside the window, cancelled events and
    malformed events are skipped and counted.

    Raises:
        FeedParseFailed: the document itself is not a calendar
    """
    try:
        calendar = Calendar.from_ical(text)
    except (ValueError, IndexError) as e:
        raise FeedParseFailed(f"Could not parse calendar: {e}") from e
    if calendar.name != "VCALENDAR":
        raise FeedParseFailed(f"Expected VCALENDAR, got {calendar.name}")

    parsed = ParsedFeed()
    for component in calendar.walk("VEVENT"):
        try:
            start, end = _event_interval(component)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed event {component.get('UID')}: {e}")
            parsed.skipped += 1
            continue

        if str(component.get("STATUS", "")).upper() == "CANCELLED":
            parsed.skipped += 1
            continue
        if end <= window_start or start >= window_end:
            parsed.skipped += 1
            continue

        uid = str(component.get("UID") or f"{start.isoformat()}-{end.isoformat()}")
        parsed.events.append(RemoteEvent(
            uid=uid,
            start=max(start, window_start),
            end=min(end, window_end),
        ))

    parsed.events.sort(key=lambda e: (e.start, e.uid))
    return parsed


def new_export_token() -> str:
    return secrets.token_urlsafe(32)


def export_url(token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/ical/export/{token}.ics"


def _uid_runs(dates: List[date], owners: Dict[date, str]):
    """Consecutive dates with the same owning UID as (start, end, uid)"""
    runs = []
    for d in dates:
        uid = owners[d]
        if runs and runs[-1][1] == d and runs[-1][2] == uid:
            runs[-1] = (runs[-1][0], d + timedelta(days=1), uid)
        else:
            runs.append((d, d + timedelta(days=1), uid))
    return runs


# ================================
# RESULTS
# ================================

@dataclass
class SyncResult:
    feed_id: str
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    events_processed: int = 0
    events_skipped: int = 0
    dates_added: int = 0
    dates_removed: int = 0
    dates_changed: int = 0
    dates_conflicting: int = 0

    @property
    def dates_updated(self) -> int:
        return self.dates_added + self.dates_removed + self.dates_changed

    def to_dict(self) -> dict:
        if not self.success:
            body = {"success": False, "feedId": self.feed_id, "error": self.error}
            if self.skipped:
                body["skipped"] = True
            return body
        return {
            "success": True,
            "feedId": self.feed_id,
            "eventsProcessed": self.events_processed,
            "eventsSkipped": self.events_skipped,
            "datesUpdated": self.dates_updated,
            "datesAdded": self.dates_added,
            "datesRemoved": self.dates_removed,
            "datesConflicting": self.dates_conflicting,
        }


# ================================
# SERVICE
# ================================

class CalendarSyncService:
    """
    Feed management, import and export.

    fetcher is injectable: fetcher(url, timeout) -> str
    """

    def __init__(self, db: Session, fetcher: Optional[Callable[[str, float], str]] = None):
        self.db = db
        self.fetcher = fetcher or fetch_feed
        self.ledger = LedgerService(db)

    # ==================
    # Feed management
    # ==================

    def get_feed(self, feed_id: str) -> SyncFeed:
        feed = self.db.query(SyncFeed).filter(SyncFeed.id == feed_id).first()
        if not feed:
            raise NotFound(f"Feed {feed_id} not found", feed_id=feed_id)
        return feed

    def list_feeds(self, apartment_id: Optional[str] = None) -> List[SyncFeed]:
        query = self.db.query(SyncFeed)
        if apartment_id:
            query = query.filter(SyncFeed.apartment_id == apartment_id)
        return query.order_by(SyncFeed.created_at).all()

    def create_feed(self, apartment_id: str, feed_name: str, remote_url: str, is_active: bool = True) -> SyncFeed:
        CatalogService(self.db).get_apartment(apartment_id)
        feed = SyncFeed(
            apartment_id=apartment_id,
            feed_name=feed_name,
            remote_url=remote_url,
            is_active=is_active,
        )
        self.db.add(feed)
        self.db.flush()
        logger.info(f"Created feed {feed.id} ({feed_name}) for apartment {apartment_id}")
        return feed

    def update_feed(self, feed_id: str, **changes) -> SyncFeed:
        feed = self.get_feed(feed_id)
        for key in ("feed_name", "remote_url", "is_active"):
            if changes.get(key) is not None:
                setattr(feed, key, changes[key])
        self.db.flush()
        return feed

    def delete_feed(self, feed_id: str) -> int:
        """Delete a feed and every ledger record it imported. Returns records removed."""
        feed = self.get_feed(feed_id)
        removed = 0
        dates = [
            row.date for row in self.db.query(AvailabilityRecord.date).filter(
                AvailabilityRecord.feed_id == feed.id
            ).order_by(AvailabilityRecord.date)
        ]
        for start, end in compress_dates(dates):
            removed += self.ledger.clear_range(feed.apartment_id, start, end, feed_id=feed.id)
        self.db.delete(feed)
        self.db.flush()
        logger.info(f"Deleted feed {feed_id} and {removed} imported dates")
        return removed

    # ==================
    # Import
    # ==================

    def sync_window(self):
        today = date.today()
        return today, add_months(today, settings.ical_sync_horizon_months)

    def _claim(self, feed: SyncFeed) -> bool:
        """
        idle|failed -> syncing, or take over a stale syncing claim.

        Commits immediately so other workers see the claim.
        """
        now = datetime.utcnow()
        stale_before = now - timedelta(seconds=settings.ical_sync_stale_after_seconds)
        claimed = self.db.query(SyncFeed).filter(
            SyncFeed.id == feed.id,
            or_(
                SyncFeed.sync_status.in_([FeedSyncStatus.IDLE.value, FeedSyncStatus.FAILED.value]),
                SyncFeed.sync_started_at.is_(None),
                SyncFeed.sync_started_at < stale_before,
            )
        ).update(
            {"sync_status": FeedSyncStatus.SYNCING.value, "sync_started_at": now},
            synchronize_session=False
        )
        self.db.commit()
        return claimed == 1

    def _apply(self, feed: SyncFeed, parsed: ParsedFeed, result: SyncResult) -> None:
        window_start, window_end = self.sync_window()

        desired: Dict[date, str] = {}
        for event in parsed.events:
            for d in iter_dates(event.start, event.end):
                # Overlapping events: the earliest-starting one owns the date
                desired.setdefault(d, event.uid)

        own: Dict[date, AvailabilityRecord] = {}
        foreign = set()
        for record in self.db.query(AvailabilityRecord).filter(
            AvailabilityRecord.apartment_id == feed.apartment_id,
            AvailabilityRecord.date >= window_start,
            AvailabilityRecord.date < window_end
        ):
            if record.feed_id == feed.id:
                own[record.date] = record
            else:
                foreign.add(record.date)

        removed = sorted(d for d in own if d not in desired)
        for start, end in compress_dates(removed):
            result.dates_removed += self.ledger.clear_range(feed.apartment_id, start, end, feed_id=feed.id)

        changed = sorted(d for d, record in own.items() if d in desired and record.reference != desired[d])
        added = sorted(d for d in desired if d not in own and d not in foreign)
        result.dates_conflicting = sum(1 for d in desired if d in foreign)

        for start, end, uid in _uid_runs(changed, desired):
            result.dates_changed += self._write_imported(feed, start, end, uid)
        for start, end, uid in _uid_runs(added, desired):
            result.dates_added += self._write_imported(feed, start, end, uid)

    def _write_imported(self, feed: SyncFeed, start: date, end: date, uid: str) -> int:
        return self.ledger.set_range(
            feed.apartment_id, start, end, DayStatus.BOOKED,
            reference=uid,
            note=feed.feed_name,
            source=RecordSource.ICAL,
            feed_id=feed.id,
        )

    def _mark_failed(self, feed_id: str, error: str) -> None:
        feed = self.get_feed(feed_id)
        feed.sync_status = FeedSyncStatus.FAILED.value
        feed.last_error = error[:2000]
        feed.error_count = (feed.error_count or 0) + 1
        self.db.commit()

    def sync_feed(self, feed_id: str) -> SyncResult:
        """
        Reconcile one feed into the ledger.

        Returns a result rather than raising for fetch/parse/apply failures, so
        one bad feed never aborts anything else.

        Commits on the session it was given, so it must be called outside any
        other unit of work.

        Raises:
            LedgerError: the session holds unsaved changes
        """
        if self.db.new or self.db.dirty or self.db.deleted:
            raise LedgerError("Feed sync cannot run with unsaved changes in the session", feed_id=feed_id)

        feed = self.get_feed(feed_id)
        if not feed.is_active:
            return SyncResult(feed_id=feed_id, success=False, skipped=True, error="Feed is inactive")

        if not self._claim(feed):
            logger.info(f"Feed {feed_id} is already syncing, skipping")
            record_feed_sync(False, 0, skipped=True)
            return SyncResult(feed_id=feed_id, success=False, skipped=True, error="Sync already in progress")

        start_time = time.perf_counter()
        result = SyncResult(feed_id=feed_id, success=True)
        try:
            text = self.fetcher(feed.remote_url, settings.ical_fetch_timeout_seconds)
            window_start, window_end = self.sync_window()
            parsed = parse_feed(text, window_start, window_end)
            result.events_processed = len(parsed.events)
            result.events_skipped = parsed.skipped

            with atomic(self.db):
                feed = self.get_feed(feed_id)
                self._apply(feed, parsed, result)
                feed.sync_status = FeedSyncStatus.IDLE.value
                feed.sync_started_at = None
                feed.last_sync_timestamp = datetime.utcnow()
                feed.last_error = None
                feed.last_events_processed = result.events_processed
                feed.last_dates_updated = result.dates_updated
        except (LedgerError, SQLAlchemyError) as e:
            message = e.message if isinstance(e, LedgerError) else str(e)
            logger.error(f"Feed {feed_id} sync failed: {message}")
            self._mark_failed(feed_id, message)
            result = SyncResult(feed_id=feed_id, success=False, error=message)

        duration = time.perf_counter() - start_time
        record_feed_sync(result.success, duration)
        logger.feed_synced(
            feed_id,
            result.success,
            round(duration * 1000, 2),
            events_processed=result.events_processed,
            dates_updated=result.dates_updated,
        )
        return result

    def sync_apartment_feeds(self, apartment_id: str) -> List[SyncResult]:
        feeds = self.db.query(SyncFeed).filter(
            SyncFeed.apartment_id == apartment_id,
            SyncFeed.is_active == True  # noqa: E712
        ).all()
        return [self.sync_feed(feed.id) for feed in feeds]

    def sync_due_feeds(self, limit: Optional[int] = None) -> List[SyncResult]:
        """Sync active feeds not synced within the configured interval"""
        due_before = datetime.utcnow() - timedelta(seconds=settings.ical_sync_interval_seconds)
        feed_ids = [
            row.id for row in self.db.query(SyncFeed.id).filter(
                SyncFeed.is_active == True,  # noqa: E712
                or_(SyncFeed.last_sync_timestamp.is_(None), SyncFeed.last_sync_timestamp < due_before)
            ).order_by(SyncFeed.last_sync_timestamp.is_(None).desc(), SyncFeed.last_sync_timestamp)
            .limit(limit or settings.worker_batch_size)
        ]
        return [self.sync_feed(feed_id) for feed_id in feed_ids]

    def cleanup_orphaned_records(self) -> int:
        """Remove imported records whose feed no longer exists"""
        feed_ids = select(SyncFeed.id)
        orphaned = or_(AvailabilityRecord.feed_id.is_(None), ~AvailabilityRecord.feed_id.in_(feed_ids))
        rows = self.db.query(AvailabilityRecord.apartment_id, AvailabilityRecord.date).filter(
            AvailabilityRecord.source == RecordSource.ICAL.value,
            orphaned
        ).order_by(AvailabilityRecord.apartment_id, AvailabilityRecord.date).all()

        by_apartment: Dict[str, List[date]] = {}
        for row in rows:
            by_apartment.setdefault(row.apartment_id, []).append(row.date)

        removed = 0
        for apartment_id, dates in by_apartment.items():
            for start, end in compress_dates(dates):
                removed += self.ledger.clear_range(
                    apartment_id, start, end, source=RecordSource.ICAL, extra_filters=(orphaned,)
                )
        if removed:
            logger.info(f"Removed {removed} orphaned imported dates")
        return removed

    # ==================
    # Export links
    # ==================

    def get_export_link(self, apartment_id: str) -> CalendarExportLink:
        """The apartment's export link, created on first request. An inactive link is returned as is."""
        link = self.db.query(CalendarExportLink).filter(CalendarExportLink.apartment_id == apartment_id).first()
        if link:
            return link
        CatalogService(self.db).get_apartment(apartment_id)
        link = CalendarExportLink(apartment_id=apartment_id, export_token=new_export_token(), is_active=True)
        self.db.add(link)
        self.db.flush()
        logger.info(f"Created export link for apartment {apartment_id}")
        return link

    def regenerate_export_link(self, apartment_id: str) -> CalendarExportLink:
        """Replace the token and reactivate. The old URL stops working immediately."""
        link = self.get_export_link(apartment_id)
        link.export_token = new_export_token()
        link.is_active = True
        link.access_count = 0
        link.last_accessed_at = None
        self.db.flush()
        logger.info(f"Regenerated export link for apartment {apartment_id}")
        return link

    def deactivate_export_link(self, apartment_id: str) -> CalendarExportLink:
        link = self.db.query(CalendarExportLink).filter(CalendarExportLink.apartment_id == apartment_id).first()
        if not link:
            raise NotFound(f"Apartment {apartment_id} has no export link", apartment_id=apartment_id)
        link.is_active = False
        self.db.flush()
        logger.info(f"Deactivated export link for apartment {apartment_id}")
        return link

    def list_export_links(self) -> List[CalendarExportLink]:
        return self.db.query(CalendarExportLink).order_by(CalendarExportLink.created_at.desc()).all()

    def resolve_export_token(self, token: str) -> CalendarExportLink:
        """
        Active link for a token, counting the access.

        Raises:
            NotFound: unknown or deactivated token
        """
        link = self.db.query(CalendarExportLink).filter(
            CalendarExportLink.export_token == token,
            CalendarExportLink.is_active == True  # noqa: E712
        ).first()
        if not link:
            raise NotFound("Invalid or inactive export token")
        link.access_count = (link.access_count or 0) + 1
        link.last_accessed_at = datetime.utcnow()
        self.db.flush()
        return link

    # ==================
    # Export
    # ==================

    def export_calendar(self, apartment_id: str) -> bytes:
        """Booked and blocked ranges of one apartment as an iCal document"""
        apartment = CatalogService(self.db).get_apartment(apartment_id)
        ranges = self.ledger.blockout_ranges(apartment_id, from_date=date.today(), split_on_reference=False)

        calendar = Calendar()
        calendar.add("prodid", settings.ical_prodid)
        calendar.add("version", "2.0")
        calendar.add("calscale", "GREGORIAN")
        calendar.add("method", "PUBLISH")
        calendar.add("x-wr-calname", f"{apartment.title} - {settings.ical_calendar_suffix}")
        calendar.add("x-wr-timezone", settings.ical_timezone)
        refresh = vDuration(timedelta(hours=1))
        refresh.params["VALUE"] = "DURATION"
        calendar.add("refresh-interval", refresh)
        calendar.add("x-published-ttl", "PT1H")

        stamp = datetime.utcnow()
        for r in ranges:
            booked = r["status"] == DayStatus.BOOKED.value
            event = Event()
            event.add("uid", f"bond-{apartment_id}-{r['start'].isoformat()}-{r['status']}@{settings.ical_uid_domain}")
            event.add("dtstamp", stamp)
            event.add("dtstart", r["start"])
            event.add("dtend", r["end"])
            event.add("summary", "Booked" if booked else "Blocked")
            event.add("status", "CONFIRMED" if booked else "TENTATIVE")
            event.add("transp", "OPAQUE")
            calendar.add_component(event)

        logger.info(f"Exported {len(ranges)} ranges for apartment {apartment_id}")
        return calendar.to_ical()

    def export_calendar_for_token(self, token: str) -> bytes:
        """Public entry point: the export of whichever apartment an active token belongs to"""
        link = self.resolve_export_token(token)
        return self.export_calendar(link.apartment_id)
