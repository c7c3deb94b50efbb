"""
Calendar Sync Tests

Tests cover:
- Feed parsing (exclusive all-day ends, date-time truncation, window clipping, skips)
- Import diffing: add, remove, UID change, never overwriting other writers
- Failure isolation: fetch/parse errors leave the ledger untouched
- Sync claims: one run per feed at a time, stale claims taken over
- Feed deletion, orphan cleanup, due-feed selection
- Export as a parseable iCal document
"""

import pytest
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock, patch

import httpx
from icalendar import Calendar
from sqlalchemy.orm import sessionmaker

from bond_ledger.exceptions import FeedFetchFailed, FeedParseFailed, LedgerError, NotFound
from bond_ledger.models import AvailabilityRecord, DayStatus, RecordSource, SyncFeed
from bond_ledger.services.ical_sync import CalendarSyncService, SyncResult, export_url, fetch_feed, parse_feed
from bond_ledger.sync_worker import run_sync_cycle

TODAY = date.today()


def day(offset: int) -> date:
    return TODAY + timedelta(days=offset)


def vevent(uid=None, start=None, end=None, status=None, extra=()):
    lines = ["BEGIN:VEVENT"]
    if uid:
        lines.append(f"UID:{uid}")
    if start is not None:
        lines.append(f"DTSTART;VALUE=DATE:{start:%Y%m%d}")
    if end is not None:
        lines.append(f"DTEND;VALUE=DATE:{end:%Y%m%d}")
    if status:
        lines.append(f"STATUS:{status}")
    lines.extend(extra)
    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def ics(*events):
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//Feed//EN", *events, "END:VCALENDAR"]
    return "\r\n".join(lines) + "\r\n"


class StubFetcher:
    """Stands in for the HTTP fetch"""

    def __init__(self, text=None, error=None):
        self.text = text if text is not None else ics()
        self.error = error
        self.calls = []

    def __call__(self, url, timeout):
        self.calls.append(url)
        if self.error:
            raise self.error
        return self.text


def _records(db, apartment_id):
    return db.query(AvailabilityRecord).filter(
        AvailabilityRecord.apartment_id == apartment_id
    ).order_by(AvailabilityRecord.date).all()


@pytest.fixture
def apartment(make_apartment):
    return make_apartment(title="Sea View")


@pytest.fixture
def feed(db, apartment):
    feed = CalendarSyncService(db).create_feed(apartment.id, "Airbnb", "https://example.com/airbnb.ics")
    db.commit()
    return feed


# ================================
# PARSING
# ================================

class TestParseFeed:
    WINDOW = (date(2025, 1, 1), date(2026, 1, 1))

    def test_all_day_end_is_exclusive(self):
        text = ics(vevent("a", date(2025, 3, 10), date(2025, 3, 13)))

        parsed = parse_feed(text, *self.WINDOW)

        assert [(e.uid, e.start, e.end) for e in parsed.events] == [("a", date(2025, 3, 10), date(2025, 3, 13))]
        assert parsed.skipped == 0

    def test_date_times_truncate_to_dates(self):
        text = ics(
            vevent("timed", extra=("DTSTART:20250310T150000Z", "DTEND:20250313T110000Z")),
            vevent("same-day", extra=("DTSTART:20250320T100000Z", "DTEND:20250320T120000Z")),
        )

        parsed = parse_feed(text, *self.WINDOW)

        assert [(e.start, e.end) for e in parsed.events] == [
            (date(2025, 3, 10), date(2025, 3, 13)),
            (date(2025, 3, 20), date(2025, 3, 21)),
        ]

    def test_missing_end_holds_one_night(self):
        parsed = parse_feed(ics(vevent("one", date(2025, 4, 1))), *self.WINDOW)

        assert (parsed.events[0].start, parsed.events[0].end) == (date(2025, 4, 1), date(2025, 4, 2))

    def test_duration_sets_end(self):
        parsed = parse_feed(ics(vevent("dur", date(2025, 4, 1), extra=("DURATION:P3D",))), *self.WINDOW)

        assert parsed.events[0].end == date(2025, 4, 4)

    def test_events_outside_window_skipped_and_edges_clipped(self):
        text = ics(
            vevent("past", date(2024, 6, 1), date(2024, 6, 5)),
            vevent("future", date(2026, 2, 1), date(2026, 2, 5)),
            vevent("edge", date(2024, 12, 30), date(2025, 1, 3)),
        )

        parsed = parse_feed(text, *self.WINDOW)

        assert [(e.uid, e.start, e.end) for e in parsed.events] == [("edge", date(2025, 1, 1), date(2025, 1, 3))]
        assert parsed.skipped == 2

    def test_malformed_and_cancelled_events_skipped(self):
        text = ics(
            vevent("no-start", end=date(2025, 5, 3)),
            vevent("cancelled", date(2025, 5, 1), date(2025, 5, 3), status="CANCELLED"),
            vevent("ok", date(2025, 5, 10), date(2025, 5, 12)),
        )

        parsed = parse_feed(text, *self.WINDOW)

        assert [e.uid for e in parsed.events] == ["ok"]
        assert parsed.skipped == 2

    def test_missing_uid_gets_stable_key(self):
        parsed = parse_feed(ics(vevent(None, date(2025, 5, 10), date(2025, 5, 12))), *self.WINDOW)

        assert parsed.events[0].uid == "2025-05-10-2025-05-12"

    def test_garbage_raises(self):
        with pytest.raises(FeedParseFailed):
            parse_feed("this is not a calendar", *self.WINDOW)

    def test_non_calendar_document_raises(self):
        with pytest.raises(FeedParseFailed):
            parse_feed(vevent("a", date(2025, 3, 10), date(2025, 3, 13)) + "\r\n", *self.WINDOW)


# ================================
# FETCHING
# ================================

class TestFetchFeed:

    @patch("bond_ledger.services.ical_sync.httpx.Client")
    def test_returns_body(self, mock_client_cls):
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = MagicMock(text="BEGIN:VCALENDAR")

        assert fetch_feed("https://example.com/a.ics", 5) == "BEGIN:VCALENDAR"
        mock_client_cls.assert_called_once_with(timeout=5, follow_redirects=True)

    @pytest.mark.parametrize("error", [
        httpx.ReadTimeout("slow"),
        httpx.ConnectError("refused"),
        httpx.HTTPStatusError("bad", request=MagicMock(), response=MagicMock(status_code=503)),
    ])
    def test_transport_errors_become_fetch_failed(self, error):
        with patch("bond_ledger.services.ical_sync.httpx.Client") as mock_client_cls:
            client = mock_client_cls.return_value.__enter__.return_value
            client.get.side_effect = error

            with pytest.raises(FeedFetchFailed):
                fetch_feed("https://example.com/a.ics", 5)


# ================================
# IMPORT
# ================================

class TestSyncFeed:

    def test_import_tags_records_with_feed(self, db, apartment, feed):
        fetcher = StubFetcher(ics(vevent("airbnb-1", day(10), day(13))))

        result = CalendarSyncService(db, fetcher=fetcher).sync_feed(feed.id)

        assert result.success is True
        assert result.events_processed == 1
        assert result.dates_added == 3
        records = _records(db, apartment.id)
        assert [r.date for r in records] == [day(10), day(11), day(12)]
        assert all(
            r.status == "booked" and r.source == "ical" and r.feed_id == feed.id
            and r.reference == "airbnb-1" and r.note == "Airbnb"
            for r in records
        )
        db.refresh(feed)
        assert feed.sync_status == "idle"
        assert feed.last_sync_timestamp is not None
        assert feed.last_dates_updated == 3

    def test_event_removed_upstream_is_released(self, db, apartment, feed):
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(13))))).sync_feed(feed.id)

        result = CalendarSyncService(db, fetcher=StubFetcher(ics())).sync_feed(feed.id)

        assert result.dates_removed == 3
        assert _records(db, apartment.id) == []

    def test_shrunk_event_releases_tail(self, db, apartment, feed):
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(15))))).sync_feed(feed.id)

        result = CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(12))))).sync_feed(feed.id)

        assert result.dates_removed == 3
        assert result.dates_added == 0
        assert [r.date for r in _records(db, apartment.id)] == [day(10), day(11)]

    def test_uid_change_rewrites_reference(self, db, apartment, feed):
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("old", day(10), day(13))))).sync_feed(feed.id)

        result = CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("new", day(10), day(13))))).sync_feed(feed.id)

        assert result.dates_changed == 3
        assert result.dates_updated == 3
        assert {r.reference for r in _records(db, apartment.id)} == {"new"}

    def test_unchanged_feed_is_a_no_op(self, db, apartment, feed):
        text = ics(vevent("a", day(10), day(13)))
        CalendarSyncService(db, fetcher=StubFetcher(text)).sync_feed(feed.id)

        result = CalendarSyncService(db, fetcher=StubFetcher(text)).sync_feed(feed.id)

        assert result.dates_updated == 0

    def test_manual_block_never_overwritten(self, db, apartment, feed, block):
        block(apartment.id, day(11), day(12), note="owner stay")
        service = CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(13)))))

        result = service.sync_feed(feed.id)

        assert result.dates_added == 2
        assert result.dates_conflicting == 1
        manual = [r for r in _records(db, apartment.id) if r.date == day(11)][0]
        assert manual.source == "manual"
        assert manual.note == "owner stay"

        CalendarSyncService(db, fetcher=StubFetcher(ics())).sync_feed(feed.id)
        assert [(r.date, r.source) for r in _records(db, apartment.id)] == [(day(11), "manual")]

    def test_other_feeds_records_untouched(self, db, apartment, feed):
        other = CalendarSyncService(db).create_feed(apartment.id, "Booking.com", "https://example.com/bdc.ics")
        db.commit()
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("bdc", day(20), day(22))))).sync_feed(other.id)

        CalendarSyncService(db, fetcher=StubFetcher(ics())).sync_feed(feed.id)

        assert [r.feed_id for r in _records(db, apartment.id)] == [other.id, other.id]

    def test_fetch_failure_leaves_ledger_untouched(self, db, apartment, feed):
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(13))))).sync_feed(feed.id)
        failing = StubFetcher(error=FeedFetchFailed("Timed out fetching feed after 10.0s"))

        result = CalendarSyncService(db, fetcher=failing).sync_feed(feed.id)

        assert result.success is False
        assert "Timed out" in result.error
        assert len(_records(db, apartment.id)) == 3
        db.refresh(feed)
        assert feed.sync_status == "failed"
        assert feed.error_count == 1
        assert feed.last_error.startswith("Timed out")

    def test_parse_failure_leaves_ledger_untouched(self, db, apartment, feed):
        result = CalendarSyncService(db, fetcher=StubFetcher("<html>oops</html>")).sync_feed(feed.id)

        assert result.success is False
        assert result.to_dict() == {"success": False, "feedId": feed.id, "error": result.error}
        assert _records(db, apartment.id) == []

    def test_failed_feed_can_sync_again(self, db, apartment, feed):
        CalendarSyncService(db, fetcher=StubFetcher(error=FeedFetchFailed("down"))).sync_feed(feed.id)

        result = CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(1), day(2))))).sync_feed(feed.id)

        assert result.success is True
        db.refresh(feed)
        assert feed.sync_status == "idle"
        assert feed.last_error is None

    def test_sync_in_progress_is_skipped(self, db, feed):
        feed.sync_status = "syncing"
        feed.sync_started_at = datetime.utcnow()
        db.commit()
        fetcher = StubFetcher()

        result = CalendarSyncService(db, fetcher=fetcher).sync_feed(feed.id)

        assert result.skipped is True
        assert fetcher.calls == []

    def test_stale_claim_taken_over(self, db, feed):
        feed.sync_status = "syncing"
        feed.sync_started_at = datetime.utcnow() - timedelta(hours=2)
        db.commit()
        fetcher = StubFetcher()

        result = CalendarSyncService(db, fetcher=fetcher).sync_feed(feed.id)

        assert result.success is True
        assert fetcher.calls == [feed.remote_url]

    def test_refuses_to_commit_callers_pending_changes(self, db, apartment, feed):
        feed.feed_name = "Renamed"
        fetcher = StubFetcher()

        with pytest.raises(LedgerError):
            CalendarSyncService(db, fetcher=fetcher).sync_feed(feed.id)

        assert fetcher.calls == []
        db.rollback()
        db.refresh(feed)
        assert feed.feed_name != "Renamed"
        assert feed.sync_status == "idle"

    def test_inactive_feed_skipped(self, db, feed):
        feed.is_active = False
        db.commit()
        fetcher = StubFetcher()

        result = CalendarSyncService(db, fetcher=fetcher).sync_feed(feed.id)

        assert result.skipped is True
        assert fetcher.calls == []

    def test_result_uses_camel_case_keys(self, db, feed):
        result = CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(3), day(5))))).sync_feed(feed.id)

        assert result.to_dict() == {
            "success": True,
            "feedId": feed.id,
            "eventsProcessed": 1,
            "eventsSkipped": 0,
            "datesUpdated": 2,
            "datesAdded": 2,
            "datesRemoved": 0,
            "datesConflicting": 0,
        }

    def test_skipped_result_flagged(self):
        body = SyncResult(feed_id="f", success=False, skipped=True, error="Feed is inactive").to_dict()

        assert body["skipped"] is True


class TestFeedManagement:

    def test_delete_feed_removes_its_records_only(self, db, apartment, feed, block):
        block(apartment.id, day(30), day(31))
        CalendarSyncService(db, fetcher=StubFetcher(ics(vevent("a", day(10), day(13))))).sync_feed(feed.id)
        service = CalendarSyncService(db)

        removed = service.delete_feed(feed.id)
        db.commit()

        assert removed == 3
        assert db.query(SyncFeed).count() == 0
        assert [r.source for r in _records(db, apartment.id)] == ["manual"]

    def test_update_feed(self, db, feed):
        service = CalendarSyncService(db)

        service.update_feed(feed.id, feed_name="Airbnb (main)", is_active=False)
        db.commit()

        assert service.get_feed(feed.id).feed_name == "Airbnb (main)"
        assert service.get_feed(feed.id).is_active is False

    def test_list_feeds_by_apartment(self, db, apartment, feed, make_apartment):
        other = make_apartment(title="Other")
        CalendarSyncService(db).create_feed(other.id, "VRBO", "https://example.com/vrbo.ics")
        db.commit()

        assert [f.id for f in CalendarSyncService(db).list_feeds(apartment.id)] == [feed.id]
        assert len(CalendarSyncService(db).list_feeds()) == 2

    def test_cleanup_orphaned_records(self, db, apartment, block):
        block(apartment.id, day(5), day(7), status=DayStatus.BOOKED, source=RecordSource.ICAL, feed_id="deleted-feed")
        block(apartment.id, day(9), day(10))
        service = CalendarSyncService(db)

        removed = service.cleanup_orphaned_records()
        db.commit()

        assert removed == 2
        assert [r.date for r in _records(db, apartment.id)] == [day(9)]

    def test_sync_due_feeds_skips_recent(self, db, apartment, feed):
        fresh = CalendarSyncService(db).create_feed(apartment.id, "Fresh", "https://example.com/fresh.ics")
        fresh.last_sync_timestamp = datetime.utcnow()
        db.commit()
        fetcher = StubFetcher()

        results = CalendarSyncService(db, fetcher=fetcher).sync_due_feeds()

        assert [r.feed_id for r in results] == [feed.id]
        assert fetcher.calls == ["https://example.com/airbnb.ics"]

    def test_worker_cycle_counts_results(self, engine, db, feed):
        with patch("bond_ledger.sync_worker.SessionLocal", sessionmaker(bind=engine)), \
                patch("bond_ledger.services.ical_sync.fetch_feed", side_effect=FeedFetchFailed("down")):
            stats = run_sync_cycle(batch_size=5)

        assert stats == {"synced": 0, "failed": 1, "skipped": 0, "orphans_removed": 0}


# ================================
# EXPORT
# ================================

class TestExport:

    def test_export_merges_ranges_and_round_trips(self, db, apartment, block):
        block(apartment.id, day(-5), day(-2), status=DayStatus.BOOKED)
        block(apartment.id, day(2), day(4), status=DayStatus.BOOKED, reference="bk-1")
        block(apartment.id, day(4), day(6), status=DayStatus.BOOKED, reference="bk-2")
        block(apartment.id, day(8), day(9))

        body = CalendarSyncService(db).export_calendar(apartment.id)

        calendar = Calendar.from_ical(body)
        assert str(calendar["X-WR-CALNAME"]) == "Sea View - Bond Coliving"
        events = calendar.walk("VEVENT")
        assert [(e.decoded("DTSTART"), e.decoded("DTEND")) for e in events] == [(day(2), day(6)), (day(8), day(9))]
        assert [str(e["SUMMARY"]) for e in events] == ["Booked", "Blocked"]
        assert [str(e["STATUS"]) for e in events] == ["CONFIRMED", "TENTATIVE"]
        assert str(events[0]["UID"]) == f"bond-{apartment.id}-{day(2).isoformat()}-booked@stayatbond.com"

    def test_export_is_parseable_by_import(self, db, apartment, block):
        block(apartment.id, day(2), day(4), status=DayStatus.BOOKED)

        body = CalendarSyncService(db).export_calendar(apartment.id)
        parsed = parse_feed(body.decode("utf-8"), TODAY, day(365))

        assert [(e.start, e.end) for e in parsed.events] == [(day(2), day(4))]

    def test_empty_calendar_still_valid(self, db, apartment):
        calendar = Calendar.from_ical(CalendarSyncService(db).export_calendar(apartment.id))

        assert calendar.walk("VEVENT") == []
        assert str(calendar["VERSION"]) == "2.0"


class TestExportLinks:

    def test_created_once_per_apartment(self, db, apartment):
        service = CalendarSyncService(db)

        first = service.get_export_link(apartment.id)
        db.commit()
        again = service.get_export_link(apartment.id)

        assert again.id == first.id
        assert again.export_token == first.export_token
        assert first.is_active is True
        assert len(first.export_token) >= 32
        assert export_url(first.export_token).endswith(f"/api/ical/export/{first.export_token}.ics")

    def test_unknown_apartment_rejected(self, db):
        with pytest.raises(NotFound):
            CalendarSyncService(db).get_export_link("missing")

    def test_regenerate_replaces_token(self, db, apartment):
        service = CalendarSyncService(db)
        old_token = service.get_export_link(apartment.id).export_token
        service.resolve_export_token(old_token)
        db.commit()

        link = service.regenerate_export_link(apartment.id)
        db.commit()

        assert link.export_token != old_token
        assert link.access_count == 0
        with pytest.raises(NotFound):
            service.resolve_export_token(old_token)
        assert service.resolve_export_token(link.export_token).apartment_id == apartment.id

    def test_regenerate_reactivates(self, db, apartment):
        service = CalendarSyncService(db)
        service.get_export_link(apartment.id)
        service.deactivate_export_link(apartment.id)

        link = service.regenerate_export_link(apartment.id)

        assert link.is_active is True

    def test_deactivated_token_not_served(self, db, apartment):
        service = CalendarSyncService(db)
        token = service.get_export_link(apartment.id).export_token
        service.deactivate_export_link(apartment.id)
        db.commit()

        with pytest.raises(NotFound):
            service.export_calendar_for_token(token)
        assert service.get_export_link(apartment.id).is_active is False

    def test_deactivate_without_link(self, db, apartment):
        with pytest.raises(NotFound):
            CalendarSyncService(db).deactivate_export_link(apartment.id)

    def test_access_is_counted(self, db, apartment, block):
        block(apartment.id, day(3), day(5), status=DayStatus.BOOKED)
        service = CalendarSyncService(db)
        token = service.get_export_link(apartment.id).export_token

        body = service.export_calendar_for_token(token)
        service.export_calendar_for_token(token)

        link = service.get_export_link(apartment.id)
        assert link.access_count == 2
        assert link.last_accessed_at is not None
        assert b"BEGIN:VEVENT" in body

    def test_list_export_links(self, db, apartment, make_apartment):
        other = make_apartment(title="Garden")
        service = CalendarSyncService(db)
        service.get_export_link(apartment.id)
        service.get_export_link(other.id)

        assert {link.apartment_id for link in service.list_export_links()} == {apartment.id, other.id}
