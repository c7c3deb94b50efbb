# Services package
from .ledger import LedgerService, validate_range
from .availability_query import AvailabilityQuery
from .catalog import CatalogService
from .split_stay import (
    SplitStayService, SplitStayOption, ProposedSegment, ApartmentCandidate,
    allocate, ranking_key, segment_price
)
from .booking_lifecycle import BookingCoordinator, SegmentRequest
from .ical_sync import CalendarSyncService, SyncResult, RemoteEvent, ParsedFeed, fetch_feed, parse_feed

__all__ = [
    "LedgerService", "validate_range",
    "AvailabilityQuery",
    "CatalogService",
    "SplitStayService", "SplitStayOption", "ProposedSegment", "ApartmentCandidate",
    "allocate", "ranking_key", "segment_price",
    "BookingCoordinator", "SegmentRequest",
    "CalendarSyncService", "SyncResult", "RemoteEvent", "ParsedFeed", "fetch_feed", "parse_feed",
]
