# Models package
from .apartment import Apartment, ApartmentStatus
from .availability import AvailabilityRecord, LedgerVersion, DayStatus, RecordSource, DEFAULT_STATUS
from .booking import Booking, BookingSegment, BookingStatus, BookingSource
from .sync_feed import SyncFeed, FeedSyncStatus
from .export_link import CalendarExportLink

__all__ = [
    "Apartment", "ApartmentStatus",
    "AvailabilityRecord", "LedgerVersion", "DayStatus", "RecordSource", "DEFAULT_STATUS",
    "Booking", "BookingSegment", "BookingStatus", "BookingSource",
    "SyncFeed", "FeedSyncStatus",
    "CalendarExportLink",
]
