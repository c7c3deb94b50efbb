from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
import datetime as dt
from decimal import Decimal

from ..models.availability import DayStatus


class AvailabilityCheckResponse(BaseModel):
    apartment_id: str
    start: dt.date
    end: dt.date
    available: bool


class NextAvailableResponse(BaseModel):
    apartment_id: str
    date: Optional[dt.date] = None


class CalendarDay(BaseModel):
    date: dt.date
    status: DayStatus
    reference: Optional[str] = None
    note: Optional[str] = None
    source: Optional[str] = None


class CalendarResponse(BaseModel):
    apartment_id: str
    start: dt.date
    end: dt.date
    days: List[CalendarDay]


class BulkAvailabilityUpdate(BaseModel):
    dates: List[dt.date] = Field(..., min_length=1, max_length=1000)
    status: DayStatus
    note: Optional[str] = Field(None, max_length=2000)

    @field_validator('note', mode='before')
    @classmethod
    def strip_note(cls, v):
        if isinstance(v, str):
            v = v.strip() or None
        return v


class BulkAvailabilityResponse(BaseModel):
    apartment_id: str
    dates_updated: int
    ranges: int


class BlockoutRange(BaseModel):
    apartment_id: str
    start: dt.date
    end: dt.date
    status: DayStatus
    reference: Optional[str] = None
    source: Optional[str] = None
    note: Optional[str] = None


class ApartmentSummary(BaseModel):
    id: str
    title: str
    price: Decimal
    nightly_price: Optional[Decimal] = None
    capacity: int = 1
    sort_order: int = 0

    class Config:
        from_attributes = True


class ProposedSegmentResponse(BaseModel):
    apartment_id: str
    title: str = ""
    check_in: dt.date
    check_out: dt.date
    nights: int
    price: Decimal


class SplitStayOptionResponse(BaseModel):
    segments: List[ProposedSegmentResponse]
    segment_count: int
    total_price: Decimal
    is_split_stay: bool


class SplitStaySearchResponse(BaseModel):
    check_in: dt.date
    check_out: dt.date
    max_segments: int
    options: List[SplitStayOptionResponse]
    infeasible: bool
    detail: Optional[dict] = None


class AvailabilitySearchResponse(BaseModel):
    """Whole-stay apartments first; split-stay options only when none exist"""
    check_in: dt.date
    check_out: dt.date
    apartments: List[ApartmentSummary]
    split_stay_options: List[SplitStayOptionResponse] = []
    infeasible: bool = False
    detail: Optional[dict] = None
