from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime, date
from decimal import Decimal
import re

from ..models.booking import BookingStatus, BookingSource


def _sanitize(v):
    """Strip script tags and inline event handlers"""
    if isinstance(v, str):
        v = re.sub(r'<script[^>]*>.*?</script>', '', v, flags=re.IGNORECASE | re.DOTALL)
        v = re.sub(r'on\w+\s*=', '', v, flags=re.IGNORECASE)
    return v


class SegmentIn(BaseModel):
    apartment_id: str = Field(..., min_length=1, max_length=36)
    check_in_date: date
    check_out_date: date
    price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def validate_dates(self):
        """check_out_date is exclusive and must be after check_in_date"""
        if self.check_out_date <= self.check_in_date:
            raise ValueError('check_out_date must be after check_in_date')
        return self


class BookingCreate(BaseModel):
    segments: List[SegmentIn] = Field(..., min_length=1, max_length=10)
    guest_name: str = Field(..., min_length=1, max_length=200)
    guest_email: Optional[str] = Field(None, max_length=255)
    guest_phone: Optional[str] = Field(None, max_length=30)
    guest_count: int = Field(1, ge=1, le=20)
    special_instructions: Optional[str] = Field(None, max_length=2000)
    booking_source: BookingSource = BookingSource.DIRECT

    @field_validator('guest_name', 'special_instructions', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        return _sanitize(v)


class SegmentsUpdate(BaseModel):
    segments: List[SegmentIn] = Field(..., min_length=1, max_length=10)


class SegmentResponse(BaseModel):
    id: str
    apartment_id: str
    segment_order: int
    check_in_date: date
    check_out_date: date
    segment_price: Decimal
    nights: int
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: str
    apartment_id: Optional[str] = None
    check_in_date: date
    check_out_date: date
    guest_name: str
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    guest_count: int = 1
    special_instructions: Optional[str] = None
    total_amount: Decimal
    status: BookingStatus
    booking_source: str
    is_split_stay: bool
    segments: List[SegmentResponse]
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
