from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from typing import List
import logging

from ..database import get_db
from ..schemas.booking import BookingCreate, BookingResponse, SegmentsUpdate, SegmentIn
from ..services.booking_lifecycle import BookingCoordinator, SegmentRequest
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _segment_requests(segments: List[SegmentIn]) -> List[SegmentRequest]:
    return [
        SegmentRequest(
            apartment_id=s.apartment_id,
            check_in=s.check_in_date,
            check_out=s.check_out_date,
            price=s.price,
            notes=s.notes,
        )
        for s in segments
    ]


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def request_booking(data: BookingCreate, db: Session = Depends(get_db)):
    """Create a booking in 'requested' state; the ledger is written on confirm"""
    booking = BookingCoordinator(db).request(
        _segment_requests(data.segments),
        guest_name=data.guest_name,
        guest_email=data.guest_email,
        guest_phone=data.guest_phone,
        guest_count=data.guest_count,
        special_instructions=data.special_instructions,
        booking_source=data.booking_source.value,
    )
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    return BookingCoordinator(db).get(booking_id)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_confirm"))
def confirm_booking(request: Request, booking_id: str, db: Session = Depends(get_db)):
    """
    Re-validate and write every segment to the ledger.

    409 with reason=unavailable: someone else just booked these dates, search again.
    409 with reason=concurrent_write: the calendar was busy, retrying may succeed.
    """
    return BookingCoordinator(db).confirm(booking_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(booking_id: str, db: Session = Depends(get_db)):
    return BookingCoordinator(db).cancel(booking_id)


@router.put("/{booking_id}/segments", response_model=BookingResponse)
def modify_booking(booking_id: str, data: SegmentsUpdate, db: Session = Depends(get_db)):
    return BookingCoordinator(db).modify(booking_id, _segment_requests(data.segments))
