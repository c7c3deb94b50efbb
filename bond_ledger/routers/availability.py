from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
import logging

from ..config import settings
from ..database import get_db
from ..exceptions import Infeasible
from ..schemas.availability import (
    AvailabilityCheckResponse, NextAvailableResponse, CalendarResponse,
    BulkAvailabilityUpdate, BulkAvailabilityResponse, BlockoutRange,
    AvailabilitySearchResponse, ApartmentSummary
)
from ..services.availability_query import AvailabilityQuery
from ..services.catalog import CatalogService
from ..services.ledger import LedgerService
from ..services.split_stay import SplitStayService
from ..utils.db_helpers import atomic
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/availability", tags=["Availability"])


@router.get("/blockouts", response_model=List[BlockoutRange])
def list_blockouts(
    apartment_id: Optional[str] = None,
    from_date: Optional[date] = None,
    db: Session = Depends(get_db)
):
    """Booked/blocked days compressed into ranges, for the admin calendar"""
    return LedgerService(db).blockout_ranges(apartment_id, from_date=from_date)


@router.get("/search", response_model=AvailabilitySearchResponse)
@limiter.limit(get_rate_limit("search"))
def search_availability(
    request: Request,
    start: date,
    end: date,
    max_segments: Optional[int] = Query(None, ge=2, le=10),
    db: Session = Depends(get_db)
):
    """
    Apartments free for the whole stay; when there are none, split-stay options.

    infeasible=true means nothing can cover the stay, which is not an error.
    """
    apartments = AvailabilityQuery(db).available_apartments(start, end)
    options = []
    if not apartments and settings.split_stays_enabled:
        options = [
            o.to_dict() for o in SplitStayService(db).find_split_stay_options(start, end, max_segments)
        ]

    infeasible = not apartments and not options
    return AvailabilitySearchResponse(
        check_in=start,
        check_out=end,
        apartments=[ApartmentSummary.model_validate(a) for a in apartments],
        split_stay_options=options,
        infeasible=infeasible,
        detail=Infeasible("No availability for these dates").to_dict() if infeasible else None,
    )


@router.get("/{apartment_id}/check", response_model=AvailabilityCheckResponse)
def check_availability(
    apartment_id: str,
    start: date,
    end: date,
    db: Session = Depends(get_db)
):
    CatalogService(db).get_apartment(apartment_id)
    available = AvailabilityQuery(db).is_fully_available(apartment_id, start, end)
    return AvailabilityCheckResponse(apartment_id=apartment_id, start=start, end=end, available=available)


@router.get("/{apartment_id}/next-available", response_model=NextAvailableResponse)
def next_available(
    apartment_id: str,
    from_date: Optional[date] = None,
    min_nights: int = Query(1, ge=1, le=365),
    db: Session = Depends(get_db)
):
    CatalogService(db).get_apartment(apartment_id)
    found = AvailabilityQuery(db).next_available_date(apartment_id, from_date, min_nights)
    return NextAvailableResponse(apartment_id=apartment_id, date=found)


@router.get("/{apartment_id}/calendar", response_model=CalendarResponse)
def get_calendar(
    apartment_id: str,
    start: date,
    end: date,
    db: Session = Depends(get_db)
):
    CatalogService(db).get_apartment(apartment_id)
    days = LedgerService(db).get_calendar(apartment_id, start, end)
    return CalendarResponse(apartment_id=apartment_id, start=start, end=end, days=days)


@router.put("/{apartment_id}/bulk", response_model=BulkAvailabilityResponse)
def set_bulk_availability(
    apartment_id: str,
    data: BulkAvailabilityUpdate,
    db: Session = Depends(get_db)
):
    """Manual admin override; sync never touches these records"""
    CatalogService(db).get_apartment(apartment_id)
    with atomic(db):
        result = LedgerService(db).set_bulk_availability(apartment_id, data.dates, data.status, data.note)
    return BulkAvailabilityResponse(apartment_id=apartment_id, **result)
