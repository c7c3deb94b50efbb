from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from ..database import get_db
from ..schemas.ical import FeedCreate, FeedUpdate, FeedResponse, ExportLinkResponse
from ..services.ical_sync import CalendarSyncService, export_url
from ..utils.db_helpers import atomic
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ical", tags=["iCal"])


# ==================
# Feed management
# ==================

@router.get("/feeds", response_model=List[FeedResponse])
def list_feeds(apartment_id: Optional[str] = None, db: Session = Depends(get_db)):
    return CalendarSyncService(db).list_feeds(apartment_id)


@router.post("/feeds", response_model=FeedResponse, status_code=status.HTTP_201_CREATED)
def create_feed(data: FeedCreate, db: Session = Depends(get_db)):
    with atomic(db):
        feed = CalendarSyncService(db).create_feed(
            data.apartment_id, data.feed_name, data.remote_url, data.is_active
        )
    return feed


@router.patch("/feeds/{feed_id}", response_model=FeedResponse)
def update_feed(feed_id: str, data: FeedUpdate, db: Session = Depends(get_db)):
    with atomic(db):
        feed = CalendarSyncService(db).update_feed(feed_id, **data.model_dump(exclude_unset=True))
    return feed


@router.delete("/feeds/{feed_id}")
def delete_feed(feed_id: str, db: Session = Depends(get_db)):
    """Delete a feed together with the dates it imported"""
    with atomic(db):
        removed = CalendarSyncService(db).delete_feed(feed_id)
    return {"deleted": True, "dates_removed": removed}


# ==================
# Sync
# ==================

@router.post("/feeds/{feed_id}/sync")
@limiter.limit(get_rate_limit("feed_sync"))
def sync_feed(request: Request, feed_id: str, db: Session = Depends(get_db)):
    """{success, eventsProcessed, datesUpdated} or {success: false, error}"""
    return CalendarSyncService(db).sync_feed(feed_id).to_dict()


@router.post("/apartments/{apartment_id}/sync")
@limiter.limit(get_rate_limit("feed_sync"))
def sync_apartment(request: Request, apartment_id: str, db: Session = Depends(get_db)):
    results = CalendarSyncService(db).sync_apartment_feeds(apartment_id)
    return {
        "apartment_id": apartment_id,
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }


# ==================
# Export links
# ==================

def _link_response(link) -> ExportLinkResponse:
    return ExportLinkResponse(
        apartment_id=link.apartment_id,
        export_token=link.export_token,
        url=export_url(link.export_token),
        is_active=link.is_active,
        access_count=link.access_count or 0,
        last_accessed_at=link.last_accessed_at,
        created_at=link.created_at,
    )


@router.get("/export-links", response_model=List[ExportLinkResponse])
def list_export_links(db: Session = Depends(get_db)):
    return [_link_response(link) for link in CalendarSyncService(db).list_export_links()]


@router.get("/apartments/{apartment_id}/export-link", response_model=ExportLinkResponse)
def get_export_link(apartment_id: str, db: Session = Depends(get_db)):
    """The apartment's public .ics URL, created on first request"""
    with atomic(db):
        link = CalendarSyncService(db).get_export_link(apartment_id)
    return _link_response(link)


@router.post("/apartments/{apartment_id}/export-link/regenerate", response_model=ExportLinkResponse)
def regenerate_export_link(apartment_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        link = CalendarSyncService(db).regenerate_export_link(apartment_id)
    return _link_response(link)


@router.delete("/apartments/{apartment_id}/export-link", response_model=ExportLinkResponse)
def deactivate_export_link(apartment_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        link = CalendarSyncService(db).deactivate_export_link(apartment_id)
    return _link_response(link)


# ==================
# Export
# ==================

def _calendar_response(token: str, db: Session) -> Response:
    with atomic(db):
        body = CalendarSyncService(db).export_calendar_for_token(token)
    return Response(
        content=body,
        media_type="text/calendar; charset=utf-8",
        headers={
            "Content-Disposition": 'attachment; filename="bond-calendar.ics"',
            "Cache-Control": "private, max-age=3600",
        },
    )


@router.get("/export")
@limiter.limit(get_rate_limit("ical_export"))
def export_calendar(request: Request, token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """Booked/blocked ranges for channel managers; 404 for an unknown or deactivated token"""
    return _calendar_response(token, db)


@router.get("/export/{token}.ics")
@limiter.limit(get_rate_limit("ical_export"))
def export_calendar_file(request: Request, token: str, db: Session = Depends(get_db)):
    return _calendar_response(token, db)
