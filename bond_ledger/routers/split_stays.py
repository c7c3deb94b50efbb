from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from ..config import settings
from ..database import get_db
from ..exceptions import Infeasible
from ..schemas.availability import SplitStaySearchResponse
from ..services.split_stay import SplitStayService

router = APIRouter(prefix="/api/split-stays", tags=["Split stays"])


@router.get("", response_model=SplitStaySearchResponse)
@router.get("/", response_model=SplitStaySearchResponse)
def find_split_stay_options(
    start: date,
    end: date,
    max_segments: Optional[int] = Query(None, ge=2, le=10),
    db: Session = Depends(get_db)
):
    """Ranked split-stay options; an empty list is labelled infeasible"""
    max_segments = max_segments or settings.max_split_segments
    options = SplitStayService(db).find_split_stay_options(start, end, max_segments)
    return SplitStaySearchResponse(
        check_in=start,
        check_out=end,
        max_segments=max_segments,
        options=[o.to_dict() for o in options],
        infeasible=not options,
        detail=None if options else Infeasible(
            "No combination of apartments covers these dates", max_segments=max_segments
        ).to_dict(),
    )
