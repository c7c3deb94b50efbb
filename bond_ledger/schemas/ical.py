from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


def _check_url(v):
    if v is not None and not v.lower().startswith(("http://", "https://", "webcal://")):
        raise ValueError('remote_url must be an http(s) or webcal URL')
    if v is not None and v.lower().startswith("webcal://"):
        v = "https://" + v[len("webcal://"):]
    return v


class FeedCreate(BaseModel):
    apartment_id: str = Field(..., min_length=1, max_length=36)
    feed_name: str = Field(..., min_length=1, max_length=100)
    remote_url: str = Field(..., min_length=1, max_length=1000)
    is_active: bool = True

    @field_validator('remote_url')
    @classmethod
    def validate_remote_url(cls, v):
        return _check_url(v.strip())


class FeedUpdate(BaseModel):
    feed_name: Optional[str] = Field(None, min_length=1, max_length=100)
    remote_url: Optional[str] = Field(None, min_length=1, max_length=1000)
    is_active: Optional[bool] = None

    @field_validator('remote_url')
    @classmethod
    def validate_remote_url(cls, v):
        return _check_url(v.strip() if v else v)


class FeedResponse(BaseModel):
    id: str
    apartment_id: str
    feed_name: str
    remote_url: str
    is_active: bool
    sync_status: str
    last_sync_timestamp: Optional[datetime] = None
    last_error: Optional[str] = None
    error_count: int = 0
    last_events_processed: int = 0
    last_dates_updated: int = 0
    created_at: datetime

    class Config:
        from_attributes = True


class ExportLinkResponse(BaseModel):
    apartment_id: str
    export_token: str
    url: str
    is_active: bool
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    created_at: datetime
