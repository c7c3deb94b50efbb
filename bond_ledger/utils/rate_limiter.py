"""
Rate Limiter Configuration

Public endpoints (calendar export, availability search) are rate limited per client.
Set RATE_LIMIT_STORAGE_URI=redis://... when running more than one instance.
"""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from ..config import settings


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def create_limiter() -> Limiter:
    """Create a rate limiter; in-memory storage unless a storage URI is configured"""
    return Limiter(
        key_func=get_real_client_ip,
        storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
        default_limits=["200/minute"],
        enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false",
    )


# Global rate limiter instance
limiter = create_limiter()


# Different rate limits for different operations
RATE_LIMITS = {
    "ical_export": settings.ical_export_rate_limit,
    "search": "60/minute",
    "booking_confirm": "30/minute",
    "feed_sync": "10/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
