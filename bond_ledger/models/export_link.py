"""
Calendar Export Link Model

At most one per apartment. The token is the only credential for the public
.ics feed; regenerating replaces it, deactivating stops serving it.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, ForeignKey, DateTime, Integer, Boolean
from sqlalchemy.orm import relationship

from ..database import Base


class CalendarExportLink(Base):
    __tablename__ = "apartment_ical_exports"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    apartment_id = Column(
        String(36), ForeignKey("apartments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    export_token = Column(String(64), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    access_count = Column(Integer, default=0)
    last_accessed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    apartment = relationship("Apartment")

    def __repr__(self):
        return f"<CalendarExportLink apartment={self.apartment_id} active={self.is_active}>"
