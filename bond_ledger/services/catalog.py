"""
Apartment Catalog (read-only)

The catalog is owned elsewhere; the availability core only reads it.
"""

import logging
from typing import List
from sqlalchemy.orm import Session

from ..exceptions import NotFound
from ..models.apartment import Apartment, ApartmentStatus

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, db: Session):
        self.db = db

    def get_apartment(self, apartment_id: str) -> Apartment:
        apartment = self.db.query(Apartment).filter(Apartment.id == apartment_id).first()
        if not apartment:
            raise NotFound(f"Apartment {apartment_id} not found", apartment_id=apartment_id)
        return apartment

    def list_operationally_available(self) -> List[Apartment]:
        """Apartments whose operational flag is 'available', in display order"""
        return self.db.query(Apartment).filter(
            Apartment.status == ApartmentStatus.AVAILABLE.value
        ).order_by(Apartment.sort_order, Apartment.title).all()
