"""
Shared fixtures: an in-memory SQLite ledger per test, apartment factory, API client.
"""

import os
import sys
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("ICAL_SYNC_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from bond_ledger.database import Base, get_db
from bond_ledger.main import app
from bond_ledger.models import Apartment, DayStatus
from bond_ledger.services.ledger import LedgerService
from bond_ledger.utils.db_helpers import atomic


@pytest.fixture
def engine():
    """Fresh in-memory database shared across threads"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def make_apartment(db):
    """Create and commit an apartment"""
    def _make(title="Apartment", price="1500.00", nightly_price=None, sort_order=0, status="available", **kwargs):
        apartment = Apartment(
            title=title,
            price=Decimal(price),
            nightly_price=Decimal(nightly_price) if nightly_price is not None else None,
            sort_order=sort_order,
            status=status,
            **kwargs
        )
        db.add(apartment)
        db.commit()
        return apartment
    return _make


@pytest.fixture
def block(db):
    """Mark [start, end) blocked on an apartment and commit"""
    def _block(apartment_id: str, start: date, end: date, status=DayStatus.BLOCKED, **kwargs):
        with atomic(db):
            LedgerService(db).set_range(apartment_id, start, end, status, **kwargs)
    return _block


@pytest.fixture
def client(db):
    """API client bound to the test database"""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
