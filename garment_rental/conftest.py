import datetime
import os
from decimal import Decimal

import pytest
from sqlmodel import SQLModel, Session

os.environ.setdefault("POSTGRES_URI", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from .database import engine
from .bookings import create_booking
from .models import BookingDraft, ClientRef, InitialPayment, Item


@pytest.fixture(autouse=True)
def reset_database():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(reset_database):
    with Session(engine) as session:
        yield session


@pytest.fixture
def item(session):
    item = Item(name="Ivory lace A-line")
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@pytest.fixture
def draft(item):
    """Build a booking draft for ``item`` from ISO dates."""

    def _draft(start="2024-01-10", end="2024-01-12", price="1000", item_id=None):
        return BookingDraft(
            item_id=item_id or item.id,
            start_date=datetime.date.fromisoformat(start),
            end_date=datetime.date.fromisoformat(end),
            agreed_price=Decimal(price),
        )

    return _draft


@pytest.fixture
def book(session, draft):
    """Create a booking through the coordinator, for a new client by default."""

    def _book(start="2024-01-10", end="2024-01-12", price="1000", deposit=None, client=None):
        payment = InitialPayment(amount=Decimal(deposit)) if deposit else None
        return create_booking(
            session,
            draft(start, end, price),
            client or ClientRef(full_name="Dana Levi", phone="0501234567"),
            payment,
        )

    return _book
