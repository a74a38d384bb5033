"""Booking transaction coordinator.

A booking is never inserted on its own. ``create_booking`` writes the client,
the booking, its opening deposit and the item's lifetime booking counter as
one unit of work, re-checking the item's calendar under a row lock so two
concurrent requests cannot both take the same dates.
"""

import datetime
import logging
import os
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from .database import unit_of_work
from .errors import AvailabilityConflict, NotFoundError, ValidationError
from .models import (
    BLOCKING_STATUSES,
    Booking,
    BookingDraft,
    BookingStatus,
    BookingUpdate,
    Client,
    ClientRef,
    EntryKind,
    InitialPayment,
    Item,
    LedgerEntry,
)
from .scheduling import DEFAULT_BUFFER_DAYS, find_conflict, is_available

logger = logging.getLogger(__name__)

BUFFER_DAYS = int(os.getenv("BOOKING_BUFFER_DAYS", DEFAULT_BUFFER_DAYS))

STATUS_TRANSITIONS = {
    BookingStatus.pending: {BookingStatus.active, BookingStatus.cancelled},
    BookingStatus.active: {BookingStatus.completed, BookingStatus.cancelled},
    BookingStatus.completed: set(),
    BookingStatus.cancelled: set(),
}


def get_booking(session: Session, booking_id: int) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking", booking_id)
    return booking


def blocking_bookings_for_item(
    session: Session, item_id: int, lock: bool = False
) -> list[Booking]:
    query = (
        select(Booking)
        .where(Booking.item_id == item_id)
        .where(col(Booking.status).in_(BLOCKING_STATUSES))
    )
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    return list(session.exec(query).all())


def check_item_availability(
    session: Session,
    item_id: int,
    start_date: datetime.date,
    end_date: datetime.date,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    """Return True if ``item_id`` can be booked for the given dates.

    This is an advisory read; ``create_booking`` repeats the check inside its
    own transaction.
    """
    if end_date < start_date:
        raise ValidationError("end_date must be on or after start_date")
    if not session.get(Item, item_id):
        raise NotFoundError("Item", item_id)
    return is_available(
        blocking_bookings_for_item(session, item_id),
        start_date,
        end_date,
        exclude_booking_id=exclude_booking_id,
        buffer_days=BUFFER_DAYS,
    )


def _resolve_client(session: Session, client_ref: ClientRef) -> Client:
    fields = client_ref.model_dump(exclude_unset=True, exclude_none=True, exclude={"id"})
    if client_ref.id is not None:
        client = session.get(Client, client_ref.id)
        if not client:
            raise NotFoundError("Client", client_ref.id)
        for key, value in fields.items():
            setattr(client, key, value)
    elif fields.get("full_name") and fields.get("phone"):
        client = Client(**fields)
    else:
        raise ValidationError("Client id or client full_name and phone are required")
    session.add(client)
    session.flush()
    return client


def _increment_booking_count(session: Session, item: Item) -> None:
    # Best effort: a lost increment is repaired by reconcile_booking_counts.
    try:
        with session.begin_nested():
            item.booking_count += 1
            session.add(item)
    except SQLAlchemyError:
        logger.exception("Could not increment booking count for item %s", item.id)


def create_booking(
    session: Session,
    draft: BookingDraft,
    client_ref: ClientRef,
    initial_payment: Optional[InitialPayment] = None,
    staff_id: Optional[int] = None,
) -> Booking:
    """Create a booking together with its client, deposit and counter update.

    Steps, all in one transaction:
    1. lock the item and reject the request if its calendar is taken
    2. update the referenced client, or create a new one
    3. insert the booking with ``paid_amount`` set to the initial payment
    4. record a deposit ledger entry when the initial payment is positive
    5. bump the item's lifetime ``booking_count``

    Raises:
        NotFoundError: unknown item or client id
        AvailabilityConflict: the dates clash with an active or pending booking
        ValidationError: no usable client identity
    """
    with unit_of_work(session):
        item = session.exec(
            select(Item)
            .where(Item.id == draft.item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not item:
            raise NotFoundError("Item", draft.item_id)

        conflict = find_conflict(
            blocking_bookings_for_item(session, item.id, lock=True),
            draft.start_date,
            draft.end_date,
            buffer_days=BUFFER_DAYS,
        )
        if conflict:
            raise AvailabilityConflict(item.id, conflict.id)

        client = _resolve_client(session, client_ref)

        paid = initial_payment.amount if initial_payment else Decimal("0")
        booking = Booking(
            **draft.model_dump(),
            client_id=client.id,
            item_name=item.name,
            client_name=client.full_name,
            client_phone=client.phone,
            paid_amount=paid,
            status=BookingStatus.active,
        )
        session.add(booking)
        session.flush()

        if initial_payment and initial_payment.amount > 0:
            session.add(
                LedgerEntry(
                    kind=EntryKind.deposit,
                    amount=initial_payment.amount,
                    payment_method=initial_payment.method,
                    customer_name=client.full_name,
                    related_booking_id=booking.id,
                    notes=initial_payment.notes or "Initial deposit",
                    staff_id=staff_id,
                )
            )
            session.flush()

        _increment_booking_count(session, item)

    session.refresh(booking)
    logger.info(
        "Created booking %s for item %s (%s to %s), paid %s",
        booking.id,
        booking.item_id,
        booking.start_date,
        booking.end_date,
        booking.paid_amount,
    )
    return booking


def _transition(booking: Booking, status: BookingStatus) -> None:
    if status == booking.status:
        return
    if status not in STATUS_TRANSITIONS[booking.status]:
        raise ValidationError(
            f"Cannot change booking status from {booking.status.value} to {status.value}"
        )
    booking.status = status


def update_booking(session: Session, booking_id: int, changes: BookingUpdate) -> Booking:
    """Edit dates, price, city or status in place.

    Availability is not re-checked here; callers changing dates run
    ``check_item_availability`` with ``exclude_booking_id`` first.
    """
    with unit_of_work(session):
        booking = get_booking(session, booking_id)
        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        status = fields.pop("status", None)
        for key, value in fields.items():
            setattr(booking, key, value)
        if booking.end_date is not None and booking.end_date < booking.start_date:
            raise ValidationError("end_date must be on or after start_date")
        if status is not None:
            _transition(booking, BookingStatus(status))
        session.add(booking)
    session.refresh(booking)
    return booking


def set_booking_status(
    session: Session, booking_id: int, status: BookingStatus
) -> Booking:
    with unit_of_work(session):
        booking = get_booking(session, booking_id)
        _transition(booking, status)
        session.add(booking)
    session.refresh(booking)
    logger.info("Booking %s is now %s", booking.id, booking.status.value)
    return booking


def list_bookings(
    session: Session,
    item_id: Optional[int] = None,
    client_id: Optional[int] = None,
    status: Optional[BookingStatus] = None,
) -> list[Booking]:
    query = select(Booking)
    if item_id:
        query = query.where(Booking.item_id == item_id)
    if client_id:
        query = query.where(Booking.client_id == client_id)
    if status:
        query = query.where(Booking.status == status)
    return list(session.exec(query.order_by(col(Booking.start_date).desc())).all())


def list_unpaid_bookings(session: Session) -> list[Booking]:
    """Active bookings with an outstanding balance, soonest first."""
    query = (
        select(Booking)
        .where(Booking.status == BookingStatus.active)
        .where(col(Booking.paid_amount) < col(Booking.agreed_price))
        .order_by(col(Booking.start_date))
    )
    return list(session.exec(query).all())
