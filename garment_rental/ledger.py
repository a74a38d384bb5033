"""Payment ledger.

Every ledger entry may credit one or more bookings. The amount credited to
each booking is given by ``booking_contributions``:

- line items that name a booking credit that booking with their line total;
- an entry without such line items credits its whole ``amount`` to
  ``related_booking_id``.

Recording, amending and voiding an entry apply the matching signed deltas to
``Booking.paid_amount`` in the same transaction as the entry write, with the
affected booking rows locked, so ``paid_amount`` always equals the sum of
contributions of the live entries that reference the booking.
"""

from collections import defaultdict
from decimal import Decimal
import logging
from typing import Iterable, Optional

from sqlmodel import Session, col, or_, select

from .database import unit_of_work
from .errors import NotFoundError, ValidationError
from .models import (
    Booking,
    LedgerEntry,
    LedgerEntryCreate,
    LedgerEntryUpdate,
    LedgerLineItem,
    check_items_total,
)

logger = logging.getLogger(__name__)


def booking_contributions(entry) -> dict[int, Decimal]:
    """Map booking id to the amount ``entry`` credits it."""
    contributions: dict[int, Decimal] = defaultdict(Decimal)
    itemized = [line for line in entry.items if line.booking_id is not None]
    if itemized:
        for line in itemized:
            contributions[line.booking_id] += line.amount * line.quantity
    elif entry.related_booking_id is not None:
        contributions[entry.related_booking_id] += entry.amount
    return dict(contributions)


def _lock_bookings(session: Session, booking_ids: Iterable[int]) -> dict[int, Booking]:
    ids = set(booking_ids)
    if not ids:
        return {}
    bookings = session.exec(
        select(Booking)
        .where(col(Booking.id).in_(ids))
        .order_by(col(Booking.id))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    found = {b.id: b for b in bookings}
    missing = ids - found.keys()
    if missing:
        raise NotFoundError("Booking", min(missing))
    return found


def _apply_deltas(
    session: Session, bookings: dict[int, Booking], deltas: dict[int, Decimal]
) -> None:
    for booking_id, delta in deltas.items():
        if not delta:
            continue
        booking = bookings[booking_id]
        booking.paid_amount += delta
        if booking.paid_amount < 0:
            logger.warning(
                "Booking %s paid_amount went negative (%s)",
                booking_id,
                booking.paid_amount,
            )
        session.add(booking)


def _get_entry(session: Session, entry_id: int, lock: bool = False) -> LedgerEntry:
    query = select(LedgerEntry).where(LedgerEntry.id == entry_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    entry = session.exec(query).first()
    if not entry:
        raise NotFoundError("Ledger entry", entry_id)
    return entry


def get_entry(session: Session, entry_id: int) -> LedgerEntry:
    return _get_entry(session, entry_id)


def record_entry(
    session: Session, data: LedgerEntryCreate, staff_id: Optional[int] = None
) -> LedgerEntry:
    """Write a ledger entry and credit every booking it references."""
    with unit_of_work(session):
        deltas = booking_contributions(data)
        referenced = set(deltas)
        if data.related_booking_id is not None:
            referenced.add(data.related_booking_id)
        bookings = _lock_bookings(session, referenced)

        entry = LedgerEntry(
            **data.model_dump(exclude={"items"}),
            staff_id=staff_id,
            items=[LedgerLineItem(**line.model_dump()) for line in data.items],
        )
        session.add(entry)
        _apply_deltas(session, bookings, deltas)

    session.refresh(entry)
    logger.info(
        "Recorded %s entry %s for %s (bookings: %s)",
        entry.kind.value,
        entry.id,
        entry.amount,
        sorted(deltas),
    )
    return entry


def amend_entry(
    session: Session, entry_id: int, changes: LedgerEntryUpdate
) -> LedgerEntry:
    """Change an entry's amount, line items, method or notes.

    A new amount (or new line items) moves each affected booking's
    ``paid_amount`` by exactly the change in what the entry credits it. Method,
    customer and notes changes touch nothing else.
    """
    with unit_of_work(session):
        entry = _get_entry(session, entry_id, lock=True)
        before = booking_contributions(entry)

        fields = changes.model_dump(exclude_unset=True, exclude_none=True)
        new_items = fields.pop("items", None)
        if new_items is not None:
            entry.items = [LedgerLineItem(**line) for line in new_items]
            if "amount" not in fields:
                fields["amount"] = sum(
                    (line.amount * line.quantity for line in entry.items), Decimal("0")
                )
        for key, value in fields.items():
            setattr(entry, key, value)

        try:
            check_items_total(entry.amount, entry.items)
        except ValueError as exc:
            raise ValidationError(f"{exc}; amend the line items instead") from exc

        after = booking_contributions(entry)
        deltas = {
            booking_id: after.get(booking_id, Decimal("0"))
            - before.get(booking_id, Decimal("0"))
            for booking_id in before.keys() | after.keys()
        }
        bookings = _lock_bookings(
            session, [booking_id for booking_id, delta in deltas.items() if delta]
        )
        _apply_deltas(session, bookings, deltas)
        session.add(entry)

    session.refresh(entry)
    logger.info("Amended ledger entry %s (deltas: %s)", entry.id, deltas)
    return entry


def void_entry(session: Session, entry_id: int) -> None:
    """Reverse everything an entry credited, then delete it."""
    with unit_of_work(session):
        entry = _get_entry(session, entry_id, lock=True)
        deltas = {
            booking_id: -amount
            for booking_id, amount in booking_contributions(entry).items()
        }
        bookings = _lock_bookings(session, deltas)
        _apply_deltas(session, bookings, deltas)
        session.delete(entry)
    logger.info("Voided ledger entry %s (deltas: %s)", entry_id, deltas)


def list_entries(
    session: Session, limit: int = 20, booking_id: Optional[int] = None
) -> list[LedgerEntry]:
    query = select(LedgerEntry)
    if booking_id:
        query = query.where(
            or_(
                LedgerEntry.related_booking_id == booking_id,
                col(LedgerEntry.items).any(LedgerLineItem.booking_id == booking_id),
            )
        )
    query = query.order_by(col(LedgerEntry.timestamp).desc()).limit(limit)
    return list(session.exec(query).all())
