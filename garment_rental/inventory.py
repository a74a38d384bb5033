import logging
from typing import Optional

from sqlmodel import Session, func, select

from .database import unit_of_work
from .errors import NotFoundError
from .models import Booking, Item, ItemStatus, ScanEvent

logger = logging.getLogger(__name__)


def get_item(session: Session, item_id: int) -> Item:
    item = session.get(Item, item_id)
    if not item:
        raise NotFoundError("Item", item_id)
    return item


def get_item_by_qr(session: Session, qr_code: str) -> Item:
    item = session.exec(select(Item).where(Item.qr_code == qr_code)).first()
    if not item:
        raise NotFoundError("Item", qr_code)
    return item


def find_item_by_code(session: Session, code: str) -> Item:
    """Resolve a scanned tag to an item.

    Tags printed with the item id are tried as an id first, then the value
    is matched against ``Item.qr_code``.
    """
    if code.isdigit():
        item = session.get(Item, int(code))
        if item:
            return item
    return get_item_by_qr(session, code)


def set_item_status(session: Session, item_id: int, status: ItemStatus) -> Item:
    with unit_of_work(session):
        item = get_item(session, item_id)
        item.status = status
        session.add(item)
    session.refresh(item)
    return item


def record_interest(
    session: Session, item_id: int, staff_id: Optional[int] = None
) -> ScanEvent:
    """Log a scan of the item's tag and bump its interest counter."""
    with unit_of_work(session):
        item = get_item(session, item_id)
        event = ScanEvent(item_id=item.id, item_name=item.name, staff_id=staff_id)
        item.interest_count += 1
        session.add(event)
        session.add(item)
    session.refresh(event)
    return event


def reconcile_booking_counts(session: Session) -> dict[int, int]:
    """Recount every item's bookings and overwrite counters that drifted.

    Returns the corrected counts keyed by item id. Only items whose stored
    ``booking_count`` disagreed are included.
    """
    with unit_of_work(session):
        counts = dict(
            session.exec(
                select(Booking.item_id, func.count(Booking.id)).group_by(Booking.item_id)
            ).all()
        )
        changed = {}
        for item in session.exec(select(Item)).all():
            expected = counts.get(item.id, 0)
            if item.booking_count != expected:
                logger.warning(
                    "Item %s booking_count %s, expected %s",
                    item.id,
                    item.booking_count,
                    expected,
                )
                item.booking_count = expected
                session.add(item)
                changed[item.id] = expected
    logger.info("Reconciled booking counts, %d item(s) updated", len(changed))
    return changed
