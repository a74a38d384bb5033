"""Date-range conflict rules for renting a single physical item.

A booking reserves its item for ``[start_date, end_date]`` (both days
inclusive). Consecutive bookings of the same item must be separated by a
buffer of whole days, used for cleaning and alterations. The buffer is applied
on both sides of the candidate range, so one symmetric test covers a booking
that comes before as well as one that comes after.
"""

import datetime
from typing import Iterable, Optional

from .models import BLOCKING_STATUSES, Booking

DEFAULT_BUFFER_DAYS = 1


def overlaps(
    start_a: datetime.date,
    end_a: datetime.date,
    start_b: datetime.date,
    end_b: datetime.date,
    buffer_days: int = DEFAULT_BUFFER_DAYS,
) -> bool:
    """Return True if range A, widened by ``buffer_days`` on both ends, touches range B.

    Boundaries are inclusive: a range that ends on the day the widened range
    starts is a conflict.
    """
    if buffer_days < 0:
        raise ValueError("buffer_days must not be negative")
    buffer = datetime.timedelta(days=buffer_days)
    return start_a - buffer <= end_b and end_a + buffer >= start_b


def blocking_bookings(
    bookings: Optional[Iterable[Booking]], exclude_booking_id: Optional[int] = None
) -> list[Booking]:
    """Bookings that still hold the calendar, minus the one being edited."""
    return [
        b
        for b in bookings or []
        if b.status in BLOCKING_STATUSES and b.id != exclude_booking_id
    ]


def find_conflict(
    bookings: Optional[Iterable[Booking]],
    start_date: datetime.date,
    end_date: datetime.date,
    exclude_booking_id: Optional[int] = None,
    buffer_days: int = DEFAULT_BUFFER_DAYS,
) -> Optional[Booking]:
    for booking in blocking_bookings(bookings, exclude_booking_id):
        if overlaps(
            start_date,
            end_date,
            booking.start_date,
            booking.effective_end_date(),
            buffer_days,
        ):
            return booking
    return None


def is_available(
    bookings: Optional[Iterable[Booking]],
    start_date: datetime.date,
    end_date: datetime.date,
    exclude_booking_id: Optional[int] = None,
    buffer_days: int = DEFAULT_BUFFER_DAYS,
) -> bool:
    """Return True if no active or pending booking conflicts with the range.

    Completed and cancelled bookings never block. ``exclude_booking_id`` lets a
    booking being edited ignore itself.
    """
    return (
        find_conflict(bookings, start_date, end_date, exclude_booking_id, buffer_days)
        is None
    )
