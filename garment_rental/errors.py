class RentalError(Exception):
    """Base class for errors raised by the rental engine."""


class ValidationError(RentalError):
    """Input failed validation; nothing was written."""


class AvailabilityConflict(RentalError):
    """The item is already booked (or within the buffer) for the requested dates."""

    def __init__(self, item_id: int, conflicting_booking_id: int | None = None):
        self.item_id = item_id
        self.conflicting_booking_id = conflicting_booking_id
        super().__init__("Item is already booked for the requested dates.")


class NotFoundError(RentalError):
    def __init__(self, entity: str, id: int | str):
        self.entity = entity
        self.id = id
        super().__init__(f"{entity} not found")
