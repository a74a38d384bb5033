from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import JSON
from pydantic import field_validator, model_validator
from decimal import Decimal
from enum import Enum
import datetime
from typing import Optional


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


############
# USER MODEL
############


class UserBase(SQLModel):
    username: str = Field(index=True)
    email: str = Field(index=True)


class User(UserBase, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    hashed_password: str
    is_admin: bool = False


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: int
    is_admin: bool


############
# ITEM MODEL
############


class ItemStatus(str, Enum):
    available = "available"
    rented = "rented"
    cleaning = "cleaning"
    repair = "repair"


class ItemBase(SQLModel):
    name: str = Field(index=True, min_length=1)
    status: ItemStatus = ItemStatus.available
    rental_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    qr_code: Optional[str] = Field(default=None, unique=True, index=True, min_length=1)
    staff_notes: str = ""
    is_archived: bool = False


class Item(ItemBase, table=True):
    __tablename__ = "items"

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_count: int = Field(default=0, ge=0)
    interest_count: int = Field(default=0, ge=0)
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ItemCreate(ItemBase):
    pass


class ItemUpdate(SQLModel):
    name: Optional[str] = Field(default=None, min_length=1)
    status: Optional[ItemStatus] = None
    rental_price: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    qr_code: Optional[str] = Field(default=None, min_length=1)
    staff_notes: Optional[str] = None
    is_archived: Optional[bool] = None

    @field_validator("name", "status", "staff_notes", "is_archived")
    @classmethod
    def not_null(cls, value):
        # Omit a field to leave it unchanged; these columns cannot be cleared.
        if value is None:
            raise ValueError("field cannot be null")
        return value


class ItemStatusUpdate(SQLModel):
    status: ItemStatus


class ItemRead(ItemBase):
    id: int
    booking_count: int
    interest_count: int
    created_at: datetime.datetime


class ScanEvent(SQLModel, table=True):
    __tablename__ = "scan_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(foreign_key="items.id", index=True)
    item_name: str
    staff_id: Optional[int] = Field(default=None, foreign_key="users.id")
    scanned_at: datetime.datetime = Field(default_factory=utcnow)


##############
# CLIENT MODEL
##############


class ClientBase(SQLModel):
    full_name: str = Field(index=True, min_length=2)
    phone: str = Field(index=True, min_length=1)
    email: Optional[str] = None
    address: Optional[str] = None
    measurements: Optional[dict] = Field(default=None, sa_type=JSON)


class Client(ClientBase, table=True):
    __tablename__ = "clients"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ClientCreate(ClientBase):
    pass


class ClientUpdate(SQLModel):
    full_name: Optional[str] = Field(default=None, min_length=2)
    phone: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    address: Optional[str] = None
    measurements: Optional[dict] = None

    @field_validator("full_name", "phone")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null")
        return value


class ClientRead(ClientBase):
    id: int
    created_at: datetime.datetime


###############
# BOOKING MODEL
###############


class BookingStatus(str, Enum):
    active = "active"
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


# Bookings in these states hold the item's calendar.
BLOCKING_STATUSES = (BookingStatus.active, BookingStatus.pending)


class BookingBase(SQLModel):
    item_id: int = Field(foreign_key="items.id", index=True)
    start_date: datetime.date
    end_date: Optional[datetime.date] = None
    event_city: Optional[str] = None
    agreed_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)


class Booking(BookingBase, table=True):
    __tablename__ = "bookings"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="clients.id", index=True)
    item_name: str
    client_name: str
    client_phone: str
    paid_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    status: BookingStatus = Field(default=BookingStatus.active, index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)

    def effective_end_date(self) -> datetime.date:
        # Legacy rows without a return date occupy a single day.
        return self.end_date or self.start_date + datetime.timedelta(days=1)


class BookingDraft(BookingBase):
    end_date: datetime.date

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class ClientRef(ClientUpdate):
    """An existing client (``id`` plus optional field updates) or a new client's fields."""

    id: Optional[int] = None


class EntryKind(str, Enum):
    deposit = "deposit"
    final_payment = "final_payment"
    sale = "sale"


class PaymentMethod(str, Enum):
    cash = "cash"
    credit = "credit"
    check = "check"
    bit = "bit"


class InitialPayment(SQLModel):
    amount: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    method: PaymentMethod = PaymentMethod.cash
    notes: Optional[str] = None


class BookingCreate(SQLModel):
    booking: BookingDraft
    client: ClientRef
    initial_payment: Optional[InitialPayment] = None


class BookingUpdate(SQLModel):
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None
    event_city: Optional[str] = None
    agreed_price: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )
    status: Optional[BookingStatus] = None


class BookingStatusUpdate(SQLModel):
    status: BookingStatus


class BookingRead(BookingBase):
    id: int
    client_id: int
    item_name: str
    client_name: str
    client_phone: str
    paid_amount: Decimal
    status: BookingStatus
    created_at: datetime.datetime


class AvailabilityRead(SQLModel):
    item_id: int
    start_date: datetime.date
    end_date: datetime.date
    available: bool


##############
# LEDGER MODEL
##############


class LineItemBase(SQLModel):
    description: str
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    quantity: int = Field(default=1, ge=1)
    booking_id: Optional[int] = Field(default=None, foreign_key="bookings.id")


class LedgerLineItem(LineItemBase, table=True):
    __tablename__ = "ledger_line_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: Optional[int] = Field(
        default=None, foreign_key="ledger_entries.id", index=True
    )
    entry: Optional["LedgerEntry"] = Relationship(back_populates="items")

    @property
    def total(self) -> Decimal:
        return self.amount * self.quantity


class LineItemCreate(LineItemBase):
    pass


class LineItemRead(LineItemBase):
    id: int


class LedgerEntryBase(SQLModel):
    kind: EntryKind
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.cash
    customer_name: str = ""
    related_booking_id: Optional[int] = Field(
        default=None, foreign_key="bookings.id", index=True
    )
    notes: Optional[str] = None


class LedgerEntry(LedgerEntryBase, table=True):
    __tablename__ = "ledger_entries"

    id: Optional[int] = Field(default=None, primary_key=True)
    staff_id: Optional[int] = Field(default=None, foreign_key="users.id")
    timestamp: datetime.datetime = Field(default_factory=utcnow, index=True)
    items: list[LedgerLineItem] = Relationship(
        back_populates="entry",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "lazy": "selectin"},
    )


def check_items_total(amount: Decimal, items) -> None:
    if items and sum(i.amount * i.quantity for i in items) != amount:
        raise ValueError("amount must equal the sum of line item totals")


class LedgerEntryCreate(LedgerEntryBase):
    items: list[LineItemCreate] = []

    @model_validator(mode="after")
    def check_total(self):
        check_items_total(self.amount, self.items)
        return self


class LedgerEntryUpdate(SQLModel):
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    payment_method: Optional[PaymentMethod] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[list[LineItemCreate]] = None

    @field_validator("items")
    @classmethod
    def items_not_empty(cls, value):
        if value is not None and len(value) == 0:
            raise ValueError("items cannot be cleared, void the entry instead")
        return value


class LedgerEntryRead(LedgerEntryBase):
    id: int
    staff_id: Optional[int]
    timestamp: datetime.datetime
    items: list[LineItemRead] = []
