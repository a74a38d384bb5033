from contextlib import asynccontextmanager
from typing import Annotated
from fastapi import Depends, FastAPI, HTTPException, Request, status, Query
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pwdlib import PasswordHash
from pydantic import BaseModel
import jwt
from jwt.exceptions import InvalidTokenError
from datetime import date, datetime, timedelta, timezone
from sqlmodel import Session, SQLModel, col, select
import os
from typing import Optional

from .models import (
    User,
    UserCreate,
    UserRead,
    Item,
    ItemCreate,
    ItemUpdate,
    ItemStatus,
    ItemStatusUpdate,
    ItemRead,
    Client,
    ClientCreate,
    ClientUpdate,
    ClientRead,
    BookingCreate,
    BookingUpdate,
    BookingStatus,
    BookingStatusUpdate,
    BookingRead,
    AvailabilityRead,
    LedgerEntryCreate,
    LedgerEntryUpdate,
    LedgerEntryRead,
)
from .database import engine, get_session
from .errors import AvailabilityConflict, NotFoundError, ValidationError
from . import bookings, inventory, ledger

SECRET_KEY = os.getenv("SECRET_KEY")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))
ALGORITHM = os.getenv("ALGORITHM", "HS256")


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    username: str | None = None


class ReconcileResult(BaseModel):
    updated: dict[int, int]


class ScanRequest(BaseModel):
    code: str


password_hash = PasswordHash.recommended()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


@asynccontextmanager
async def lifespan(app: FastAPI):
    SQLModel.metadata.create_all(engine)
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Garment rental API",
    description="API to manage inventory, clients, bookings and payments for a garment rental shop.",
    version="0.3.0",
)


# --- Error mapping ---
@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(AvailabilityConflict)
def conflict_handler(request: Request, exc: AvailabilityConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "conflicting_booking_id": exc.conflicting_booking_id,
        },
    )


@app.exception_handler(ValidationError)
def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# --- Auth ---
def verify_password(plain_password: str, hashed_password: str) -> bool:
    return password_hash.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    if not SECRET_KEY or SECRET_KEY == "":
        raise ValueError("SECRET_KEY is missing")
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_user_by_username(session: Session, username: str):
    statement = select(User).where(User.username == username)
    return session.exec(statement).first()


def authenticate_user(session: Session, username: str, password: str):
    user = get_user_by_username(session, username)
    if not user:
        return False
    if not verify_password(password, user.hashed_password):
        return False
    return user


def is_admin(user: User):
    if not user.is_admin:
        raise HTTPException(status_code=401, detail="Admin only")
    return user.is_admin


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Session = Depends(get_session),
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        if username is None:
            raise credentials_exception
        token_data = TokenData(username=username)
    except InvalidTokenError:
        raise credentials_exception
    user = get_user_by_username(session, username=token_data.username)
    if user is None:
        raise credentials_exception
    return user


@app.post(
    "/register",
    response_model=UserRead,
    summary="Register new staff user",
    response_description="User data",
    tags=["Users"],
)
def register_user(user: UserCreate, session: Session = Depends(get_session)):
    """
    Register new staff user.
    """
    existing_user = session.exec(
        select(User).where(User.username == user.username)
    ).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Username already taken")

    hashed_password = get_password_hash(user.password)
    db_user = User(
        username=user.username, email=user.email, hashed_password=hashed_password
    )
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


@app.post(
    "/token", summary="Log in", response_description="Bearer token", tags=["Users"]
)
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session),
) -> Token:
    """Obtain token for login"""
    user = authenticate_user(session, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.username}, expires_delta=access_token_expires
    )
    return Token(access_token=access_token, token_type="bearer")


@app.get(
    "/users/me",
    response_model=UserRead,
    summary="Get current user",
    response_description="Current user data",
    tags=["Users"],
)
def read_users_me(current_user: Annotated[User, Depends(get_current_user)]):
    """Get current user data."""
    return current_user


# --- Inventory Management ---
def check_qr_code_free(session: Session, qr_code: Optional[str], item_id: Optional[int] = None):
    if not qr_code:
        return
    existing = session.exec(select(Item).where(Item.qr_code == qr_code)).first()
    if existing and existing.id != item_id:
        raise HTTPException(status_code=400, detail="QR code already in use")


@app.post(
    "/items",
    response_model=ItemRead,
    summary="Add new item to inventory",
    response_description="Item data",
    tags=["Inventory"],
)
def create_item(
    item: ItemCreate,
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user),
):
    """Add new item to inventory. Admin access only."""
    is_admin(current_user)
    check_qr_code_free(session, item.qr_code)
    db_item = Item(**item.model_dump())
    session.add(db_item)
    session.commit()
    session.refresh(db_item)
    return db_item


@app.put(
    "/items/{id}",
    response_model=ItemRead,
    summary="Update item in inventory",
    response_description="Updated item data",
    tags=["Inventory"],
)
def update_item(
    id: int,
    updated_item: ItemUpdate,
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user),
):
    """
    Update item in inventory by id. Admin access only.
    Counters (`booking_count`, `interest_count`) cannot be set here.
    - **id**: Unique ID of item.
    """
    is_admin(current_user)
    item = inventory.get_item(session, id)
    check_qr_code_free(session, updated_item.qr_code, item_id=id)
    for key, value in updated_item.model_dump(exclude_unset=True).items():
        setattr(item, key, value)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@app.patch(
    "/items/{id}/status",
    response_model=ItemRead,
    dependencies=[Depends(get_current_user)],
    summary="Change item status",
    response_description="Updated item data",
    tags=["Inventory"],
)
def change_item_status(
    id: int, body: ItemStatusUpdate, session: Session = Depends(get_session)
):
    """Move an item between available, rented, cleaning and repair."""
    return inventory.set_item_status(session, id, body.status)


@app.post(
    "/items/{id}/scans",
    response_model=ItemRead,
    summary="Record a scan of the item's tag",
    response_description="Item data with updated interest count",
    tags=["Inventory"],
)
def scan_item(
    id: int,
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user),
):
    """Record interest in an item (tag scanned by staff)."""
    inventory.record_interest(session, id, staff_id=current_user.id)
    return inventory.get_item(session, id)


@app.post(
    "/items/scans",
    response_model=ItemRead,
    summary="Record a scan by tag value",
    response_description="Scanned item with updated interest count",
    tags=["Inventory"],
)
def scan_item_by_code(
    scan: ScanRequest,
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user),
):
    """
    Resolve a scanned tag and record interest in the item.
    - **code**: Tag value; an item id, or the item's `qr_code`
    """
    item = inventory.find_item_by_code(session, scan.code)
    inventory.record_interest(session, item.id, staff_id=current_user.id)
    return inventory.get_item(session, item.id)


@app.post(
    "/items/reconcile-counts",
    response_model=ReconcileResult,
    summary="Recalculate booking counters",
    response_description="Items whose counter was corrected",
    tags=["Inventory"],
)
def reconcile_counts(
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user),
):
    """Recount bookings per item and fix drifted `booking_count` values. Admin access only."""
    is_admin(current_user)
    return ReconcileResult(updated=inventory.reconcile_booking_counts(session))


@app.get(
    "/items/{id}",
    response_model=ItemRead,
    dependencies=[Depends(get_current_user)],
    summary="Get item",
    tags=["Inventory"],
)
def read_item(id: int, session: Session = Depends(get_session)):
    return inventory.get_item(session, id)


@app.get(
    "/items",
    response_model=list[ItemRead],
    dependencies=[Depends(get_current_user)],
    summary="List items in inventory",
    response_description="List of items",
    tags=["Inventory"],
)
def list_items(
    session: Session = Depends(get_session),
    name: Optional[str] = Query(
        None,
        description="Filter by item name",
        min_length=1,
        max_length=100,
        examples=["Ivory lace A-line"],
    ),
    item_status: Optional[ItemStatus] = Query(
        None, alias="status", description="Filter by item status"
    ),
    include_archived: bool = Query(False, description="Include archived items"),
):
    """
    List items in inventory with optional filtering by name or status.

    - **name**: Optional filter by item name (partial match)
    - **status**: Optional filter by status (available, rented, cleaning, repair)
    - **include_archived**: Archived items are hidden unless set
    """
    query = select(Item)

    if name:
        query = query.where(col(Item.name).contains(name))
    if item_status:
        query = query.where(Item.status == item_status)
    if not include_archived:
        query = query.where(Item.is_archived == False)  # noqa: E712

    return session.exec(query).all()


# --- Clients ---
@app.post(
    "/clients",
    response_model=ClientRead,
    dependencies=[Depends(get_current_user)],
    summary="Add new client",
    response_description="Client data",
    tags=["Clients"],
)
def create_client(client: ClientCreate, session: Session = Depends(get_session)):
    db_client = Client(**client.model_dump())
    session.add(db_client)
    session.commit()
    session.refresh(db_client)
    return db_client


@app.put(
    "/clients/{id}",
    response_model=ClientRead,
    dependencies=[Depends(get_current_user)],
    summary="Update client",
    response_description="Updated client data",
    tags=["Clients"],
)
def update_client(
    id: int, updated_client: ClientUpdate, session: Session = Depends(get_session)
):
    """
    Update client details. Name and phone snapshots already stored on
    bookings are not changed.
    - **id**: Client ID.
    """
    client = session.get(Client, id)
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    for key, value in updated_client.model_dump(exclude_unset=True).items():
        setattr(client, key, value)
    session.add(client)
    session.commit()
    session.refresh(client)
    return client


@app.get(
    "/clients/{id}",
    response_model=ClientRead,
    dependencies=[Depends(get_current_user)],
    summary="Get client",
    tags=["Clients"],
)
def read_client(id: int, session: Session = Depends(get_session)):
    client = session.get(Client, id)
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


@app.get(
    "/clients",
    response_model=list[ClientRead],
    dependencies=[Depends(get_current_user)],
    summary="List clients",
    response_description="List of clients",
    tags=["Clients"],
)
def list_clients(
    session: Session = Depends(get_session),
    phone: Optional[str] = Query(None, description="Exact phone number"),
    name: Optional[str] = Query(None, description="Filter by name (partial match)"),
):
    query = select(Client)
    if phone:
        query = query.where(Client.phone == phone)
    if name:
        query = query.where(col(Client.full_name).contains(name))
    return session.exec(query.order_by(col(Client.full_name))).all()


# --- Booking Routes ---
@app.get(
    "/bookings/availability",
    response_model=AvailabilityRead,
    dependencies=[Depends(get_current_user)],
    summary="Check item availability",
    response_description="Whether the item is free for the dates",
    tags=["Bookings"],
)
def check_availability(
    item_id: int,
    start_date: date,
    end_date: date,
    exclude_booking_id: Optional[int] = Query(
        None, description="Booking being edited, ignored in the check"
    ),
    session: Session = Depends(get_session),
):
    """
    Check whether an item is free for a date range, keeping a buffer day
    between rentals.
    - **item_id**: Item requested
    - **start_date**, **end_date**: Requested range (inclusive)
    - **exclude_booking_id**: Pass the booking's own id when editing it
    """
    available = bookings.check_item_availability(
        session, item_id, start_date, end_date, exclude_booking_id
    )
    return AvailabilityRead(
        item_id=item_id, start_date=start_date, end_date=end_date, available=available
    )


@app.post(
    "/bookings",
    response_model=BookingRead,
    summary="Create new booking",
    response_description="Booking data",
    tags=["Bookings"],
)
def create_booking(
    body: BookingCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Create a booking, its client and opening deposit in one transaction.
    - **booking**: item, dates, agreed price
    - **client**: `id` of an existing client (other fields update it), or the fields of a new client
    - **initial_payment**: optional deposit (amount, method, notes)

    Returns 409 if the item is already booked for the dates.
    """
    return bookings.create_booking(
        session,
        body.booking,
        body.client,
        body.initial_payment,
        staff_id=current_user.id,
    )


@app.get(
    "/bookings/unpaid",
    response_model=list[BookingRead],
    dependencies=[Depends(get_current_user)],
    summary="List bookings with an outstanding balance",
    tags=["Bookings"],
)
def list_unpaid_bookings(session: Session = Depends(get_session)):
    return bookings.list_unpaid_bookings(session)


@app.get(
    "/bookings/{id}",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Get booking",
    tags=["Bookings"],
)
def read_booking(id: int, session: Session = Depends(get_session)):
    return bookings.get_booking(session, id)


@app.put(
    "/bookings/{id}",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Update existing booking",
    response_description="Updated booking data",
    tags=["Bookings"],
)
def update_booking(
    id: int, updated_booking: BookingUpdate, session: Session = Depends(get_session)
):
    """
    Update dates, price, city or status of a booking.
    Availability is not re-checked; call `/bookings/availability` with
    `exclude_booking_id` before moving dates.
    - **id**: Booking ID
    """
    return bookings.update_booking(session, id, updated_booking)


@app.patch(
    "/bookings/{id}/status",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Change booking status",
    tags=["Bookings"],
)
def change_booking_status(
    id: int, body: BookingStatusUpdate, session: Session = Depends(get_session)
):
    """pending → active/cancelled, active → completed/cancelled."""
    return bookings.set_booking_status(session, id, body.status)


@app.get(
    "/bookings",
    response_model=list[BookingRead],
    dependencies=[Depends(get_current_user)],
    summary="List all bookings",
    response_description="List of bookings",
    tags=["Bookings"],
)
def list_bookings(
    session: Session = Depends(get_session),
    item_id: Optional[int] = Query(None, description="Item ID to check bookings for"),
    client_id: Optional[int] = Query(None, description="Show only certain client"),
    booking_status: Optional[BookingStatus] = Query(
        None, alias="status", description="Filter by status"
    ),
):
    """List bookings, latest start date first, with optional filters.
    - **item_id**: Optional filter for which item to show bookings for
    - **client_id**: Optional filter for which client to show bookings for
    - **status**: Optional filter by booking status
    """
    return bookings.list_bookings(session, item_id, client_id, booking_status)


# --- Ledger ---
@app.post(
    "/ledger",
    response_model=LedgerEntryRead,
    summary="Record payment",
    response_description="Ledger entry",
    tags=["Ledger"],
)
def record_payment(
    entry: LedgerEntryCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Record a deposit, final payment or sale.
    Bookings referenced by the entry (or by its line items) are credited.
    """
    return ledger.record_entry(session, entry, staff_id=current_user.id)


@app.get(
    "/ledger",
    response_model=list[LedgerEntryRead],
    dependencies=[Depends(get_current_user)],
    summary="List recent ledger entries",
    tags=["Ledger"],
)
def list_payments(
    session: Session = Depends(get_session),
    limit: int = Query(20, ge=1, le=500),
    booking_id: Optional[int] = Query(None, description="Entries crediting this booking"),
):
    return ledger.list_entries(session, limit=limit, booking_id=booking_id)


@app.get(
    "/ledger/{id}",
    response_model=LedgerEntryRead,
    dependencies=[Depends(get_current_user)],
    summary="Get ledger entry",
    tags=["Ledger"],
)
def read_payment(id: int, session: Session = Depends(get_session)):
    return ledger.get_entry(session, id)


@app.patch(
    "/ledger/{id}",
    response_model=LedgerEntryRead,
    dependencies=[Depends(get_current_user)],
    summary="Amend ledger entry",
    tags=["Ledger"],
)
def amend_payment(
    id: int, changes: LedgerEntryUpdate, session: Session = Depends(get_session)
):
    """Amend amount, line items, method or notes. Amount changes are applied to the related bookings."""
    return ledger.amend_entry(session, id, changes)


@app.delete(
    "/ledger/{id}",
    dependencies=[Depends(get_current_user)],
    summary="Void ledger entry",
    tags=["Ledger"],
)
def void_payment(id: int, session: Session = Depends(get_session)):
    """
    Void a ledger entry: its payments are taken off the related bookings and the entry is deleted.
    -**id**: Ledger entry ID.
    """
    ledger.void_entry(session, id)
    return {"ok": True}
