from fastapi.testclient import TestClient
from decimal import Decimal
import pytest
from sqlmodel import Session, select

from .app import app, get_current_user, get_password_hash
from .database import engine
from .models import Item, User

client = TestClient(app)


def teardown_function():
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
def create_users(reset_database):
    with Session(engine) as session:
        user1 = User(
            username="johndoe",
            email="john@doe.com",
            hashed_password=get_password_hash("johnspass"),
        )
        admin = User(
            username="admin",
            email="admin@atelier.com",
            hashed_password=get_password_hash("adminpass"),
            is_admin=True,
        )
        session.add_all([user1, admin])
        session.commit()


def get_user_by_username(username: str):
    with Session(engine) as session:
        return session.exec(select(User).where(User.username == username)).first()


def mock_user():
    return get_user_by_username("johndoe")


def mock_admin():
    return get_user_by_username("admin")


@pytest.fixture
def item_id():
    with Session(engine) as session:
        item = Item(name="Ivory lace A-line")
        session.add(item)
        session.commit()
        session.refresh(item)
        return item.id


def booking_payload(item_id, start="2024-01-10", end="2024-01-12", deposit=None, client_fields=None):
    payload = {
        "booking": {
            "item_id": item_id,
            "start_date": start,
            "end_date": end,
            "agreed_price": "1000",
        },
        "client": client_fields or {"full_name": "Dana Levi", "phone": "0501234567"},
    }
    if deposit:
        payload["initial_payment"] = {"amount": deposit, "method": "cash"}
    return payload


def test_login():
    response = client.post("/token", data={"username": "johndoe", "password": "johnspass"})
    assert response.status_code == 200
    data = response.json()
    assert "access_token" in data
    assert data["token_type"] == "bearer"

    response = client.post(
        "/token", data={"username": "nonexistentuser", "password": "password"}
    )
    assert response.status_code == 401


def test_token_grants_access():
    token = client.post(
        "/token", data={"username": "johndoe", "password": "johnspass"}
    ).json()["access_token"]
    response = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["username"] == "johndoe"


# --------
# Inventory endpoints
# --------


def test_get_items_not_logged_in():
    response = client.get("/items")
    assert response.status_code == 401


def test_post_item_regular_user():
    app.dependency_overrides[get_current_user] = mock_user
    response = client.post("/items", json={"name": "Test dress"})
    assert response.status_code == 401


def test_post_item_admin():
    app.dependency_overrides[get_current_user] = mock_admin
    response = client.post("/items", json={"name": "Test dress", "rental_price": "900"})
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Test dress"
    assert data["status"] == "available"
    assert data["booking_count"] == 0
    assert "id" in data


def test_scan_item(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.post(f"/items/{item_id}/scans")
    assert response.status_code == 200
    assert response.json()["interest_count"] == 1


def test_scan_item_by_qr_code():
    app.dependency_overrides[get_current_user] = mock_admin
    item = client.post("/items", json={"name": "Blush tulle", "qr_code": "GWN-0042"}).json()

    response = client.post("/items/scans", json={"code": "GWN-0042"})
    assert response.status_code == 200
    assert response.json()["id"] == item["id"]
    assert response.json()["interest_count"] == 1

    response = client.post("/items/scans", json={"code": str(item["id"])})
    assert response.json()["interest_count"] == 2

    response = client.post("/items/scans", json={"code": "GWN-9999"})
    assert response.status_code == 404


def test_qr_code_must_be_unique(item_id):
    app.dependency_overrides[get_current_user] = mock_admin
    assert client.post("/items", json={"name": "Blush tulle", "qr_code": "GWN-0042"}).status_code == 200

    response = client.post("/items", json={"name": "Navy sheath", "qr_code": "GWN-0042"})
    assert response.status_code == 400

    response = client.put(f"/items/{item_id}", json={"qr_code": "GWN-0042"})
    assert response.status_code == 400


def test_rental_price_must_be_positive():
    app.dependency_overrides[get_current_user] = mock_admin
    response = client.post("/items", json={"name": "Test dress", "rental_price": "0"})
    assert response.status_code == 422


def test_update_item_rejects_null_fields(item_id):
    app.dependency_overrides[get_current_user] = mock_admin
    response = client.put(f"/items/{item_id}", json={"name": None})
    assert response.status_code == 422

    response = client.put(f"/items/{item_id}", json={"status": None})
    assert response.status_code == 422

    response = client.put(f"/items/{item_id}", json={"name": "Ivory lace mermaid"})
    assert response.status_code == 200
    assert response.json()["name"] == "Ivory lace mermaid"


def test_list_items_by_status(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.get("/items", params={"status": "available"})
    assert response.status_code == 200
    assert [i["id"] for i in response.json()] == [item_id]

    response = client.get("/items", params={"status": "lost"})
    assert response.status_code == 422


def test_change_item_status(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.patch(f"/items/{item_id}/status", json={"status": "repair"})
    assert response.status_code == 200
    assert response.json()["status"] == "repair"

    response = client.patch(f"/items/{item_id}/status", json={"status": "lost"})
    assert response.status_code == 422


def test_unknown_item_is_404():
    app.dependency_overrides[get_current_user] = mock_user
    response = client.get("/items/999")
    assert response.status_code == 404


def test_reconcile_counts_admin_only(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    assert client.post("/items/reconcile-counts").status_code == 401

    app.dependency_overrides[get_current_user] = mock_admin
    with Session(engine) as session:
        item = session.get(Item, item_id)
        item.booking_count = 3
        session.add(item)
        session.commit()

    response = client.post("/items/reconcile-counts")
    assert response.status_code == 200
    assert response.json() == {"updated": {str(item_id): 0}}


# ----------------
# Client endpoints
# ----------------


def test_update_client_rejects_null_fields():
    app.dependency_overrides[get_current_user] = mock_user
    created = client.post("/clients", json={"full_name": "Noa Cohen", "phone": "0521111111"})
    assert created.status_code == 200
    client_id = created.json()["id"]

    response = client.put(f"/clients/{client_id}", json={"full_name": None})
    assert response.status_code == 422
    response = client.put(f"/clients/{client_id}", json={"phone": None})
    assert response.status_code == 422

    response = client.put(f"/clients/{client_id}", json={"email": "noa@example.com", "address": None})
    assert response.status_code == 200
    assert response.json()["full_name"] == "Noa Cohen"
    assert response.json()["email"] == "noa@example.com"


# -----------------
# Booking endpoints
# -----------------


def test_post_booking_not_logged_in(item_id):
    response = client.post("/bookings", json=booking_payload(item_id))
    assert response.status_code == 401


def test_create_booking(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.post("/bookings", json=booking_payload(item_id, deposit="300"))
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "active"
    assert data["client_name"] == "Dana Levi"
    assert Decimal(data["paid_amount"]) == Decimal("300")

    entries = client.get("/ledger", params={"booking_id": data["id"]}).json()
    assert len(entries) == 1
    assert entries[0]["kind"] == "deposit"
    assert entries[0]["staff_id"] == mock_user().id


def test_create_booking_requires_client(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.post("/bookings", json=booking_payload(item_id, client_fields={"email": "x@y.com"}))
    assert response.status_code == 422


def test_create_booking_rejects_reversed_dates(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    response = client.post(
        "/bookings", json=booking_payload(item_id, start="2024-01-12", end="2024-01-10")
    )
    assert response.status_code == 422


def test_cannot_book_already_booked_item(item_id):
    app.dependency_overrides[get_current_user] = mock_user

    resp1 = client.post("/bookings", json=booking_payload(item_id, "2024-01-10", "2024-01-12"))
    assert resp1.status_code == 200

    resp2 = client.post("/bookings", json=booking_payload(item_id, "2024-01-11", "2024-01-15"))
    assert resp2.status_code == 409
    assert resp2.json()["conflicting_booking_id"] == resp1.json()["id"]


def test_availability_endpoint(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    booking_id = client.post("/bookings", json=booking_payload(item_id)).json()["id"]

    params = {"item_id": item_id, "start_date": "2024-01-11", "end_date": "2024-01-15"}
    response = client.get("/bookings/availability", params=params)
    assert response.status_code == 200
    assert response.json()["available"] is False

    params["exclude_booking_id"] = booking_id
    assert client.get("/bookings/availability", params=params).json()["available"] is True

    params = {"item_id": item_id, "start_date": "2024-01-01", "end_date": "2024-01-05"}
    assert client.get("/bookings/availability", params=params).json()["available"] is True


def test_update_and_cancel_booking(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    booking_id = client.post("/bookings", json=booking_payload(item_id)).json()["id"]

    response = client.put(f"/bookings/{booking_id}", json={"agreed_price": "1200"})
    assert response.status_code == 200
    assert Decimal(response.json()["agreed_price"]) == Decimal("1200")

    response = client.patch(f"/bookings/{booking_id}/status", json={"status": "cancelled"})
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = client.patch(f"/bookings/{booking_id}/status", json={"status": "active"})
    assert response.status_code == 422


def test_list_bookings_and_unpaid(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    client.post("/bookings", json=booking_payload(item_id, "2024-01-10", "2024-01-12", deposit="1000"))
    client.post("/bookings", json=booking_payload(item_id, "2024-02-10", "2024-02-12", deposit="300"))

    assert len(client.get("/bookings", params={"item_id": item_id}).json()) == 2
    unpaid = client.get("/bookings/unpaid").json()
    assert [b["start_date"] for b in unpaid] == ["2024-02-10"]


# -----------------
# Ledger endpoints
# -----------------


def test_amend_and_void_payment(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    booking_id = client.post("/bookings", json=booking_payload(item_id, deposit="300")).json()["id"]
    entry_id = client.get("/ledger", params={"booking_id": booking_id}).json()[0]["id"]

    response = client.patch(f"/ledger/{entry_id}", json={"amount": "500"})
    assert response.status_code == 200
    paid = client.get(f"/bookings/{booking_id}").json()["paid_amount"]
    assert Decimal(paid) == Decimal("500")

    response = client.delete(f"/ledger/{entry_id}")
    assert response.status_code == 200
    paid = client.get(f"/bookings/{booking_id}").json()["paid_amount"]
    assert Decimal(paid) == 0

    assert client.get(f"/ledger/{entry_id}").status_code == 404


def test_record_split_cart_payment(item_id):
    app.dependency_overrides[get_current_user] = mock_user
    booking_id = client.post("/bookings", json=booking_payload(item_id, deposit="300")).json()["id"]

    response = client.post(
        "/ledger",
        json={
            "kind": "final_payment",
            "amount": "750",
            "payment_method": "credit",
            "customer_name": "Dana Levi",
            "related_booking_id": booking_id,
            "items": [
                {"description": "Balance", "amount": "700", "booking_id": booking_id},
                {"description": "Veil", "amount": "50"},
            ],
        },
    )
    assert response.status_code == 200
    assert len(response.json()["items"]) == 2
    paid = client.get(f"/bookings/{booking_id}").json()["paid_amount"]
    assert Decimal(paid) == Decimal("1000")
