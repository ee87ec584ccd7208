import jwt
import pytest

pytestmark = pytest.mark.api


@pytest.fixture
def owner_headers(auth_headers, owner_actor):
    return auth_headers(owner_actor)


@pytest.fixture
def staff_headers(auth_headers, staff_actor):
    return auth_headers(staff_actor)


@pytest.fixture
def booked(client, booking, owner_headers):
    response = client.post("/api/appointments/", json=booking(), headers=owner_headers)
    assert response.status_code == 201
    return response.get_json()["data"]


def test_home(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_requests_without_token_are_rejected(client, db):
    response = client.get("/api/appointments/1")

    assert response.status_code == 401
    assert response.get_json()["code"] == "UNAUTHORIZED"


def test_garbage_token_is_rejected(client, db):
    response = client.get(
        "/api/appointments/1", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


def test_create_appointment(booked, tomorrow):
    assert booked["status"] == "pending"
    assert booked["preferred_date"] == tomorrow.isoformat()
    assert booked["preferred_time"] == "10:00:00"
    assert booked["preferred_time_display"] == "10:00 AM"
    assert booked["total_amount"] == 500.0
    assert booked["pet"]["name"] == "Biscuit"
    assert booked["service"]["name"] == "Full Groom"


def test_create_with_non_json_body(client, owner_headers, db):
    response = client.post(
        "/api/appointments/", data="pet_id=42", headers=owner_headers
    )
    assert response.status_code == 400


def test_create_with_missing_fields(client, owner_headers, seed):
    response = client.post(
        "/api/appointments/", json={"pet_id": seed.pet.id}, headers=owner_headers
    )

    body = response.get_json()
    assert response.status_code == 400
    assert body["status"] == "error"
    assert body["code"] == "VALIDATION_ERROR"
    assert {e["field"] for e in body["errors"]} == {
        "service_id",
        "preferred_date",
        "preferred_time",
    }


def test_double_booking_returns_conflict(client, booking, booked, seed, owner_headers):
    response = client.post(
        "/api/appointments/",
        json=booking(pet_id=seed.pets[0].id),
        headers=owner_headers,
    )

    body = response.get_json()
    assert response.status_code == 409
    assert body["code"] == "TIME_SLOT_UNAVAILABLE"
    assert body["conflict"]["id"] == booked["id"]


def test_get_appointment(client, booked, owner_headers):
    response = client.get(f"/api/appointments/{booked['id']}", headers=owner_headers)

    assert response.status_code == 200
    assert response.get_json()["data"]["id"] == booked["id"]


def test_other_owner_is_forbidden(client, booked, auth_headers, other_owner_actor):
    response = client.get(
        f"/api/appointments/{booked['id']}", headers=auth_headers(other_owner_actor)
    )

    assert response.status_code == 403
    assert response.get_json()["code"] == "FORBIDDEN"


def test_missing_appointment(client, owner_headers, db):
    response = client.get("/api/appointments/9999", headers=owner_headers)
    assert response.status_code == 404


def test_available_slots(client, booked, owner_headers, tomorrow):
    response = client.get(
        f"/api/appointments/slots?date={tomorrow.isoformat()}", headers=owner_headers
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["booked_time_slots"] == ["10:00 AM"]
    assert "10:00 AM" not in data["available_time_slots"]


def test_slots_require_a_date(client, owner_headers, db):
    response = client.get("/api/appointments/slots", headers=owner_headers)
    assert response.status_code == 400


def test_invalid_transition_returns_409(client, booked, staff_headers):
    response = client.put(
        f"/api/appointments/{booked['id']}/status",
        json={"status": "completed"},
        headers=staff_headers,
    )

    body = response.get_json()
    assert response.status_code == 409
    assert body["code"] == "INVALID_STATUS_TRANSITION"
    assert body["current_status"] == "pending"


def test_pet_owner_cannot_confirm(client, booked, owner_headers):
    response = client.put(
        f"/api/appointments/{booked['id']}/status",
        json={"status": "confirmed"},
        headers=owner_headers,
    )
    assert response.status_code == 403


def test_full_visit(client, booked, staff_headers, owner_headers, seed):
    url = f"/api/appointments/{booked['id']}"

    response = client.put(f"{url}/status", json={"status": "confirmed"}, headers=staff_headers)
    assert response.get_json()["data"]["status"] == "confirmed"

    response = client.put(
        f"{url}/groomer", json={"groomer_id": seed.groomer.id}, headers=staff_headers
    )
    assert response.get_json()["data"]["groomer"]["name"] == "Gina Groomer"

    response = client.put(f"{url}/status", json={"status": "in_progress"}, headers=staff_headers)
    started = response.get_json()["data"]
    assert started["daily_queue_number"] == 1
    assert started["session"]["status"] == "active"

    response = client.post(
        f"{url}/services", json={"services": [seed.nail_trim.id]}, headers=staff_headers
    )
    assert response.get_json()["data"]["total_amount"] == 650.0

    response = client.get(f"/api/receipts/appointment/{booked['id']}", headers=owner_headers)
    assert response.status_code == 409

    response = client.put(f"{url}/status", json={"status": "completed"}, headers=staff_headers)
    assert response.get_json()["data"]["duration_minutes"] == 1

    response = client.post(
        f"/api/payments/appointment/{booked['id']}",
        json={"amount": 700, "payment_method": "cash"},
        headers=staff_headers,
    )
    body = response.get_json()
    assert response.status_code == 201
    assert body["data"]["payment_status"] == "paid"
    assert body["payment"]["amount"] == 650.0

    response = client.get(f"/api/receipts/appointment/{booked['id']}", headers=owner_headers)
    receipt = response.get_json()["data"]
    assert response.status_code == 200
    assert receipt["receipt_number"] == f"RCP-{booked['id']:06d}"
    assert receipt["amount_paid"] == 650.0
    assert receipt["services"]["service_names"] == "Full Groom, Nail Trim"


def test_cancel_requires_reason(client, booked, owner_headers):
    response = client.put(
        f"/api/appointments/{booked['id']}/cancel", json={}, headers=owner_headers
    )
    assert response.status_code == 400


def test_cancel(client, booked, owner_headers):
    response = client.put(
        f"/api/appointments/{booked['id']}/cancel",
        json={"reason": "Pet is sick"},
        headers=owner_headers,
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["status"] == "cancelled"
    assert data["refund_status"] == "not_refunded"


def test_reschedule(client, booked, owner_headers, tomorrow):
    response = client.put(
        f"/api/appointments/{booked['id']}/reschedule",
        json={
            "preferred_date": tomorrow.isoformat(),
            "preferred_time": "2:00 PM",
            "reason": "Work meeting",
        },
        headers=owner_headers,
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["preferred_time"] == "14:00:00"
    assert data["reschedule_history"][0]["reason"] == "Work meeting"


def test_bulk_status(client, booked, staff_headers):
    response = client.put(
        "/api/appointments/bulk-status",
        json={"appointment_ids": [booked["id"], 9999], "status": "confirmed"},
        headers=staff_headers,
    )

    assert response.status_code == 200
    results = response.get_json()["data"]
    assert [r["success"] for r in results] == [True, False]


@pytest.mark.parametrize(
    "claims",
    [{"user_id": "abc", "role": "staff"}, {"role": "staff"}, {"user_id": 3, "role": "admin"}],
)
def test_token_with_bad_claims_is_rejected(client, app, db, claims):
    token = jwt.encode(claims, app.config["SECRET_KEY"], algorithm="HS256")

    response = client.get(
        "/api/appointments/groomers", headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 401
    assert response.get_json()["code"] == "UNAUTHORIZED"


def test_create_with_non_numeric_service(client, booking, owner_headers):
    response = client.post(
        "/api/appointments/", json=booking(service_id="abc"), headers=owner_headers
    )

    assert response.status_code == 400
    assert response.get_json()["errors"][0]["field"] == "service_id"


def test_unreadable_discount_returns_400(client, booked, staff_headers):
    response = client.put(
        f"/api/appointments/{booked['id']}/pricing",
        json={"discount": "NaN"},
        headers=staff_headers,
    )

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_PRICE"


def test_available_groomers(client, staff_headers, owner_headers):
    response = client.get("/api/appointments/groomers", headers=staff_headers)

    body = response.get_json()
    assert response.status_code == 200
    assert body["count"] == 1
    assert body["data"][0]["name"] == "Gina Groomer"
    assert body["data"][0]["email"] == "gina@example.com"

    response = client.get("/api/appointments/groomers", headers=owner_headers)
    assert response.status_code == 403


def test_set_actual_schedule(client, booked, staff_headers, tomorrow):
    url = f"/api/appointments/{booked['id']}/actual-schedule"

    response = client.put(
        url,
        json={"actual_date": tomorrow.isoformat(), "actual_time": "3:00 PM"},
        headers=staff_headers,
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["data"]["actual_date"] == tomorrow.isoformat()
    assert body["data"]["actual_time"] == "15:00:00"
    assert body["updated_by"] == "Rita Desk"

    response = client.put(url, json={"actual_date": tomorrow.isoformat()}, headers=staff_headers)
    assert response.status_code == 400


def test_refund(client, booked, staff_headers, owner_headers):
    url = f"/api/payments/appointment/{booked['id']}"

    response = client.post(f"{url}/refund", headers=staff_headers)
    assert response.status_code == 400
    assert response.get_json()["code"] == "NOT_REFUNDABLE"

    client.post(url, json={"amount": 500}, headers=staff_headers)
    response = client.post(
        f"{url}/refund",
        json={"refund_amount": 150, "reason": "Short visit"},
        headers=owner_headers,
    )
    assert response.status_code == 403

    response = client.post(
        f"{url}/refund",
        json={"refund_amount": 150, "reason": "Short visit"},
        headers=staff_headers,
    )
    body = response.get_json()
    assert response.status_code == 200
    assert body["message"] == "Refund of 150.00 processed successfully"
    assert body["data"]["payment_status"] == "refunded"
    assert body["refund"]["transaction_type"] == "refund"
    assert body["processed_by"] == "Rita Desk"
