import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from slotbooking.config import Settings
from slotbooking.main import create_app
from slotbooking.models.tables import Appointments, SlotLocks
from slotbooking.services.events import P2P_QUEUE, redis_emitter
from slotbooking.services.slots import BookingCoordinator

from conftest import NOW, utc

TOKEN = "gateway-secret"
STAFF = {"X-Internal-Token": TOKEN, "X-User-Id": "u1", "X-Company-Id": "c1"}

BODY = {
    "companyId": "c1",
    "professionalId": "p1",
    "serviceId": "s1",
    "clientName": "  Ana Pérez ",
    "clientPhone": "+56911111111",
    "startAt": "2026-03-02T13:00:00Z",
}


@pytest.fixture
def redis():
    return MagicMock()


@pytest.fixture
def app(session_factory, company, redis):
    settings = Settings(internal_token=TOKEN, background_jobs=False, log_level="WARNING")
    app = create_app(settings=settings, session_factory=session_factory, redis=redis)
    app.state.coordinator = BookingCoordinator(
        session_factory,
        config=app.state.booking_config,
        emit=redis_emitter(redis),
        clock=lambda: NOW,
    )
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _book(client, headers=None, **overrides):
    return client.post("/appointments", json={**BODY, **overrides}, headers=headers or {})


# ── Create ───────────────────────────────────────────────────────────────


def test_public_create(client, session_factory, redis) -> None:
    response = _book(client)

    assert response.status_code == 201
    body = response.json()
    assert body["lockId"] == "c1_p1_202603021300"

    with session_factory() as db:
        appointment = db.get(Appointments, body["appointmentId"])
    assert appointment.client_name == "Ana Pérez"
    assert appointment.source == "PUBLIC"
    assert redis.rpush.call_args[0][0] == P2P_QUEUE


def test_snake_case_fields_are_accepted(client) -> None:
    body = {
        "company_id": "c1",
        "professional_id": "p1",
        "service_id": "s1",
        "client_name": "Ana",
        "client_phone": "+56911111111",
        "start_at": "2026-03-02T13:00:00Z",
    }

    assert client.post("/appointments", json=body).status_code == 201


def test_duplicate_booking_maps_to_409(client) -> None:
    _book(client)

    response = _book(client, clientName="Beto")

    assert response.status_code == 409
    assert response.json() == {"code": "ALREADY_EXISTS", "detail": "SLOT_TAKEN"}


@pytest.mark.parametrize(
    "overrides",
    [
        {"clientName": "   "},
        {"clientPhone": "123"},
        {"professionalId": "x" * 201},
        {"startAt": "not-a-date"},
        {"endAt": "2026-03-02T12:00:00Z"},
    ],
)
def test_invalid_input_maps_to_400(client, overrides) -> None:
    response = _book(client, **overrides)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ARGUMENT"


def test_missing_field_maps_to_400(client) -> None:
    body = dict(BODY)
    del body["clientPhone"]

    response = client.post("/appointments", json=body)

    assert response.status_code == 400


def test_past_slot_maps_to_412(client) -> None:
    response = _book(client, startAt="2026-03-01T13:00:00Z")

    assert response.status_code == 412
    assert response.json() == {"code": "FAILED_PRECONDITION", "detail": "SLOT_IN_PAST"}


@pytest.mark.parametrize(
    "overrides",
    [
        {"startAt": "9999-12-31T23:55:00Z"},
        {"startAt": "9999-12-31T23:55:00Z", "endAt": "9999-12-31T23:59:00Z"},
    ],
)
def test_date_out_of_range_maps_to_400(client, overrides) -> None:
    response = _book(client, **overrides)

    assert response.status_code == 400
    assert response.json() == {"code": "INVALID_ARGUMENT", "detail": "Invalid date for startAt"}


def test_check_with_date_out_of_range_maps_to_400(client) -> None:
    response = client.get(
        "/availability/check",
        params={"companyId": "c1", "professionalId": "p1", "startAt": "9999-12-31T23:55:00Z"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ARGUMENT"


@pytest.mark.parametrize("slot_minutes", [float("inf"), float("-inf"), float("nan"), "abc", 500])
def test_unusable_slot_minutes_fall_back_to_default(client, session_factory, slot_minutes) -> None:
    response = client.post(
        "/appointments",
        content=json.dumps({**BODY, "slotMinutes": slot_minutes}),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 201
    with session_factory() as db:
        lock = db.get(SlotLocks, response.json()["lockId"])
    assert lock.expires_at == utc(2026, 3, 2, 13, 15)


def test_unexpected_error_maps_to_500(app) -> None:
    app.state.coordinator = MagicMock()
    app.state.coordinator.create_appointment.side_effect = RuntimeError("storage unavailable")
    client = TestClient(app, raise_server_exceptions=False)

    response = _book(client)

    assert response.status_code == 500
    assert response.json() == {"code": "INTERNAL", "detail": "storage unavailable"}


def test_rate_limit_maps_to_429(client, app) -> None:
    app.state.rate_limiter.set_limit("create_appointment", 1)
    _book(client)

    response = _book(client, startAt="2026-03-02T14:00:00Z")

    assert response.status_code == 429
    assert response.json()["code"] == "RESOURCE_EXHAUSTED"
    assert "Retry-After" in response.headers


def test_identity_headers_without_token_are_ignored(client, session_factory) -> None:
    response = _book(client, headers={"X-User-Id": "u1"}, status="CONFIRMED")

    with session_factory() as db:
        appointment = db.get(Appointments, response.json()["appointmentId"])
    assert appointment.status == "REQUESTED"
    assert appointment.source == "PUBLIC"


def test_staff_may_create_confirmed(client, session_factory, redis) -> None:
    response = _book(client, headers=STAFF, status="CONFIRMED")

    with session_factory() as db:
        appointment = db.get(Appointments, response.json()["appointmentId"])
    assert appointment.status == "CONFIRMED"
    assert appointment.source == "DASHBOARD"
    redis.rpush.assert_not_called()


def test_company_claim_mismatch_maps_to_403(client) -> None:
    response = _book(client, headers={**STAFF, "X-Company-Id": "c2"})

    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"


# ── Cancel / reschedule / read ───────────────────────────────────────────


def test_cancel_requires_authentication(client) -> None:
    appointment_id = _book(client).json()["appointmentId"]

    response = client.post(f"/appointments/{appointment_id}/cancel", json={"companyId": "c1"})

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHENTICATED"


def test_cancel(client, session_factory) -> None:
    booked = _book(client).json()

    response = client.post(
        f"/appointments/{booked['appointmentId']}/cancel", json={"companyId": "c1"}, headers=STAFF
    )

    assert response.status_code == 200
    assert response.json() == {"appointmentId": booked["appointmentId"], "lockReleased": True}
    with session_factory() as db:
        assert db.get(SlotLocks, booked["lockId"]) is None


def test_cancel_unknown_maps_to_404(client) -> None:
    response = client.post("/appointments/missing/cancel", json={"companyId": "c1"}, headers=STAFF)

    assert response.status_code == 404


def test_reschedule(client) -> None:
    booked = _book(client).json()

    response = client.post(
        f"/appointments/{booked['appointmentId']}/reschedule",
        json={"companyId": "c1", "startAt": "2026-03-02T17:00:00Z"},
        headers=STAFF,
    )

    assert response.status_code == 200
    assert response.json() == {
        "appointmentId": booked["appointmentId"],
        "lockId": "c1_p1_202603021700",
        "reactivated": False,
    }


def test_reschedule_onto_taken_slot_maps_to_409(client) -> None:
    booked = _book(client).json()
    _book(client, startAt="2026-03-02T17:00:00Z")

    response = client.post(
        f"/appointments/{booked['appointmentId']}/reschedule",
        json={"companyId": "c1", "startAt": "2026-03-02T17:00:00Z"},
        headers=STAFF,
    )

    assert response.status_code == 409


def test_get_appointment(client) -> None:
    booked = _book(client).json()

    response = client.get(f"/appointments/{booked['appointmentId']}", headers=STAFF)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "REQUESTED"
    assert body["company_id"] == "c1"


# ── Availability administration ──────────────────────────────────────────


def test_template_round_trip_and_check(client) -> None:
    rules = {"weeklyRules": {"1": [{"start": "09:00", "end": "13:00"}]}}

    put = client.put("/availability/templates/p1", json=rules, headers=STAFF)
    get = client.get("/availability/templates/p1", headers=STAFF)

    assert put.status_code == 200
    assert get.json()["weekly_rules"] == {"1": [{"start": "09:00", "end": "13:00"}]}

    check = client.get(
        "/availability/check",
        params={"companyId": "c1", "professionalId": "p1", "startAt": "2026-03-02T17:00:00Z"},
    )
    assert check.json() == {"allowed": False, "reason": "OUT_OF_SCHEDULE"}


@pytest.mark.parametrize(
    "weekly_rules",
    [
        {},
        {"1": []},
        {"1": [{"start": "9:00", "end": "13:00"}]},
        {"1": [{"start": "13:00", "end": "09:00"}]},
        {"8": [{"start": "09:00", "end": "13:00"}]},
    ],
)
def test_invalid_template_maps_to_400(client, weekly_rules) -> None:
    response = client.put("/availability/templates/p1", json={"weeklyRules": weekly_rules}, headers=STAFF)

    assert response.status_code == 400


def test_template_admin_requires_authentication(client) -> None:
    response = client.get("/availability/templates/p1", params={"companyId": "c1"})

    assert response.status_code == 401


def test_exceptions_lifecycle(client) -> None:
    created = client.post(
        "/availability/exceptions/p1",
        json={"type": "block", "startAt": "2026-03-02T12:00:00Z", "endAt": "2026-03-02T18:00:00Z", "reason": "Congreso"},
        headers=STAFF,
    )
    assert created.status_code == 201
    exception = created.json()
    assert exception["type"] == "BLOCK"

    assert _book(client).json() == {"code": "FAILED_PRECONDITION", "detail": "SLOT_BLOCKED"}

    listed = client.get("/availability/exceptions/p1", headers=STAFF).json()
    assert [e["id"] for e in listed] == [exception["id"]]

    deleted = client.delete(f"/availability/exceptions/p1/{exception['id']}", headers=STAFF)
    assert deleted.status_code == 204
    assert _book(client).status_code == 201


# ── Internal / health ────────────────────────────────────────────────────


def test_sweep_requires_internal_token(client) -> None:
    assert client.post("/internal/locks/sweep").status_code == 401


def test_sweep_endpoint(client, seed) -> None:
    seed(SlotLocks(
        id="c1_p1_200001010000",
        company_id="c1",
        professional_id="p1",
        start_at=utc(2000, 1, 1),
        expires_at=utc(2000, 1, 1, 0, 15),
    ))

    response = client.post("/internal/locks/sweep", headers={"X-Internal-Token": TOKEN})

    assert response.json() == {"removed": 1}


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok", "redis": True}
