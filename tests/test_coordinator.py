from datetime import timedelta

import pytest
from sqlalchemy import func, select

from slotbooking.auth import Caller
from slotbooking.models.tables import Appointments, SlotLocks
from slotbooking.services.errors import (
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    SlotTaken,
)
from slotbooking.services.slots import BookingConfig, BookingCoordinator, SlotLockStore
from slotbooking.services.slots.coordinator import reactivate

from conftest import NOW, WEEKDAY_RULES, booking_kwargs, utc

DASHBOARD_USER = Caller(uid="u1", company_id="c1", ip="10.0.0.1")


def _lock(session_factory, key):
    with session_factory() as db:
        return db.get(SlotLocks, key)


def _appointment(session_factory, appointment_id):
    with session_factory() as db:
        return db.get(Appointments, appointment_id)


def _count(session_factory, model):
    with session_factory() as db:
        return db.scalar(select(func.count()).select_from(model))


# ── Create ───────────────────────────────────────────────────────────────


def test_create_writes_lock_and_appointment(coordinator, session_factory, company, emitted) -> None:
    result = coordinator.create_appointment(**booking_kwargs(client_email="ana@example.com"))

    assert result.lock_id == "c1_p1_202603021300"

    lock = _lock(session_factory, result.lock_id)
    assert lock.appointment_id == result.appointment_id
    assert lock.start_at == utc(2026, 3, 2, 13, 0)
    assert lock.expires_at == utc(2026, 3, 2, 13, 15)

    appointment = _appointment(session_factory, result.appointment_id)
    assert appointment.status == "REQUESTED"
    assert appointment.source == "PUBLIC"
    assert appointment.end_at == utc(2026, 3, 2, 13, 15)
    assert appointment.client_email == "ana@example.com"

    assert len(emitted) == 1
    event_type, payload = emitted[0]
    assert event_type == "appointment_requested"
    assert payload["appointment_id"] == result.appointment_id
    assert payload["event_id"] == appointment.creation_event_id


def test_second_booking_of_the_same_slot_is_rejected(coordinator, session_factory, company) -> None:
    coordinator.create_appointment(**booking_kwargs())

    with pytest.raises(SlotTaken) as exc_info:
        coordinator.create_appointment(**booking_kwargs(client_name="Otro"))

    assert exc_info.value.code == "ALREADY_EXISTS"
    assert exc_info.value.message == "SLOT_TAKEN"
    assert _count(session_factory, Appointments) == 1


def test_seconds_are_ignored_in_the_lock_key(coordinator, company) -> None:
    coordinator.create_appointment(**booking_kwargs())

    with pytest.raises(SlotTaken):
        coordinator.create_appointment(**booking_kwargs(start_at=utc(2026, 3, 2, 13, 0, 45)))


def test_other_professional_same_minute_is_free(coordinator, company) -> None:
    coordinator.create_appointment(**booking_kwargs())

    result = coordinator.create_appointment(**booking_kwargs(professional_id="p2"))

    assert result.lock_id == "c1_p2_202603021300"


def test_booking_in_the_past_is_rejected(coordinator, session_factory, company) -> None:
    with pytest.raises(FailedPrecondition) as exc_info:
        coordinator.create_appointment(**booking_kwargs(start_at=NOW - timedelta(minutes=6)))

    assert exc_info.value.reason == "SLOT_IN_PAST"
    assert _count(session_factory, SlotLocks) == 0


def test_small_clock_skew_is_tolerated(coordinator, company) -> None:
    result = coordinator.create_appointment(**booking_kwargs(start_at=NOW - timedelta(minutes=4)))

    assert result.appointment_id


def test_blocked_slot_writes_nothing(coordinator, session_factory, company, add_exception) -> None:
    add_exception({"from": "2026-03-02T00:00:00Z", "to": "2026-03-03T00:00:00Z"}, exception_type="BLOCK")

    with pytest.raises(FailedPrecondition) as exc_info:
        coordinator.create_appointment(**booking_kwargs())

    assert exc_info.value.reason == "SLOT_BLOCKED"
    assert _count(session_factory, SlotLocks) == 0
    assert _count(session_factory, Appointments) == 0


def test_out_of_schedule(coordinator, company, add_template) -> None:
    add_template(WEEKDAY_RULES)

    with pytest.raises(FailedPrecondition) as exc_info:
        coordinator.create_appointment(**booking_kwargs(start_at=utc(2026, 3, 2, 16, 30)))

    assert exc_info.value.reason == "OUT_OF_SCHEDULE"


def test_dashboard_caller_may_confirm(coordinator, session_factory, company, emitted) -> None:
    result = coordinator.create_appointment(**booking_kwargs(requested_status="CONFIRMED", caller=DASHBOARD_USER))

    appointment = _appointment(session_factory, result.appointment_id)
    assert appointment.status == "CONFIRMED"
    assert appointment.source == "DASHBOARD"
    assert emitted == []


def test_public_caller_cannot_confirm(coordinator, session_factory, company) -> None:
    result = coordinator.create_appointment(**booking_kwargs(requested_status="CONFIRMED"))

    assert _appointment(session_factory, result.appointment_id).status == "REQUESTED"


def test_out_of_range_slot_minutes_fall_back_to_default(coordinator, session_factory, company) -> None:
    result = coordinator.create_appointment(**booking_kwargs(slot_minutes=500))

    assert _lock(session_factory, result.lock_id).expires_at == utc(2026, 3, 2, 13, 15)


def test_explicit_end_is_kept_and_lock_uses_slot_minutes(coordinator, session_factory, company) -> None:
    result = coordinator.create_appointment(
        **booking_kwargs(end_at=utc(2026, 3, 2, 14, 0), slot_minutes=30)
    )

    assert _appointment(session_factory, result.appointment_id).end_at == utc(2026, 3, 2, 14, 0)
    assert _lock(session_factory, result.lock_id).expires_at == utc(2026, 3, 2, 13, 30)


def test_end_not_after_start_is_invalid(coordinator, company) -> None:
    with pytest.raises(InvalidArgument):
        coordinator.create_appointment(**booking_kwargs(end_at=utc(2026, 3, 2, 13, 0)))


def test_emit_failure_does_not_undo_the_booking(session_factory, company) -> None:
    def broken_emit(event_type, payload):
        raise ConnectionError("redis down")

    coordinator = BookingCoordinator(session_factory, emit=broken_emit, clock=lambda: NOW)

    result = coordinator.create_appointment(**booking_kwargs())

    assert _appointment(session_factory, result.appointment_id) is not None


def test_commit_conflict_is_reported_as_slot_taken(coordinator, session_factory, company, monkeypatch) -> None:
    first = coordinator.create_appointment(**booking_kwargs())
    # Simulate a concurrent writer the pre-read did not see
    monkeypatch.setattr(SlotLockStore, "get", lambda self, key: None)

    with pytest.raises(SlotTaken) as exc_info:
        coordinator.create_appointment(**booking_kwargs(client_name="Rival"))

    assert exc_info.value.lock_id == first.lock_id
    assert _count(session_factory, Appointments) == 1


def test_revalidation_inside_the_transaction(session_factory, company, add_template) -> None:
    add_template(WEEKDAY_RULES)
    coordinator = BookingCoordinator(
        session_factory,
        config=BookingConfig(revalidate_in_transaction=True),
        clock=lambda: NOW,
    )

    result = coordinator.create_appointment(**booking_kwargs())

    assert _lock(session_factory, result.lock_id) is not None


# ── Cancel ───────────────────────────────────────────────────────────────


def test_cancel_releases_the_lock(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    result = coordinator.cancel_appointment(booked.appointment_id, "c1")

    assert result.lock_released is True
    assert _lock(session_factory, booked.lock_id) is None
    appointment = _appointment(session_factory, booked.appointment_id)
    assert appointment.status == "CANCELLED"
    assert appointment.cancelled_at == NOW


def test_cancel_is_idempotent(coordinator, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())
    coordinator.cancel_appointment(booked.appointment_id, "c1")

    again = coordinator.cancel_appointment(booked.appointment_id, "c1")

    assert again.lock_released is False


def test_cancelled_slot_can_be_booked_again(coordinator, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())
    coordinator.cancel_appointment(booked.appointment_id, "c1")

    rebooked = coordinator.create_appointment(**booking_kwargs(client_name="Beto"))

    assert rebooked.lock_id == booked.lock_id


def test_repeated_cancel_keeps_the_new_owners_lock(coordinator, session_factory, company) -> None:
    first = coordinator.create_appointment(**booking_kwargs())
    coordinator.cancel_appointment(first.appointment_id, "c1")
    second = coordinator.create_appointment(**booking_kwargs(client_name="Beto"))

    coordinator.cancel_appointment(first.appointment_id, "c1")

    assert _lock(session_factory, second.lock_id).appointment_id == second.appointment_id


def test_cancel_unknown_appointment(coordinator, company) -> None:
    with pytest.raises(NotFound):
        coordinator.cancel_appointment("missing", "c1")


def test_cancel_other_tenant(coordinator, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    with pytest.raises(PermissionDenied):
        coordinator.cancel_appointment(booked.appointment_id, "c2")


# ── Reschedule ───────────────────────────────────────────────────────────


def test_reschedule_moves_the_lock(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    result = coordinator.reschedule_appointment(booked.appointment_id, "c1", start_at=utc(2026, 3, 2, 17, 0))

    assert result.lock_id == "c1_p1_202603021700"
    assert result.reactivated is False
    assert _lock(session_factory, booked.lock_id) is None
    assert _lock(session_factory, result.lock_id).appointment_id == booked.appointment_id

    appointment = _appointment(session_factory, booked.appointment_id)
    assert appointment.start_at == utc(2026, 3, 2, 17, 0)
    assert appointment.end_at == utc(2026, 3, 2, 17, 15)
    assert appointment.rescheduled_at == NOW


def test_reschedule_to_taken_slot_changes_nothing(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())
    other = coordinator.create_appointment(**booking_kwargs(start_at=utc(2026, 3, 2, 17, 0)))

    with pytest.raises(SlotTaken):
        coordinator.reschedule_appointment(booked.appointment_id, "c1", start_at=utc(2026, 3, 2, 17, 0))

    assert _lock(session_factory, booked.lock_id).appointment_id == booked.appointment_id
    assert _lock(session_factory, other.lock_id).appointment_id == other.appointment_id
    assert _appointment(session_factory, booked.appointment_id).start_at == utc(2026, 3, 2, 13, 0)


def test_reschedule_to_blocked_slot_changes_nothing(coordinator, session_factory, company, add_exception) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())
    add_exception({"from": "2026-03-02T17:00:00Z", "to": "2026-03-02T18:00:00Z"}, exception_type="BLOCK")

    with pytest.raises(FailedPrecondition):
        coordinator.reschedule_appointment(booked.appointment_id, "c1", start_at=utc(2026, 3, 2, 17, 0))

    assert _lock(session_factory, booked.lock_id) is not None
    assert _lock(session_factory, "c1_p1_202603021700") is None


def test_reschedule_reactivates_a_cancelled_appointment(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())
    coordinator.cancel_appointment(booked.appointment_id, "c1")

    result = coordinator.reschedule_appointment(booked.appointment_id, "c1", start_at=utc(2026, 3, 2, 17, 0))

    assert result.reactivated is True
    assert _appointment(session_factory, booked.appointment_id).status == "CONFIRMED"
    assert _lock(session_factory, result.lock_id) is not None


def test_reschedule_same_minute_refreshes_own_lock(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    result = coordinator.reschedule_appointment(
        booked.appointment_id, "c1",
        start_at=utc(2026, 3, 2, 13, 0),
        end_at=utc(2026, 3, 2, 13, 45),
        slot_minutes=45,
    )

    assert result.lock_id == booked.lock_id
    assert _lock(session_factory, booked.lock_id).expires_at == utc(2026, 3, 2, 13, 45)
    assert _appointment(session_factory, booked.appointment_id).end_at == utc(2026, 3, 2, 13, 45)


def test_reschedule_to_other_professional(coordinator, session_factory, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    result = coordinator.reschedule_appointment(
        booked.appointment_id, "c1", start_at=utc(2026, 3, 2, 13, 0), professional_id="p2"
    )

    assert result.lock_id == "c1_p2_202603021300"
    assert _lock(session_factory, booked.lock_id) is None
    assert _appointment(session_factory, booked.appointment_id).professional_id == "p2"


def test_reschedule_other_tenant(coordinator, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    with pytest.raises(PermissionDenied):
        coordinator.reschedule_appointment(booked.appointment_id, "c2", start_at=utc(2026, 3, 2, 17, 0))


def test_reactivate_transition() -> None:
    assert reactivate("CANCELLED") == ("CONFIRMED", True)
    assert reactivate("REQUESTED") == ("REQUESTED", False)
    assert reactivate("CONFIRMED") == ("CONFIRMED", False)


# ── Read-only ────────────────────────────────────────────────────────────


def test_get_appointment_checks_tenant(coordinator, company) -> None:
    booked = coordinator.create_appointment(**booking_kwargs())

    assert coordinator.get_appointment(booked.appointment_id, "c1").client_name == "Ana Pérez"
    with pytest.raises(PermissionDenied):
        coordinator.get_appointment(booked.appointment_id, "c2")
    with pytest.raises(NotFound):
        coordinator.get_appointment("missing", "c1")


def test_check_availability_reports_reasons(coordinator, company, add_template) -> None:
    add_template(WEEKDAY_RULES)

    assert coordinator.check_availability("c1", "p1", utc(2026, 3, 2, 13, 0)).allowed is True
    assert coordinator.check_availability("c1", "p1", utc(2026, 3, 2, 16, 30)).reason == "OUT_OF_SCHEDULE"
    assert coordinator.check_availability("c1", "p1", NOW - timedelta(hours=1)).reason == "SLOT_IN_PAST"
