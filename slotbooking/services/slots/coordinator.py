"""
Booking transaction coordinator.

Create / cancel / reschedule of appointments with the slot lock as the
concurrency gate:

1. Availability Resolver (read-only, own session): fail fast, no transaction
2. One transaction: read lock → abort if held → write lock + appointment
3. Commit. A concurrent winner surfaces either at the pre-read or as a
   commit-time conflict; both become SlotTaken.

Usage:
    coordinator = BookingCoordinator(session_factory, emit=redis_emitter(redis))
    result = coordinator.create_appointment(
        company_id="c1",
        professional_id="p1",
        service_id="s1",
        client_name="Ana",
        client_phone="+56911111111",
        start_at=datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc),
    )
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ...auth import ANONYMOUS, Caller
from ...database import write_session
from ...models.tables import (
    Appointments,
    AppointmentSource,
    AppointmentStatus,
    new_id,
    utcnow,
)
from ..errors import (
    BookingError,
    FailedPrecondition,
    InternalError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    SlotTaken,
    UnavailableReason,
)
from ..events import EventEmitter
from .availability import AvailabilityDecision, resolve_availability
from .config import BookingConfig, get_booking_config
from .keys import as_utc, format_lock_key
from .lock_store import SlotLockStore

logger = logging.getLogger(__name__)

# SQLSTATE of serialization failure / deadlock: the store aborted on conflict
_CONFLICT_SQLSTATES = {"40001", "40P01"}


def _add_minutes(value: datetime, minutes: int) -> datetime:
    try:
        return value + timedelta(minutes=minutes)
    except OverflowError:
        raise InvalidArgument("Invalid date for startAt")


APPOINTMENT_REQUESTED = "appointment_requested"


@dataclass(frozen=True)
class BookingResult:
    appointment_id: str
    lock_id: str


@dataclass(frozen=True)
class CancelResult:
    appointment_id: str
    lock_released: bool


@dataclass(frozen=True)
class RescheduleResult:
    appointment_id: str
    lock_id: str
    reactivated: bool = False


def reactivate(status: str) -> tuple[str, bool]:
    """
    Status transition applied by a reschedule.

    CANCELLED → CONFIRMED (the appointment is taken back into the agenda);
    every other status is kept. Returns (new_status, reactivated).
    """
    if status == AppointmentStatus.CANCELLED:
        return AppointmentStatus.CONFIRMED, True
    return status, False


def is_commit_conflict(exc: SQLAlchemyError) -> bool:
    """True when the store rejected the write because another writer won."""
    if isinstance(exc, IntegrityError):
        return True
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        return sqlstate in _CONFLICT_SQLSTATES
    return False


class BookingCoordinator:
    """Orchestrates availability check, lock and appointment writes."""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: BookingConfig | None = None,
        emit: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config or get_booking_config()
        self.emit = emit
        self.clock = clock

    # ── Create ───────────────────────────────────────────────────────────

    def create_appointment(
        self,
        company_id: str,
        professional_id: str,
        service_id: str,
        client_name: str,
        client_phone: str,
        start_at: datetime,
        end_at: datetime | None = None,
        slot_minutes: int | None = None,
        client_email: str | None = None,
        notes: str | None = None,
        requested_status: str | None = None,
        caller: Caller = ANONYMOUS,
    ) -> BookingResult:
        slot_minutes = self.config.effective_slot_minutes(slot_minutes)
        start_at, end_at = self._interval(start_at, end_at, slot_minutes)

        if start_at < self.clock() - self.config.past_tolerance:
            raise FailedPrecondition(UnavailableReason.SLOT_IN_PAST)

        lock_id = format_lock_key(company_id, professional_id, start_at)
        self._ensure_available(company_id, professional_id, start_at, end_at)

        status = AppointmentStatus.REQUESTED
        if caller.authenticated and requested_status == AppointmentStatus.CONFIRMED:
            status = AppointmentStatus.CONFIRMED
        source = AppointmentSource.DASHBOARD if caller.authenticated else AppointmentSource.PUBLIC

        appointment_id = new_id()
        event_id = uuid4().hex
        now = self.clock()

        def _write(db: Session) -> None:
            store = SlotLockStore(db)
            if store.get(lock_id) is not None:
                raise SlotTaken(lock_id)

            if self.config.revalidate_in_transaction:
                self._ensure_available(company_id, professional_id, start_at, end_at, db=db)

            store.put(
                lock_id,
                company_id=company_id,
                professional_id=professional_id,
                start_at=start_at,
                expires_at=_add_minutes(start_at, slot_minutes),
                appointment_id=appointment_id,
            )
            db.add(Appointments(
                id=appointment_id,
                company_id=company_id,
                professional_id=professional_id,
                service_id=service_id,
                client_name=client_name,
                client_phone=client_phone,
                client_email=client_email or None,
                notes=notes or None,
                start_at=start_at,
                end_at=end_at,
                status=status,
                source=source,
                creation_event_id=event_id,
                created_at=now,
                updated_at=now,
            ))

        self._run_transaction(_write, lock_id)
        logger.info(
            f"Appointment created: id={appointment_id} lock={lock_id} "
            f"status={status} source={source}"
        )

        if status == AppointmentStatus.REQUESTED:
            self._emit(APPOINTMENT_REQUESTED, {
                "event_id": event_id,
                "appointment_id": appointment_id,
                "company_id": company_id,
                "professional_id": professional_id,
                "service_id": service_id,
                "client_name": client_name,
                "client_phone": client_phone,
                "client_email": client_email,
                "notes": notes,
                "start_at": start_at.isoformat(),
                "end_at": end_at.isoformat(),
            })

        return BookingResult(appointment_id=appointment_id, lock_id=lock_id)

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel_appointment(self, appointment_id: str, company_id: str) -> CancelResult:
        """
        Cancel an appointment and release its lock.

        Cancelling an already cancelled appointment succeeds without changes;
        a missing lock is not an error.
        """
        released = False

        def _write(db: Session) -> None:
            nonlocal released
            appointment = self._get_owned(db, appointment_id, company_id)
            lock_id = format_lock_key(company_id, appointment.professional_id, appointment.start_at)

            if appointment.status != AppointmentStatus.CANCELLED:
                now = self.clock()
                appointment.status = AppointmentStatus.CANCELLED
                appointment.cancelled_at = now
                appointment.updated_at = now

            released = SlotLockStore(db).delete(lock_id, appointment_id=appointment.id)

        self._run_transaction(_write)
        logger.info(f"Appointment cancelled: id={appointment_id} lock_released={released}")
        return CancelResult(appointment_id=appointment_id, lock_released=released)

    # ── Reschedule ───────────────────────────────────────────────────────

    def reschedule_appointment(
        self,
        appointment_id: str,
        company_id: str,
        start_at: datetime,
        end_at: datetime | None = None,
        professional_id: str | None = None,
        slot_minutes: int | None = None,
    ) -> RescheduleResult:
        """
        Move an appointment to a new slot, migrating its lock.

        A failed availability check or a taken slot leaves the appointment
        and its current lock untouched.
        """
        slot_minutes = self.config.effective_slot_minutes(slot_minutes)
        start_at, end_at = self._interval(start_at, end_at, slot_minutes)

        # Step 1: Tenant-checked read of the current appointment
        with self.session_factory() as db:
            current = self._get_owned(db, appointment_id, company_id)
            target_professional = professional_id or current.professional_id

        # Step 2: Availability of the new interval
        self._ensure_available(company_id, target_professional, start_at, end_at)

        new_lock_id = format_lock_key(company_id, target_professional, start_at)
        reactivated = False

        def _write(db: Session) -> None:
            nonlocal reactivated
            appointment = self._get_owned(db, appointment_id, company_id)
            old_lock_id = format_lock_key(company_id, appointment.professional_id, appointment.start_at)
            store = SlotLockStore(db)

            if self.config.revalidate_in_transaction:
                self._ensure_available(company_id, target_professional, start_at, end_at, db=db)

            existing = store.get(new_lock_id)
            expires_at = _add_minutes(start_at, slot_minutes)

            if existing is not None and existing.appointment_id == appointment.id:
                # Same minute and professional: refresh our own lock
                existing.start_at = start_at
                existing.expires_at = expires_at
            else:
                if existing is not None:
                    raise SlotTaken(new_lock_id)
                if old_lock_id != new_lock_id:
                    store.delete(old_lock_id, appointment_id=appointment.id)
                store.put(
                    new_lock_id,
                    company_id=company_id,
                    professional_id=target_professional,
                    start_at=start_at,
                    expires_at=expires_at,
                    appointment_id=appointment.id,
                )

            now = self.clock()
            appointment.status, reactivated = reactivate(appointment.status)
            appointment.professional_id = target_professional
            appointment.start_at = start_at
            appointment.end_at = end_at
            appointment.rescheduled_at = now
            appointment.updated_at = now

        self._run_transaction(_write, new_lock_id)

        if reactivated:
            logger.info(f"Appointment reactivated by reschedule: id={appointment_id}")
        logger.info(f"Appointment rescheduled: id={appointment_id} lock={new_lock_id}")
        return RescheduleResult(
            appointment_id=appointment_id,
            lock_id=new_lock_id,
            reactivated=reactivated,
        )

    # ── Read-only ────────────────────────────────────────────────────────

    def get_appointment(self, appointment_id: str, company_id: str) -> Appointments:
        with self.session_factory() as db:
            return self._get_owned(db, appointment_id, company_id)

    def check_availability(
        self,
        company_id: str,
        professional_id: str,
        start_at: datetime,
        end_at: datetime | None = None,
        slot_minutes: int | None = None,
    ) -> AvailabilityDecision:
        """Same checks as create, without locking or writing anything."""
        slot_minutes = self.config.effective_slot_minutes(slot_minutes)
        start_at, end_at = self._interval(start_at, end_at, slot_minutes)
        if start_at < self.clock() - self.config.past_tolerance:
            return AvailabilityDecision(allowed=False, reason=UnavailableReason.SLOT_IN_PAST)
        with self.session_factory() as db:
            return resolve_availability(db, company_id, professional_id, start_at, end_at, self.config)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _interval(
        self,
        start_at: datetime,
        end_at: datetime | None,
        slot_minutes: int,
    ) -> tuple[datetime, datetime]:
        if not isinstance(start_at, datetime):
            raise InvalidArgument("Invalid date for startAt")
        start_at = as_utc(start_at)
        end_at = as_utc(end_at) if end_at is not None else _add_minutes(start_at, slot_minutes)
        if end_at <= start_at:
            raise InvalidArgument("endAt must be after startAt")
        return start_at, end_at

    def _ensure_available(
        self,
        company_id: str,
        professional_id: str,
        start_at: datetime,
        end_at: datetime,
        db: Session | None = None,
    ) -> None:
        """Raise FailedPrecondition unless the resolver allows the interval."""
        if db is None:
            with self.session_factory() as read_db:
                decision = resolve_availability(
                    read_db, company_id, professional_id, start_at, end_at, self.config
                )
        else:
            decision = resolve_availability(
                db, company_id, professional_id, start_at, end_at, self.config
            )

        if not decision.allowed:
            logger.info(
                f"Slot rejected: company={company_id} professional={professional_id} "
                f"start={start_at.isoformat()} reason={decision.reason}"
            )
            raise FailedPrecondition(decision.reason or "SLOT_UNAVAILABLE")

    @staticmethod
    def _get_owned(db: Session, appointment_id: str, company_id: str) -> Appointments:
        appointment = db.get(Appointments, appointment_id)
        if appointment is None:
            raise NotFound("Appointment not found")
        if appointment.company_id != company_id:
            raise PermissionDenied()
        return appointment

    def _run_transaction(self, work: Callable[[Session], None], lock_id: str | None = None) -> None:
        """Run work in one transaction; normalize store failures."""
        try:
            with write_session(self.session_factory) as db:
                work(db)
        except BookingError:
            raise
        except SQLAlchemyError as e:
            if lock_id and is_commit_conflict(e):
                logger.info(f"Slot taken at commit: lock={lock_id}")
                raise SlotTaken(lock_id) from None
            logger.exception("Booking transaction failed")
            raise InternalError(str(e)) from e

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.emit is None:
            return
        try:
            self.emit(event_type, payload)
        except Exception:
            logger.exception(f"Failed to emit {event_type} for appointment={payload.get('appointment_id')}")
