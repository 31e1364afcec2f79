"""
Per-event delivery log (appointment_email_logs).

claim_event() inserts the row keyed by the creation event id; a second
delivery of the same event finds the row and is dropped. A failed send
releases the claim so the retry queue can deliver it again.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..database import write_session
from ..models.tables import AppointmentEmailLogs, utcnow

logger = logging.getLogger(__name__)

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_SKIPPED = "skipped"


def claim_event(session_factory: sessionmaker, event_id: str, appointment_id: str) -> bool:
    """Returns False when the event was already handled (or is being handled)."""
    try:
        with write_session(session_factory) as db:
            if db.get(AppointmentEmailLogs, event_id) is not None:
                return False
            db.add(AppointmentEmailLogs(
                event_id=event_id,
                appointment_id=appointment_id,
                status=STATUS_SENDING,
            ))
    except IntegrityError:
        return False
    return True


def finish_event(
    session_factory: sessionmaker,
    event_id: str,
    status: str,
    reason: str | None = None,
) -> None:
    with write_session(session_factory) as db:
        row = db.get(AppointmentEmailLogs, event_id)
        if row is None:
            logger.warning(f"Delivery log missing for event {event_id}")
            return
        row.status = status
        row.reason = reason
        row.updated_at = utcnow()


def release_claim(session_factory: sessionmaker, event_id: str) -> None:
    with write_session(session_factory) as db:
        row = db.get(AppointmentEmailLogs, event_id)
        if row is not None and row.status == STATUS_SENDING:
            db.delete(row)
