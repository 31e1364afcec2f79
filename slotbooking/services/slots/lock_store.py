"""
Slot lock storage.

Table: slot_locks, primary key = lock key (see keys.py).
A row means "held", no row means "free".

The store has no locking of its own. Every call runs on the Session of the
caller's transaction; atomicity and conflict detection come from there.
"""

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ...models.tables import LOCK_STATUS_HELD, SlotLocks

logger = logging.getLogger(__name__)


class SlotLockStore:
    """Session-bound accessor for slot lock rows."""

    def __init__(self, db: Session):
        self.db = db

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, key: str) -> SlotLocks | None:
        return self.db.get(SlotLocks, key)

    def list_expired(self, now: datetime, limit: int) -> list[str]:
        """Keys of locks whose expiry is strictly before now, oldest first."""
        return list(self.db.scalars(
            select(SlotLocks.id)
            .where(SlotLocks.expires_at < now)
            .order_by(SlotLocks.expires_at)
            .limit(limit)
        ).all())

    # ── Write ────────────────────────────────────────────────────────────

    def put(
        self,
        key: str,
        company_id: str,
        professional_id: str,
        start_at: datetime,
        expires_at: datetime,
        appointment_id: str | None = None,
    ) -> SlotLocks:
        """
        Stage a new lock row.

        A concurrent holder of the same key surfaces as IntegrityError at
        flush/commit time.
        """
        lock = SlotLocks(
            id=key,
            company_id=company_id,
            professional_id=professional_id,
            appointment_id=appointment_id,
            start_at=start_at,
            expires_at=expires_at,
            status=LOCK_STATUS_HELD,
        )
        self.db.add(lock)
        return lock

    def delete(self, key: str, appointment_id: str | None = None) -> bool:
        """
        Delete a lock if present.

        With appointment_id, a lock owned by a different appointment is left
        in place. Returns True when a row was removed; a missing lock is a no-op.
        """
        lock = self.get(key)
        if lock is None:
            return False

        if appointment_id and lock.appointment_id and lock.appointment_id != appointment_id:
            logger.warning(
                f"Lock {key} belongs to appointment={lock.appointment_id}, "
                f"not releasing it for appointment={appointment_id}"
            )
            return False

        self.db.delete(lock)
        return True

    # ── Batch ────────────────────────────────────────────────────────────

    def delete_expired(self, keys: list[str], now: datetime) -> int:
        """Delete the given keys in one statement, re-checking expiry."""
        if not keys:
            return 0

        result = self.db.execute(
            delete(SlotLocks)
            .where(SlotLocks.id.in_(keys), SlotLocks.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
