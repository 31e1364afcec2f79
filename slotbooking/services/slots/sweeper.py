"""
Expired slot lock sweeper.

Periodically deletes locks whose expires_at is strictly in the past, at most
sweep_batch_size per run, in one batched DELETE. This bounds the lifetime of
holds nobody released (abandoned public booking flows).

A lock past its expiry no longer protects anything, so the sweep needs no
coordination with booking traffic beyond the store's own transactions.

Runs as an asyncio task in the app lifespan.
Uses the synchronous session factory via asyncio.to_thread.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from ...database import write_session
from ...models.tables import utcnow
from .config import BookingConfig, get_booking_config
from .lock_store import SlotLockStore

logger = logging.getLogger(__name__)


def sweep_expired_locks(db: Session, now: datetime, batch_size: int) -> int:
    """Delete up to batch_size expired locks on db. Returns the count removed."""
    store = SlotLockStore(db)
    keys = store.list_expired(now, batch_size)
    if not keys:
        return 0
    return store.delete_expired(keys, now)


def run_lock_sweep(
    session_factory: sessionmaker,
    config: BookingConfig | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """One sweep in its own transaction (synchronous)."""
    config = config or get_booking_config()
    now = clock()

    with write_session(session_factory) as db:
        removed = sweep_expired_locks(db, now, config.sweep_batch_size)

    if removed:
        logger.info(f"lock sweep: removed {removed} expired locks")
    else:
        logger.debug("lock sweep: nothing to sweep")
    return removed


async def lock_sweeper_loop(
    session_factory: sessionmaker,
    config: BookingConfig | None = None,
) -> None:
    """Periodic loop deleting expired slot locks."""
    config = config or get_booking_config()
    logger.info("lock_sweeper_loop started")

    try:
        while True:
            try:
                await asyncio.to_thread(run_lock_sweep, session_factory, config)
            except asyncio.CancelledError:
                logger.info("lock_sweeper_loop cancelled")
                raise
            except Exception:
                logger.exception("lock_sweeper_loop error")

            await asyncio.sleep(config.sweep_interval_seconds)
    except asyncio.CancelledError:
        pass
