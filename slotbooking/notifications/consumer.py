"""
Redis event consumer loops for booking notifications.

- p2p_consumer_loop: takes events from events:p2p and dispatches them
- retry_consumer_loop: moves events:p2p:retry back into events:p2p

Every failed delivery attempt already released its dedupe claim (see
notifications.appointments), so a retried event is sent at most once even
when it runs again. Attempts are counted in the "_attempt" field of the event
and the last failure is kept in "_last_error" for the dead-letter queue.

Started as asyncio tasks in the app lifespan.
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from ..services.events import P2P_QUEUE
from . import NotificationContext, process_event
from .delivery import MailerNotConfigured

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_QUEUE = f"{P2P_QUEUE}:retry"
DEAD_QUEUE = f"{P2P_QUEUE}:dead"

OUTCOME_DONE = "done"
OUTCOME_RETRY = "retry"
OUTCOME_DEAD = "dead"


async def p2p_consumer_loop(redis_url: str, ctx: NotificationContext) -> None:
    """Block on events:p2p (BRPOP, 5s timeout) and process one event at a time."""
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info("p2p_consumer_loop started")

    try:
        while True:
            try:
                popped = await r.brpop(P2P_QUEUE, timeout=5)
                if popped is not None:
                    await process_raw_event(r, popped[1], ctx)
            except asyncio.CancelledError:
                logger.info("p2p_consumer_loop cancelled")
                raise
            except Exception:
                logger.exception("p2p_consumer_loop error, retrying in 2s")
                await asyncio.sleep(2)
    finally:
        await r.aclose()


async def process_raw_event(r: aioredis.Redis, raw: str, ctx: NotificationContext) -> str:
    """
    Decode and dispatch one queued event.

    Returns OUTCOME_DONE, OUTCOME_RETRY or OUTCOME_DEAD. Anything that is not
    a JSON object goes straight to the dead-letter queue, unchanged.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        logger.error(f"Undecodable event in {P2P_QUEUE}: {raw[:200]}")
        await r.rpush(DEAD_QUEUE, raw)
        return OUTCOME_DEAD

    try:
        await process_event(data, ctx)
    except Exception as exc:
        return await _route_failure(r, data, exc)
    return OUTCOME_DONE


async def _route_failure(r: aioredis.Redis, data: dict, exc: Exception) -> str:
    attempt = data.get("_attempt", 1)
    event_type = data.get("type")
    logger.exception(
        f"Failed to process event type={event_type} appointment={data.get('appointment_id')} "
        f"(attempt {attempt}/{MAX_RETRIES})"
    )
    data["_last_error"] = str(exc)[:500]

    # A missing mail provider does not recover between attempts
    if attempt < MAX_RETRIES and not isinstance(exc, MailerNotConfigured):
        data["_attempt"] = attempt + 1
        await r.rpush(RETRY_QUEUE, json.dumps(data))
        logger.info(f"Event re-queued to {RETRY_QUEUE} (attempt {attempt + 1})")
        return OUTCOME_RETRY

    await r.rpush(DEAD_QUEUE, json.dumps(data))
    logger.warning(f"Event moved to {DEAD_QUEUE}: type={event_type}")
    return OUTCOME_DEAD


async def retry_consumer_loop(redis_url: str, delay: float = 5.0) -> None:
    """Drain events:p2p:retry into events:p2p, sleeping `delay` seconds when it is empty."""
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info("retry_consumer_loop started")

    try:
        while True:
            try:
                raw = await r.lpop(RETRY_QUEUE)
                if not raw:
                    await asyncio.sleep(delay)
                    continue
                await r.rpush(P2P_QUEUE, raw)
                logger.info(f"Retry: moved event from {RETRY_QUEUE} to {P2P_QUEUE}")
            except asyncio.CancelledError:
                logger.info("retry_consumer_loop cancelled")
                raise
            except Exception:
                logger.exception("retry_consumer_loop error, retrying in 5s")
                await asyncio.sleep(5)
    finally:
        await r.aclose()
