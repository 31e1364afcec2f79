"""
slotbooking/services/events.py

Event emitter: pushes side-effect events to a Redis list for the
notification consumer loop (slotbooking/notifications/consumer.py).

Queue:
- events:p2p: instant delivery (appointment notifications)

Emission happens after the booking transaction committed. A failed push is
logged and dropped: notifications are at-most-once.
"""

import json
import time
import logging
from functools import partial
from typing import Callable

from redis import Redis

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"

EventEmitter = Callable[[str, dict], None]


def emit_event(redis: Redis, event_type: str, payload: dict) -> None:
    """
    Emit a p2p event (instant delivery).

    Pushed to Redis list `events:p2p` for the consumer loop.
    """
    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis.rpush(P2P_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {P2P_QUEUE}")
    except Exception as e:
        logger.error(f"Failed to emit event {event_type}: {e}")


def redis_emitter(redis: Redis) -> EventEmitter:
    """Bind emit_event to a Redis client for injection into the coordinator."""
    return partial(emit_event, redis)
