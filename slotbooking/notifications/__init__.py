"""
Notification event dispatcher.

Events arrive from the Redis queue events:p2p (pushed by the booking core).
Consumer loops started in the app lifespan read the queue and call
process_event().
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class NotificationContext:
    """Collaborators shared by event handlers."""
    session_factory: sessionmaker
    mailer: "Mailer"
    email_from: str
    dashboard_url: str
    default_timezone: str = "America/Santiago"


EventHandler = Callable[[dict, NotificationContext], Awaitable[None]]

# Registry of event handlers
EVENT_HANDLERS: dict[str, EventHandler] = {}


def register_event(event_type: str):
    """Decorator to register an event handler."""
    def decorator(func: EventHandler):
        EVENT_HANDLERS[event_type] = func
        logger.debug(f"Registered event handler: {event_type}")
        return func
    return decorator


async def process_event(data: dict, context: NotificationContext) -> None:
    """
    Dispatch an event to its registered handler.

    Args:
        data: {"type": "event_type", ...payload}
    """
    event_type = data.get("type")

    if not event_type:
        logger.warning("Event without type field, skipping")
        return

    handler = EVENT_HANDLERS.get(event_type)

    if handler:
        logger.info(f"Processing event: {event_type}")
        await handler(data, context)
    else:
        logger.warning(f"No handler for event type: {event_type}")


# Import handlers to trigger registration via decorators
from .delivery import Mailer  # noqa: E402
from . import appointments  # noqa: E402, F401
