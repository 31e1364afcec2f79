"""
Slot reservation core.

Availability Resolver → Booking Transaction Coordinator → Slot Lock Store,
plus the Expiry Sweeper for locks past their protective window.
"""

from .config import BookingConfig, get_booking_config
from .keys import format_lock_key
from .availability import AvailabilityDecision, resolve_availability
from .lock_store import SlotLockStore
from .coordinator import BookingCoordinator, BookingResult, CancelResult, RescheduleResult
from .sweeper import run_lock_sweep, lock_sweeper_loop

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "format_lock_key",
    "AvailabilityDecision",
    "resolve_availability",
    "SlotLockStore",
    "BookingCoordinator",
    "BookingResult",
    "CancelResult",
    "RescheduleResult",
    "run_lock_sweep",
    "lock_sweeper_loop",
]
