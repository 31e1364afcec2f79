"""
Booking configuration for slot reservation.
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from ...config import settings


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the slot reservation core.

    Attributes:
        default_slot_minutes: Slot length when the caller sends none (or an out-of-range one)
        min_slot_minutes / max_slot_minutes: Accepted slot length bounds
        past_tolerance_minutes: Clock-skew allowance for start times in the past
        exception_fetch_limit: Max exceptions read per (company, professional)
        sweep_batch_size: Max expired locks removed per sweep
        sweep_interval_seconds: Pause between sweeps
        default_timezone: Zone used when the company has none configured
        revalidate_in_transaction: Re-run the resolver inside the booking transaction
    """
    default_slot_minutes: int = 15
    min_slot_minutes: int = 5
    max_slot_minutes: int = 240
    past_tolerance_minutes: int = 5
    exception_fetch_limit: int = 20
    sweep_batch_size: int = 100
    sweep_interval_seconds: int = 3600
    default_timezone: str = "America/Santiago"
    revalidate_in_transaction: bool = False

    def __post_init__(self):
        """Validate configuration."""
        if not 0 < self.min_slot_minutes <= self.default_slot_minutes <= self.max_slot_minutes:
            raise ValueError(
                "slot minutes must satisfy 0 < min <= default <= max, got "
                f"{self.min_slot_minutes}/{self.default_slot_minutes}/{self.max_slot_minutes}"
            )
        if self.sweep_batch_size <= 0:
            raise ValueError(f"sweep_batch_size must be positive, got {self.sweep_batch_size}")

    @property
    def past_tolerance(self) -> timedelta:
        return timedelta(minutes=self.past_tolerance_minutes)

    def effective_slot_minutes(self, value: int | float | None) -> int:
        """Slot length to use; out-of-range or missing values fall back to the default."""
        if value is None or isinstance(value, bool):
            return self.default_slot_minutes
        if not self.min_slot_minutes <= value <= self.max_slot_minutes:
            return self.default_slot_minutes
        return int(value)


@lru_cache
def get_booking_config() -> BookingConfig:
    """Get booking configuration (singleton)."""
    return BookingConfig(default_timezone=settings.default_timezone)
