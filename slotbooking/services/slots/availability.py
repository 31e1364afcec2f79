"""
Availability resolution for a single candidate slot.

Decides ALLOW / SLOT_BLOCKED / OUT_OF_SCHEDULE for (company, professional,
[start_at, end_at)) by combining:
- Date-range exceptions (BLOCK / OVERRIDE), evaluated first
- The weekly rule template of the professional

Read-only. Malformed historical rows are skipped, never raised.

Weekly rules format (JSON, weekday 0 = Sunday .. 6 = Saturday):
    {"1": [{"start": "09:00", "end": "13:00"}, {"from": "14:00", "to": "18:00"}]}
A list of 7 day lists is accepted as well.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...models.tables import ExceptionType
from ..errors import InvalidArgument, UnavailableReason
from .config import BookingConfig, get_booking_config
from .keys import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class DateRange:
    """Canonical [start, end) interval of an exception, in UTC."""
    start: datetime
    end: datetime

    def contains(self, start_at: datetime, end_at: datetime) -> bool:
        return self.start <= start_at and end_at <= self.end


ALLOWED = AvailabilityDecision(allowed=True)


def resolve_availability(
    db: Session,
    company_id: str,
    professional_id: str,
    start_at: datetime,
    end_at: datetime,
    config: BookingConfig | None = None,
) -> AvailabilityDecision:
    """
    Decide whether [start_at, end_at) can be booked for the professional.

    Raises:
        InvalidArgument: the candidate interval itself is malformed.
    """
    config = config or get_booking_config()
    start_at, end_at = _validate_candidate(start_at, end_at)

    # Step 1: Company time zone
    tz = _company_timezone(db, company_id, config.default_timezone)
    weekday_index, minutes_of_day = local_slot_position(start_at, tz)

    # Step 2: Exceptions (BLOCK wins over OVERRIDE)
    has_override = False
    for exception_type, date_range in _get_exception_ranges(db, company_id, professional_id, config):
        if not date_range.contains(start_at, end_at):
            continue
        if exception_type == ExceptionType.BLOCK:
            return AvailabilityDecision(allowed=False, reason=UnavailableReason.SLOT_BLOCKED)
        if exception_type == ExceptionType.OVERRIDE:
            has_override = True

    if has_override:
        return ALLOWED

    # Step 3: Weekly rules (no template = unrestricted)
    weekly_rules = _get_weekly_rules(db, company_id, professional_id)
    if weekly_rules is None:
        return ALLOWED

    day_rules = day_intervals(weekly_rules, weekday_index)
    if not day_rules:
        return AvailabilityDecision(allowed=False, reason=UnavailableReason.OUT_OF_SCHEDULE)

    for start_min, end_min in day_rules:
        if start_min <= minutes_of_day < end_min:
            return ALLOWED

    return AvailabilityDecision(allowed=False, reason=UnavailableReason.OUT_OF_SCHEDULE)


# ── Time helpers ─────────────────────────────────────────────────────────


def local_slot_position(start_at: datetime, tz: ZoneInfo) -> tuple[int, int]:
    """
    Local (weekday_index, minutes_of_day) of start_at in tz.

    weekday_index: 0 = Sunday .. 6 = Saturday.
    """
    try:
        local = as_utc(start_at).astimezone(tz)
    except OverflowError:
        raise InvalidArgument("Invalid date for startAt")
    weekday_index = (local.weekday() + 1) % 7
    return weekday_index, local.hour * 60 + local.minute


def parse_hhmm(value) -> int | None:
    """Convert "HH:MM" (or "HH:MM:SS", seconds ignored) to minutes since midnight; None if unparseable."""
    if not isinstance(value, str) or ":" not in value:
        return None
    parts = value.strip().split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1])
    except ValueError:
        return None
    if not (0 <= hh <= 24 and 0 <= mm < 60):
        return None
    return hh * 60 + mm


def parse_instant(value) -> datetime | None:
    """
    Parse a stored timestamp: datetime, ISO-8601 string or epoch number.

    Epoch numbers above 1e11 are milliseconds. Naive values are UTC.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    if isinstance(value, dict) and "seconds" in value:
        # Exported document-store timestamps: {"seconds": ..., "nanoseconds": ...}
        return parse_instant(value.get("seconds"))
    return None


def _validate_candidate(start_at: datetime, end_at: datetime) -> tuple[datetime, datetime]:
    if not isinstance(start_at, datetime) or not isinstance(end_at, datetime):
        raise InvalidArgument("startAt and endAt must be timestamps")
    start_at = as_utc(start_at)
    end_at = as_utc(end_at)
    if end_at <= start_at:
        raise InvalidArgument("endAt must be after startAt")
    return start_at, end_at


# ── Normalization of stored rows ─────────────────────────────────────────


def normalize_exception_range(data: dict) -> DateRange | None:
    """
    Canonical range of an exception document.

    Supported field variants (first match wins):
    - dateRange.startAt / dateRange.endAt (or dateRange.start / dateRange.end)
    - from / to
    - startAt / endAt
    """
    if not isinstance(data, dict):
        return None

    date_range = data.get("dateRange")
    if not isinstance(date_range, dict):
        date_range = {}

    raw_start = (
        date_range.get("startAt")
        or date_range.get("start")
        or data.get("from")
        or data.get("startAt")
    )
    raw_end = (
        date_range.get("endAt")
        or date_range.get("end")
        or data.get("to")
        or data.get("endAt")
    )

    start = parse_instant(raw_start)
    end = parse_instant(raw_end)
    if start is None or end is None or end <= start:
        return None
    return DateRange(start=start, end=end)


def day_intervals(weekly_rules, weekday_index: int) -> list[tuple[int, int]]:
    """
    Parsed (start_min, end_min) intervals for a weekday.

    Each rule may use start/end or from/to. Unparseable rules are dropped.
    """
    if isinstance(weekly_rules, list):
        rules = weekly_rules[weekday_index] if weekday_index < len(weekly_rules) else None
    elif isinstance(weekly_rules, dict):
        rules = weekly_rules.get(str(weekday_index))
        if rules is None:
            rules = weekly_rules.get(weekday_index)
    else:
        rules = None

    if not isinstance(rules, list):
        return []

    intervals: list[tuple[int, int]] = []
    for rule in rules:
        if not isinstance(rule, dict):
            continue
        start_min = parse_hhmm(rule.get("start"))
        if start_min is None:
            start_min = parse_hhmm(rule.get("from"))
        end_min = parse_hhmm(rule.get("end"))
        if end_min is None:
            end_min = parse_hhmm(rule.get("to"))
        if start_min is None or end_min is None:
            continue
        intervals.append((start_min, end_min))
    return intervals


# ── Database helpers ─────────────────────────────────────────────────────


def _company_timezone(db: Session, company_id: str, fallback: str) -> ZoneInfo:
    """Company time zone, or the fallback when missing or unknown."""
    from ...models.tables import Companies

    company = db.get(Companies, company_id)
    name = (company.timezone if company else None) or fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r} for company={company_id}, using {fallback}")
        return ZoneInfo(fallback)


def _get_exception_ranges(
    db: Session,
    company_id: str,
    professional_id: str,
    config: BookingConfig,
) -> list[tuple[str, DateRange]]:
    """Exceptions of the professional as (TYPE, range), malformed rows skipped."""
    from ...models.tables import AvailabilityExceptions

    rows = db.scalars(
        select(AvailabilityExceptions)
        .where(
            AvailabilityExceptions.company_id == company_id,
            AvailabilityExceptions.professional_id == professional_id,
        )
        .order_by(AvailabilityExceptions.id)
        .limit(config.exception_fetch_limit)
    ).all()

    result = []
    for row in rows:
        try:
            data = json.loads(row.data) if row.data else {}
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Skipping availability exception {row.id}: invalid JSON")
            continue
        if not isinstance(data, dict):
            logger.warning(f"Skipping availability exception {row.id}: not an object")
            continue

        date_range = normalize_exception_range(data)
        if date_range is None:
            logger.warning(f"Skipping availability exception {row.id}: no usable range")
            continue

        exception_type = str(row.exception_type or data.get("type") or "").upper()
        result.append((exception_type, date_range))

    return result


def _get_weekly_rules(db: Session, company_id: str, professional_id: str):
    """Weekly rules of the professional's template, or None when there is no template."""
    from ...models.tables import AvailabilityTemplates

    template = db.scalars(
        select(AvailabilityTemplates)
        .where(
            AvailabilityTemplates.company_id == company_id,
            AvailabilityTemplates.professional_id == professional_id,
        )
        .order_by(AvailabilityTemplates.id)
        .limit(1)
    ).first()

    if template is None:
        return None

    try:
        rules = json.loads(template.weekly_rules) if template.weekly_rules else {}
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Availability template {template.id} has invalid JSON, treating as closed")
        rules = {}

    return rules if isinstance(rules, (dict, list)) else {}
