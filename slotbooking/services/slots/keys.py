"""
Slot lock keys.

Key format: {company_id}_{professional_id}_{YYYYMMDDHHmm}
The digits are the UTC wall clock of the start, truncated to the minute, so
create and reschedule derive the same key for the same minute.
"""

from datetime import datetime, timezone


def round_to_minute(dt: datetime) -> datetime:
    """Drop seconds and microseconds (UTC)."""
    return as_utc(dt).replace(second=0, microsecond=0)


def as_utc(dt: datetime) -> datetime:
    """Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_lock_key(company_id: str, professional_id: str, start_at: datetime) -> str:
    start = round_to_minute(start_at)
    return f"{company_id}_{professional_id}_{start.strftime('%Y%m%d%H%M')}"
