"""
Recipient resolution for appointment notifications.

Sources, in order:
- notification_settings rows of the company with e-mail enabled (max 10)
- the legacy company-level address (companies.notify_to_email)
"""

import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.tables import Companies, NotificationSettings

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_SETTINGS = 10


def sanitize_email(value) -> str | None:
    """Trimmed, lower-cased address or None when it does not look like one."""
    if not isinstance(value, str):
        return None
    email = value.strip().lower()
    if not EMAIL_RE.match(email):
        return None
    return email


def resolve_recipients(db: Session, company_id: str, company: Companies | None = None) -> list[str]:
    """Distinct, sanitized e-mail recipients for a company."""
    recipients: list[str] = []

    rows = db.scalars(
        select(NotificationSettings)
        .where(
            NotificationSettings.company_id == company_id,
            NotificationSettings.email_notifications_enabled.is_(True),
        )
        .order_by(NotificationSettings.id)
        .limit(MAX_SETTINGS)
    ).all()

    for row in rows:
        email = sanitize_email(row.notification_email or row.user_email)
        if email and email not in recipients:
            recipients.append(email)

    if company is None:
        company = db.get(Companies, company_id)
    if company is not None and company.notify_email_enabled and company.notify_to_email:
        legacy = sanitize_email(company.notify_to_email)
        if legacy and legacy not in recipients:
            recipients.append(legacy)

    return recipients
