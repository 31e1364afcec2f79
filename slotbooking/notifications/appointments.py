"""
Appointment event handlers.

appointment_requested → e-mail to the company's notification recipients.
"""

import asyncio
import logging
from dataclasses import dataclass

from ..models.tables import Companies, Professionals, Services
from . import NotificationContext, register_event
from .dedupe import (
    STATUS_SENT,
    STATUS_SKIPPED,
    claim_event,
    finish_event,
    release_claim,
)
from .delivery import EmailMessage
from .formatters import (
    AppointmentDetails,
    build_details,
    format_html,
    format_subject,
    format_text,
)
from .recipients import resolve_recipients, sanitize_email

logger = logging.getLogger(__name__)

SKIP_NOTIFICATIONS_DISABLED = "notifications_disabled"


@dataclass
class _Prepared:
    recipients: list[str]
    details: AppointmentDetails
    from_email: str | None


def _prepare(data: dict, ctx: NotificationContext) -> _Prepared:
    """Sync DB work: recipients and display names."""
    company_id = data.get("company_id")
    with ctx.session_factory() as db:
        company = db.get(Companies, company_id) if company_id else None
        recipients = resolve_recipients(db, company_id, company) if company_id else []

        service = db.get(Services, data["service_id"]) if data.get("service_id") else None
        professional = (
            db.get(Professionals, data["professional_id"]) if data.get("professional_id") else None
        )

        details = build_details(
            data,
            company_name=company.name if company else None,
            service_name=service.name if service else None,
            professional_name=professional.name if professional else None,
            timezone_name=company.timezone if company else None,
            default_timezone=ctx.default_timezone,
        )
        from_email = sanitize_email(company.notify_from_email) if company else None

    return _Prepared(recipients=recipients, details=details, from_email=from_email)


@register_event("appointment_requested")
async def handle_appointment_requested(data: dict, ctx: NotificationContext) -> None:
    """
    Notify the company about a new public appointment request.

    At most one e-mail per creation event id. Raising lets the consumer
    re-queue the event; the claim is released first so the retry is sent.
    """
    event_id = data.get("event_id")
    appointment_id = data.get("appointment_id")
    if not event_id or not appointment_id:
        logger.error(f"appointment_requested without event_id/appointment_id: {data}")
        return

    claimed = await asyncio.to_thread(claim_event, ctx.session_factory, event_id, appointment_id)
    if not claimed:
        logger.info(f"Duplicate appointment_requested event {event_id}, skipping")
        return

    try:
        prepared = await asyncio.to_thread(_prepare, data, ctx)

        if not prepared.recipients:
            logger.warning(
                f"Appointment request without e-mail recipients: "
                f"appointment={appointment_id} company={data.get('company_id')}"
            )
            await asyncio.to_thread(
                finish_event, ctx.session_factory, event_id,
                STATUS_SKIPPED, SKIP_NOTIFICATIONS_DISABLED,
            )
            return

        message = EmailMessage(
            to=prepared.recipients,
            from_email=prepared.from_email or ctx.email_from,
            subject=format_subject(prepared.details),
            text=format_text(prepared.details, ctx.dashboard_url),
            html=format_html(prepared.details, ctx.dashboard_url),
            categories=["appointment_requested"],
        )
        await ctx.mailer.send(message)
    except Exception:
        await asyncio.to_thread(release_claim, ctx.session_factory, event_id)
        raise

    await asyncio.to_thread(finish_event, ctx.session_factory, event_id, STATUS_SENT)
    logger.info(f"appointment_requested e-mail sent: appointment={appointment_id}")
