"""
Message formatting for appointment notification e-mails.

Spanish copy, dates rendered in the company timezone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..services.slots.availability import parse_instant

logger = logging.getLogger(__name__)

WEEKDAYS_ES = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]
MONTHS_ES = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

NOT_AVAILABLE = "N/D"


@dataclass
class AppointmentDetails:
    company_name: str
    client_name: str
    client_phone: str
    service_name: str
    professional_name: str
    date: str
    start_time: str
    end_time: str
    client_email: Optional[str] = None
    notes: Optional[str] = None


def _zone(name: str | None, fallback: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using {fallback}")
        return ZoneInfo(fallback)


def format_long_date(dt: datetime) -> str:
    """'lunes, 2 de marzo de 2026'"""
    return f"{WEEKDAYS_ES[dt.weekday()]}, {dt.day} de {MONTHS_ES[dt.month - 1]} de {dt.year}"


def build_details(
    data: dict,
    company_name: str | None = None,
    service_name: str | None = None,
    professional_name: str | None = None,
    timezone_name: str | None = None,
    default_timezone: str = "America/Santiago",
) -> AppointmentDetails:
    """Assemble display values from the event payload and looked-up names."""
    tz = _zone(timezone_name, default_timezone)
    start = parse_instant(data.get("start_at"))
    end = parse_instant(data.get("end_at"))

    if start is not None:
        local_start = start.astimezone(tz)
        date = format_long_date(local_start)
        start_time = local_start.strftime("%H:%M")
    else:
        date = start_time = NOT_AVAILABLE
    end_time = end.astimezone(tz).strftime("%H:%M") if end is not None else NOT_AVAILABLE

    return AppointmentDetails(
        company_name=company_name or data.get("company_id") or NOT_AVAILABLE,
        client_name=data.get("client_name") or NOT_AVAILABLE,
        client_phone=data.get("client_phone") or NOT_AVAILABLE,
        client_email=data.get("client_email") or None,
        service_name=service_name or data.get("service_id") or NOT_AVAILABLE,
        professional_name=professional_name or data.get("professional_id") or "Sin asignar",
        date=date,
        start_time=start_time,
        end_time=end_time,
        notes=data.get("notes") or None,
    )


def format_subject(details: AppointmentDetails) -> str:
    return f"Nueva cita solicitada - {details.company_name}"


def format_text(details: AppointmentDetails, dashboard_url: str) -> str:
    lines = [
        "Nueva solicitud de cita pendiente",
        "",
        f"Cliente: {details.client_name}",
        f"Teléfono: {details.client_phone}",
    ]
    if details.client_email:
        lines.append(f"Correo: {details.client_email}")
    lines += [
        f"Servicio: {details.service_name}",
        f"Profesional: {details.professional_name}",
        f"Fecha: {details.date}",
        f"Horario: {details.start_time} - {details.end_time}",
    ]
    if details.notes:
        lines.append(f"Notas: {details.notes}")
    lines += [
        "",
        "Revisa y gestiona esta cita en tu dashboard:",
        dashboard_url,
    ]
    return "\n".join(lines)


def format_html(details: AppointmentDetails, dashboard_url: str) -> str:
    rows = [
        ("Cliente", details.client_name),
        ("Teléfono", details.client_phone),
    ]
    if details.client_email:
        rows.append(("Correo", details.client_email))
    rows += [
        ("Servicio", details.service_name),
        ("Profesional", details.professional_name),
        ("Fecha", details.date),
        ("Horario", f"{details.start_time} - {details.end_time}"),
    ]
    if details.notes:
        rows.append(("Notas", details.notes))

    body = "\n".join(
        f"<tr><td><b>{escape(label)}</b></td><td>{escape(value)}</td></tr>"
        for label, value in rows
    )
    return (
        f"<h2>Nueva solicitud de cita pendiente</h2>\n"
        f"<p>{escape(details.company_name)}</p>\n"
        f"<table>\n{body}\n</table>\n"
        f'<p><a href="{escape(dashboard_url, quote=True)}">Revisa y gestiona esta cita en tu dashboard</a></p>'
    )
