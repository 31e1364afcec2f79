from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()
metadata = Base.metadata


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in Python, naive UTC in the database."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AppointmentStatus:
    REQUESTED = "REQUESTED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class AppointmentSource:
    PUBLIC = "PUBLIC"
    DASHBOARD = "DASHBOARD"


class ExceptionType:
    BLOCK = "BLOCK"
    OVERRIDE = "OVERRIDE"


LOCK_STATUS_HELD = "HELD"


class Companies(Base):
    __tablename__ = 'companies'

    id = Column(String(200), primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    timezone = Column(Text)
    # Legacy company-level notification address
    notify_email_enabled = Column(Boolean, nullable=False, default=False, server_default=text('false'))
    notify_to_email = Column(Text)
    notify_from_email = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Professionals(Base):
    __tablename__ = 'professionals'

    id = Column(String(200), primary_key=True, default=new_id)
    company_id = Column(String(200), nullable=False, index=True)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'ACTIVE'"))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Services(Base):
    __tablename__ = 'services'

    id = Column(String(200), primary_key=True, default=new_id)
    company_id = Column(String(200), nullable=False, index=True)
    name = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Appointments(Base):
    __tablename__ = 'appointments'

    id = Column(String(64), primary_key=True, default=new_id)
    company_id = Column(String(200), nullable=False, index=True)
    professional_id = Column(String(200), nullable=False)
    service_id = Column(String(200), nullable=False)
    client_name = Column(Text, nullable=False)
    client_phone = Column(Text, nullable=False)
    client_email = Column(Text)
    notes = Column(Text)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'REQUESTED'"))
    source = Column(Text, nullable=False, server_default=text("'PUBLIC'"))
    creation_event_id = Column(String(64))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    cancelled_at = Column(UTCDateTime)
    rescheduled_at = Column(UTCDateTime)


class SlotLocks(Base):
    """Presence of a row means the slot is held; the primary key is the gate."""

    __tablename__ = 'slot_locks'
    __table_args__ = (
        Index('ix_slot_locks_expires_at', 'expires_at'),
    )

    id = Column(String(450), primary_key=True)
    company_id = Column(String(200), nullable=False)
    professional_id = Column(String(200), nullable=False)
    appointment_id = Column(String(64))
    start_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'HELD'"))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class AvailabilityTemplates(Base):
    __tablename__ = 'availability_templates'
    __table_args__ = (
        Index('ix_availability_templates_owner', 'company_id', 'professional_id'),
    )

    id = Column(Integer, primary_key=True)
    company_id = Column(String(200), nullable=False)
    professional_id = Column(String(200), nullable=False)
    # JSON: {"1": [{"start": "09:00", "end": "17:00"}], ...}, 0 = Sunday
    weekly_rules = Column(Text, nullable=False, server_default=text("'{}'"))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)


class AvailabilityExceptions(Base):
    __tablename__ = 'availability_exceptions'
    __table_args__ = (
        Index('ix_availability_exceptions_owner', 'company_id', 'professional_id'),
    )

    id = Column(Integer, primary_key=True)
    company_id = Column(String(200), nullable=False)
    professional_id = Column(String(200), nullable=False)
    exception_type = Column(Text)
    # JSON document; the range lives under dateRange.startAt/endAt, from/to or startAt/endAt
    data = Column(Text, nullable=False, server_default=text("'{}'"))
    reason = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class NotificationSettings(Base):
    __tablename__ = 'notification_settings'

    id = Column(Integer, primary_key=True)
    company_id = Column(String(200), nullable=False, index=True)
    user_email = Column(Text)
    notification_email = Column(Text)
    email_notifications_enabled = Column(Boolean, nullable=False, default=True, server_default=text('true'))


class AppointmentEmailLogs(Base):
    """One row per creation event id; its presence means the event was handled."""

    __tablename__ = 'appointment_email_logs'

    event_id = Column(String(64), primary_key=True)
    appointment_id = Column(String(64))
    status = Column(Text, nullable=False)  # sending / sent / skipped
    reason = Column(Text)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
