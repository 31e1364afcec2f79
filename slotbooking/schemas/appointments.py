# slotbooking/schemas/appointments.py

import math
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _bounded(value, min_len: int, max_len: int, field: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    trimmed = value.strip()
    if not (min_len <= len(trimmed) <= max_len):
        raise ValueError(f"{field} must be {min_len}-{max_len} characters")
    return trimmed


def _optional_bounded(value, min_len: int, max_len: int) -> Optional[str]:
    """Optional free text: empty or out of bounds is dropped, not rejected."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or not (min_len <= len(trimmed) <= max_len):
        return None
    return trimmed


def _slot_minutes(value) -> Optional[int]:
    # Out-of-range or non-numeric durations fall back to the default downstream
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


class CreateAppointmentRequest(BaseModel):
    company_id: str = Field(validation_alias=AliasChoices("companyId", "company_id"))
    professional_id: str = Field(validation_alias=AliasChoices("professionalId", "professional_id"))
    service_id: str = Field(validation_alias=AliasChoices("serviceId", "service_id"))
    client_name: str = Field(validation_alias=AliasChoices("clientName", "client_name"))
    client_phone: str = Field(validation_alias=AliasChoices("clientPhone", "client_phone"))
    client_email: Optional[str] = Field(None, validation_alias=AliasChoices("clientEmail", "client_email"))
    notes: Optional[str] = None
    start_at: datetime = Field(validation_alias=AliasChoices("startAt", "start_at"))
    end_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("endAt", "end_at"))
    slot_minutes: Optional[int] = Field(None, validation_alias=AliasChoices("slotMinutes", "slot_minutes"))
    status: Optional[str] = None

    @field_validator("company_id", "professional_id", "service_id", mode="before")
    @classmethod
    def validate_id(cls, v, info):
        return _bounded(v, 1, 200, info.field_name)

    @field_validator("client_name", mode="before")
    @classmethod
    def validate_client_name(cls, v):
        return _bounded(v, 1, 140, "client_name")

    @field_validator("client_phone", mode="before")
    @classmethod
    def validate_client_phone(cls, v):
        return _bounded(v, 6, 30, "client_phone")

    @field_validator("client_email", mode="before")
    @classmethod
    def validate_client_email(cls, v):
        return _optional_bounded(v, 5, 254)

    @field_validator("notes", mode="before")
    @classmethod
    def validate_notes(cls, v):
        return _optional_bounded(v, 0, 500)

    @field_validator("slot_minutes", mode="before")
    @classmethod
    def validate_slot_minutes(cls, v):
        return _slot_minutes(v)


class CancelAppointmentRequest(BaseModel):
    company_id: str = Field(validation_alias=AliasChoices("companyId", "company_id"))

    @field_validator("company_id", mode="before")
    @classmethod
    def validate_company_id(cls, v):
        return _bounded(v, 1, 200, "company_id")


class RescheduleAppointmentRequest(BaseModel):
    company_id: str = Field(validation_alias=AliasChoices("companyId", "company_id"))
    professional_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("professionalId", "professional_id")
    )
    start_at: datetime = Field(validation_alias=AliasChoices("startAt", "start_at"))
    end_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("endAt", "end_at"))
    slot_minutes: Optional[int] = Field(None, validation_alias=AliasChoices("slotMinutes", "slot_minutes"))

    @field_validator("company_id", mode="before")
    @classmethod
    def validate_company_id(cls, v):
        return _bounded(v, 1, 200, "company_id")

    @field_validator("professional_id", mode="before")
    @classmethod
    def validate_professional_id(cls, v):
        return _optional_bounded(v, 1, 200)

    @field_validator("slot_minutes", mode="before")
    @classmethod
    def validate_slot_minutes(cls, v):
        return _slot_minutes(v)


# ── Responses ────────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: str = Field(alias="appointmentId")
    lock_id: str = Field(alias="lockId")


class CancelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: str = Field(alias="appointmentId")
    lock_released: bool = Field(alias="lockReleased")


class RescheduleResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: str = Field(alias="appointmentId")
    lock_id: str = Field(alias="lockId")
    reactivated: bool = False


class AppointmentRead(BaseModel):
    id: str
    company_id: str
    professional_id: str
    service_id: str
    client_name: str
    client_phone: str
    client_email: Optional[str] = None
    notes: Optional[str] = None
    start_at: datetime
    end_at: datetime
    status: str
    source: str
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None
    rescheduled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
