# slotbooking/schemas/availability.py

import re
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from ..models.tables import ExceptionType
from ..services.slots.keys import as_utc

HHMM_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")
WEEKDAYS = {str(i) for i in range(7)}  # 0 = Sunday


class TimeInterval(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v):
        if not HHMM_RE.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v

    @model_validator(mode="after")
    def validate_order(self):
        if self.end <= self.start:
            raise ValueError("Interval end must be after start")
        return self


class AvailabilityTemplatePut(BaseModel):
    weekly_rules: dict[str, list[TimeInterval]] = Field(
        validation_alias=AliasChoices("weeklyRules", "weekly_rules")
    )

    @field_validator("weekly_rules")
    @classmethod
    def validate_days(cls, v):
        unknown = set(v) - WEEKDAYS
        if unknown:
            raise ValueError(f"Unknown weekday keys: {sorted(unknown)} (expected 0-6, 0 = Sunday)")
        if not any(v.values()):
            raise ValueError("At least one day must have an interval")
        return v


class AvailabilityTemplateRead(BaseModel):
    company_id: str
    professional_id: str
    weekly_rules: dict
    updated_at: datetime


class AvailabilityExceptionCreate(BaseModel):
    type: str
    start_at: datetime = Field(validation_alias=AliasChoices("startAt", "start_at", "from"))
    end_at: datetime = Field(validation_alias=AliasChoices("endAt", "end_at", "to"))
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, v):
        value = str(v or "").strip().upper()
        if value not in (ExceptionType.BLOCK, ExceptionType.OVERRIDE):
            raise ValueError("type must be BLOCK or OVERRIDE")
        return value

    @model_validator(mode="after")
    def validate_range(self):
        self.start_at = as_utc(self.start_at)
        self.end_at = as_utc(self.end_at)
        if self.end_at <= self.start_at:
            raise ValueError("endAt must be after startAt")
        return self


class AvailabilityExceptionRead(BaseModel):
    id: int
    company_id: str
    professional_id: str
    type: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    reason: Optional[str] = None
    created_at: datetime


class AvailabilityCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
