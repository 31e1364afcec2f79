# slotbooking/routers/availability.py
# Rule-set administration = authenticated, /check = public read-only

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import Caller, get_caller, require_authenticated, resolve_company_id
from ..database import get_db
from ..models.tables import (
    AvailabilityExceptions as DBAvailabilityExceptions,
    AvailabilityTemplates as DBAvailabilityTemplates,
    utcnow,
)
from ..schemas.availability import (
    AvailabilityCheckResponse,
    AvailabilityExceptionCreate,
    AvailabilityExceptionRead,
    AvailabilityTemplatePut,
    AvailabilityTemplateRead,
)
from ..services.errors import NotFound, PermissionDenied
from ..services.slots.availability import normalize_exception_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["availability"])


def _admin_company(caller: Caller, company_id: Optional[str]) -> str:
    require_authenticated(caller)
    return resolve_company_id(caller, company_id)


def _template_query(company_id: str, professional_id: str):
    return (
        select(DBAvailabilityTemplates)
        .where(
            DBAvailabilityTemplates.company_id == company_id,
            DBAvailabilityTemplates.professional_id == professional_id,
        )
        .order_by(DBAvailabilityTemplates.id)
        .limit(1)
    )


def _template_read(obj: DBAvailabilityTemplates) -> AvailabilityTemplateRead:
    try:
        rules = json.loads(obj.weekly_rules) if obj.weekly_rules else {}
    except json.JSONDecodeError:
        rules = {}
    return AvailabilityTemplateRead(
        company_id=obj.company_id,
        professional_id=obj.professional_id,
        weekly_rules=rules if isinstance(rules, dict) else {},
        updated_at=obj.updated_at,
    )


def _exception_read(obj: DBAvailabilityExceptions) -> AvailabilityExceptionRead:
    try:
        data = json.loads(obj.data) if obj.data else {}
    except json.JSONDecodeError:
        data = {}
    date_range = normalize_exception_range(data) if isinstance(data, dict) else None
    return AvailabilityExceptionRead(
        id=obj.id,
        company_id=obj.company_id,
        professional_id=obj.professional_id,
        type=obj.exception_type,
        start_at=date_range.start if date_range else None,
        end_at=date_range.end if date_range else None,
        reason=obj.reason,
        created_at=obj.created_at,
    )


# ── Weekly template ──────────────────────────────────────────────────────


@router.put("/templates/{professional_id}", response_model=AvailabilityTemplateRead)
def put_template(
    professional_id: str,
    data: AvailabilityTemplatePut,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    company_id = _admin_company(caller, company_id)
    rules = {
        day: [interval.model_dump() for interval in intervals]
        for day, intervals in sorted(data.weekly_rules.items())
    }

    obj = db.scalars(_template_query(company_id, professional_id)).first()
    now = utcnow()
    if obj is None:
        obj = DBAvailabilityTemplates(
            company_id=company_id,
            professional_id=professional_id,
            created_at=now,
        )
        db.add(obj)
    obj.weekly_rules = json.dumps(rules)
    obj.updated_at = now
    db.commit()
    db.refresh(obj)

    logger.info(f"Availability template saved: company={company_id} professional={professional_id}")
    return _template_read(obj)


@router.get("/templates/{professional_id}", response_model=AvailabilityTemplateRead)
def get_template(
    professional_id: str,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    company_id = _admin_company(caller, company_id)
    obj = db.scalars(_template_query(company_id, professional_id)).first()
    if obj is None:
        raise NotFound("Availability template not found")
    return _template_read(obj)


# ── Exceptions ───────────────────────────────────────────────────────────


@router.post(
    "/exceptions/{professional_id}",
    response_model=AvailabilityExceptionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_exception(
    professional_id: str,
    data: AvailabilityExceptionCreate,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    company_id = _admin_company(caller, company_id)
    obj = DBAvailabilityExceptions(
        company_id=company_id,
        professional_id=professional_id,
        exception_type=data.type,
        data=json.dumps({
            "type": data.type,
            "dateRange": {
                "startAt": data.start_at.isoformat(),
                "endAt": data.end_at.isoformat(),
            },
        }),
        reason=data.reason,
        created_at=utcnow(),
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)

    logger.info(
        f"Availability exception created: id={obj.id} type={data.type} "
        f"company={company_id} professional={professional_id}"
    )
    return _exception_read(obj)


@router.get("/exceptions/{professional_id}", response_model=list[AvailabilityExceptionRead])
def list_exceptions(
    professional_id: str,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    company_id = _admin_company(caller, company_id)
    rows = db.scalars(
        select(DBAvailabilityExceptions)
        .where(
            DBAvailabilityExceptions.company_id == company_id,
            DBAvailabilityExceptions.professional_id == professional_id,
        )
        .order_by(DBAvailabilityExceptions.id)
    ).all()
    return [_exception_read(row) for row in rows]


@router.delete("/exceptions/{professional_id}/{exception_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_exception(
    professional_id: str,
    exception_id: int,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    company_id = _admin_company(caller, company_id)
    obj = db.get(DBAvailabilityExceptions, exception_id)
    if obj is None or obj.professional_id != professional_id:
        raise NotFound("Availability exception not found")
    if obj.company_id != company_id:
        raise PermissionDenied()
    db.delete(obj)
    db.commit()
    logger.info(f"Availability exception deleted: id={exception_id}")


# ── Check ────────────────────────────────────────────────────────────────


@router.get("/check", response_model=AvailabilityCheckResponse)
def check_availability(
    request: Request,
    company_id: str = Query(..., alias="companyId", min_length=1, max_length=200),
    professional_id: str = Query(..., alias="professionalId", min_length=1, max_length=200),
    start_at: datetime = Query(..., alias="startAt"),
    end_at: Optional[datetime] = Query(None, alias="endAt"),
    slot_minutes: Optional[int] = Query(None, alias="slotMinutes"),
):
    decision = request.app.state.coordinator.check_availability(
        company_id, professional_id, start_at, end_at, slot_minutes
    )
    return AvailabilityCheckResponse(allowed=decision.allowed, reason=decision.reason)
