# slotbooking/routers/appointments.py
# POST = public (rate limited), cancel/reschedule/read = authenticated

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from ..auth import Caller, check_company_claim, get_caller, require_authenticated, resolve_company_id
from ..schemas.appointments import (
    AppointmentRead,
    BookingResponse,
    CancelAppointmentRequest,
    CancelResponse,
    CreateAppointmentRequest,
    RescheduleAppointmentRequest,
    RescheduleResponse,
)
from ..services.slots import BookingCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["appointments"])


def get_coordinator(request: Request) -> BookingCoordinator:
    return request.app.state.coordinator


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    company_id = check_company_claim(caller, data.company_id)
    request.app.state.rate_limiter.check("create_appointment", caller.limiter_key)

    result = coordinator.create_appointment(
        company_id=company_id,
        professional_id=data.professional_id,
        service_id=data.service_id,
        client_name=data.client_name,
        client_phone=data.client_phone,
        client_email=data.client_email,
        notes=data.notes,
        start_at=data.start_at,
        end_at=data.end_at,
        slot_minutes=data.slot_minutes,
        requested_status=data.status,
        caller=caller,
    )
    return BookingResponse(appointment_id=result.appointment_id, lock_id=result.lock_id)


@router.get("/{appointment_id}", response_model=AppointmentRead)
def get_appointment(
    appointment_id: str,
    company_id: Optional[str] = Query(None, alias="companyId"),
    caller: Caller = Depends(get_caller),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    require_authenticated(caller)
    company_id = resolve_company_id(caller, company_id)
    return coordinator.get_appointment(appointment_id, company_id)


@router.post("/{appointment_id}/cancel", response_model=CancelResponse)
def cancel_appointment(
    appointment_id: str,
    data: CancelAppointmentRequest,
    caller: Caller = Depends(get_caller),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    require_authenticated(caller)
    company_id = check_company_claim(caller, data.company_id)

    result = coordinator.cancel_appointment(appointment_id, company_id)
    return CancelResponse(appointment_id=result.appointment_id, lock_released=result.lock_released)


@router.post("/{appointment_id}/reschedule", response_model=RescheduleResponse)
def reschedule_appointment(
    appointment_id: str,
    data: RescheduleAppointmentRequest,
    caller: Caller = Depends(get_caller),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    require_authenticated(caller)
    company_id = check_company_claim(caller, data.company_id)

    result = coordinator.reschedule_appointment(
        appointment_id,
        company_id,
        start_at=data.start_at,
        end_at=data.end_at,
        professional_id=data.professional_id,
        slot_minutes=data.slot_minutes,
    )
    return RescheduleResponse(
        appointment_id=result.appointment_id,
        lock_id=result.lock_id,
        reactivated=result.reactivated,
    )
