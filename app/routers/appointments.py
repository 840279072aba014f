# app/routers/appointments.py
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session
from typing import Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..limiter import limiter, BOOKING_RATE
from ..services import appointment_service, subscription_service

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Appointments"],
    dependencies=[Depends(security.require_staff), Depends(subscription_service.require_module("appointments"))],
    responses={404: {"description": "Not found"}},
)

@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_RATE)
def create_new_appointment(
    request: Request,
    appointment: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Book an appointment. The doctor's time slot must be free.
    """
    try:
        return appointment_service.create_appointment(db, tenant_id, appointment, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        logger.warning(f"Booking refused for doctor {appointment.doctor_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/appointments", response_model=schemas.AppointmentListResponse)
def read_appointments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.AppointmentStatus] = None,
    type: Optional[models.AppointmentType] = None,
    on_date: Optional[date] = Query(None, alias="date"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    items, total = appointment_service.list_appointments(
        db, tenant_id, page=page, limit=limit, doctor_id=doctor_id, patient_id=patient_id,
        status=status, appointment_type=type, on_date=on_date, start_date=start_date, end_date=end_date,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}

@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(appointment_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return appointment_service.get_appointment(db, tenant_id, appointment_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
@limiter.limit(BOOKING_RATE)
def update_existing_appointment(
    request: Request,
    appointment_id: int,
    appointment_update: schemas.AppointmentUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return appointment_service.update_appointment(db, tenant_id, appointment_id, appointment_update, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.patch("/appointments/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def change_appointment_status(
    appointment_id: int,
    status_update: schemas.AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Move an appointment through its lifecycle. Moving it to in_queue puts the patient in the doctor's queue.
    """
    try:
        return appointment_service.change_status(
            db, tenant_id, appointment_id, status_update.status, current_user, reason=status_update.reason
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.post("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
def cancel_existing_appointment(
    appointment_id: int,
    cancellation: schemas.AppointmentCancel,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return appointment_service.cancel_appointment(db, tenant_id, appointment_id, current_user, reason=cancellation.reason)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        appointment_service.delete_appointment(db, tenant_id, appointment_id, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return
