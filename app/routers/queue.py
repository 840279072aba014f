# app/routers/queue.py
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..services import queue_service, subscription_service

router = APIRouter(
    prefix="/queue",
    tags=["Queue"],
    dependencies=[Depends(security.require_staff), Depends(subscription_service.require_module("queue"))],
    responses={404: {"description": "Not found"}},
)

@router.post("", response_model=schemas.QueueEntryResponse, status_code=status.HTTP_201_CREATED)
def add_to_queue(
    entry: schemas.QueueEntryCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Put a patient in a doctor's queue, either as a walk-in or for a booked appointment.
    """
    try:
        return queue_service.create_queue_entry(db, tenant_id, entry, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("", response_model=schemas.QueueListResponse)
def read_queue_entries(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.QueueStatus] = None,
    priority: Optional[models.QueuePriority] = None,
    type: Optional[models.QueueType] = None,
    appointment_id: Optional[int] = None,
    on_date: Optional[date] = Query(None, alias="date"),
    is_active: Optional[bool] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    items, total = queue_service.list_queue_entries(
        db, tenant_id, page=page, limit=limit, doctor_id=doctor_id, patient_id=patient_id, status=status,
        priority=priority, queue_type=type, appointment_id=appointment_id, on_date=on_date, is_active=is_active,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}

@router.get("/statistics", response_model=schemas.QueueStatistics)
def read_queue_statistics(
    doctor_id: Optional[int] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    return queue_service.get_queue_statistics(db, tenant_id, doctor_id=doctor_id)

@router.get("/doctor/{doctor_id}", response_model=List[schemas.QueueEntryResponse])
def read_doctor_queue(doctor_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    """
    The doctor's waiting line in calling order.
    """
    return queue_service.get_doctor_queue(db, tenant_id, doctor_id)

@router.post("/reorder", response_model=List[schemas.QueueEntryResponse])
def reorder_doctor_queue(
    reorder: schemas.QueueReorder,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return queue_service.reorder_queue(db, tenant_id, reorder.doctor_id, reorder.entry_ids, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/{entry_id}", response_model=schemas.QueueEntryResponse)
def read_queue_entry(entry_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return queue_service.get_queue_entry(db, tenant_id, entry_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/{entry_id}", response_model=schemas.QueueEntryResponse)
def update_existing_queue_entry(
    entry_id: int,
    entry_update: schemas.QueueEntryUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return queue_service.update_queue_entry(db, tenant_id, entry_id, entry_update, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.patch("/{entry_id}/status", response_model=schemas.QueueEntryResponse)
def change_queue_entry_status(
    entry_id: int,
    status_update: schemas.QueueStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return queue_service.change_queue_status(
            db, tenant_id, entry_id, status_update.status, current_user, notes=status_update.notes
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_from_queue(
    entry_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        queue_service.remove_queue_entry(db, tenant_id, entry_id, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return
