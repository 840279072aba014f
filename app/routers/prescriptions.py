# app/routers/prescriptions.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..services import prescription_service, subscription_service

router = APIRouter(
    tags=["Prescriptions"],
    dependencies=[Depends(security.require_staff), Depends(subscription_service.require_module("prescriptions"))],
    responses={404: {"description": "Not found"}},
)

@router.post("/prescriptions", response_model=schemas.PrescriptionResponse, status_code=status.HTTP_201_CREATED)
def create_new_prescription(
    prescription: schemas.PrescriptionCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_prescriber),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Write a prescription. The patient's in-progress consultation in the queue is closed afterwards.
    """
    try:
        created = prescription_service.create_prescription(db, tenant_id, prescription, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return prescription_service.decrypt_prescription(created)

@router.get("/prescriptions", response_model=schemas.PrescriptionListResponse)
def read_prescriptions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    patient_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    status: Optional[models.PrescriptionStatus] = None,
    appointment_id: Optional[int] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    items, total = prescription_service.list_prescriptions(
        db, tenant_id, page=page, limit=limit, patient_id=patient_id,
        doctor_id=doctor_id, status=status, appointment_id=appointment_id,
    )
    return {
        "items": [prescription_service.decrypt_prescription(p) for p in items],
        "total": total, "page": page, "limit": limit,
    }

@router.get("/prescriptions/{prescription_id}", response_model=schemas.PrescriptionResponse)
def read_prescription(prescription_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return prescription_service.decrypt_prescription(
            prescription_service.get_prescription(db, tenant_id, prescription_id)
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/prescriptions/{prescription_id}", response_model=schemas.PrescriptionResponse)
def update_existing_prescription(
    prescription_id: int,
    prescription_update: schemas.PrescriptionUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_prescriber),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        updated = prescription_service.update_prescription(db, tenant_id, prescription_id, prescription_update, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return prescription_service.decrypt_prescription(updated)

@router.post("/prescriptions/{prescription_id}/activate", response_model=schemas.PrescriptionResponse)
def activate_existing_prescription(
    prescription_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_prescriber),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        activated = prescription_service.activate_prescription(db, tenant_id, prescription_id, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return prescription_service.decrypt_prescription(activated)

@router.post("/prescriptions/{prescription_id}/dispense", response_model=schemas.PrescriptionResponse)
def dispense_existing_prescription(
    prescription_id: int,
    dispense: schemas.PrescriptionDispense,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_dispenser),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        dispensed = prescription_service.dispense_prescription(
            db, tenant_id, prescription_id, current_user, pharmacy_notes=dispense.pharmacy_notes
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return prescription_service.decrypt_prescription(dispensed)

@router.post("/prescriptions/{prescription_id}/cancel", response_model=schemas.PrescriptionResponse)
def cancel_existing_prescription(
    prescription_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_prescriber),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        cancelled = prescription_service.cancel_prescription(db, tenant_id, prescription_id, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return prescription_service.decrypt_prescription(cancelled)

@router.delete("/prescriptions/{prescription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_prescription(
    prescription_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_prescriber),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        prescription_service.delete_prescription(db, tenant_id, prescription_id, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return
