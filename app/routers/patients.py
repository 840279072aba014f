# app/routers/patients.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import subscription_service

router = APIRouter(
    tags=["Patients"],
    dependencies=[Depends(security.require_staff), Depends(subscription_service.require_module("patients"))],
    responses={404: {"description": "Not found"}},
)

@router.post("/patients", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_new_patient(
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Create a new patient record. Contact details and history are encrypted at rest.
    """
    try:
        subscription_service.enforce_patient_limit(db, tenant_id)
        new_patient = crud.create_patient(db, tenant_id, patient, created_by=current_user.id)
    except crud.LimitExceededError as e:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_user, "PATIENT_CREATE", "PATIENT", "patient", new_patient.id,
                                     details=f"Created patient {new_patient.patient_code}")
    return crud.decrypt_patient(new_patient)

@router.get("/patients", response_model=schemas.PatientListResponse)
def read_all_patients(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    gender: Optional[models.Gender] = None,
    blood_group: Optional[str] = None,
    is_active: Optional[bool] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    """
    Retrieve patients, newest first, with decrypted contact details.
    """
    patients, total = crud.get_patients(
        db, tenant_id, page=page, limit=limit, search=search,
        gender=gender, blood_group=blood_group, is_active=is_active,
    )
    return {"items": [crud.decrypt_patient(p) for p in patients], "total": total, "page": page, "limit": limit}

@router.get("/patients/{patient_id}", response_model=schemas.PatientResponse)
def read_patient_details(
    patient_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        patient = crud.get_patient(db, tenant_id, patient_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    compliance_logger.log_user_event(current_user, "READ", "PATIENT", "patient", patient_id,
                                     details=f"Accessed details for patient {patient.patient_code}")
    return crud.decrypt_patient(patient)

@router.put("/patients/{patient_id}", response_model=schemas.PatientResponse)
def update_existing_patient(
    patient_id: int,
    patient_update: schemas.PatientUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        patient = crud.update_patient(db, tenant_id, patient_id, patient_update)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_user, "PATIENT_UPDATE", "PATIENT", "patient", patient_id,
                                     details=f"Updated fields: {', '.join(sorted(patient_update.model_fields_set))}")
    return crud.decrypt_patient(patient)

@router.delete("/patients/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_patient(
    patient_id: int,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        crud.delete_patient(db, tenant_id, patient_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "PATIENT_DELETE", "PATIENT", "patient", patient_id)
    return
