# app/routers/drugs.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..database import get_db

router = APIRouter(
    tags=["Drugs"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

@router.post("/drugs", response_model=schemas.DrugResponse, status_code=status.HTTP_201_CREATED)
def create_new_drug(
    drug: schemas.DrugCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role("super_admin", "clinic_admin", "pharmacist")),
):
    """
    Add a drug to the catalog. Platform admins add to the global catalog, clinic staff to their own.
    """
    try:
        new_drug = crud.create_drug(db, drug, current_user.tenant_id)
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_user, "DRUG_CREATE", "DRUG", "drug", new_drug.id,
                                     details=f"Added {new_drug.name} to the catalog")
    return new_drug

@router.get("/drugs", response_model=List[schemas.DrugResponse])
def search_drug_catalog(
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    return crud.search_drugs(db, tenant_id, search=search, limit=limit)

@router.get("/drugs/{drug_id}", response_model=schemas.DrugResponse)
def read_drug(drug_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return crud.get_drug(db, tenant_id, drug_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
