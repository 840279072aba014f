# app/routers/tenants.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..database import get_db

router = APIRouter(
    tags=["Tenants"],
    responses={404: {"description": "Not found"}},
)

@router.post("/tenants", response_model=schemas.TenantResponse, status_code=status.HTTP_201_CREATED)
def create_new_tenant(
    tenant: schemas.TenantCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_super_admin)
):
    try:
        new_tenant = crud.create_tenant(db, tenant)
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "TENANT_CREATE", "TENANT", "tenant", new_tenant.id,
                                     details=f"Created clinic {new_tenant.slug}")
    return new_tenant

@router.get("/tenants", response_model=List[schemas.TenantResponse], dependencies=[Depends(security.require_super_admin)])
def read_all_tenants(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    return crud.get_tenants(db, skip=skip, limit=limit)

@router.get("/tenants/current", response_model=schemas.TenantResponse)
def read_own_tenant(
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        return crud.get_tenant(db, tenant_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/tenants/current/settings", response_model=schemas.TenantResponse)
def update_own_tenant_settings(
    settings: schemas.TenantSettingsUpdate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """A clinic admin may change their own clinic's settings, nothing else."""
    try:
        tenant = crud.update_tenant(db, tenant_id, schemas.TenantUpdate(settings=settings))
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "TENANT_UPDATE", "TENANT", "tenant", tenant.id,
                                     details=f"Updated settings: {', '.join(sorted(settings.model_fields_set))}")
    return tenant

@router.get("/tenants/{tenant_id}", response_model=schemas.TenantResponse, dependencies=[Depends(security.require_super_admin)])
def read_tenant(tenant_id: int, db: Session = Depends(get_db)):
    try:
        return crud.get_tenant(db, tenant_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/tenants/{tenant_id}", response_model=schemas.TenantResponse)
def update_existing_tenant(
    tenant_id: int,
    tenant_update: schemas.TenantUpdate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_super_admin)
):
    try:
        tenant = crud.update_tenant(db, tenant_id, tenant_update)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "TENANT_UPDATE", "TENANT", "tenant", tenant.id,
                                     details=f"Updated fields: {', '.join(sorted(tenant_update.model_fields_set))}")
    return tenant

@router.post("/tenants/{tenant_id}/users", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_tenant_user(
    tenant_id: int,
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_super_admin)
):
    """Platform admins seed a clinic's first accounts, typically its clinic admin."""
    if user.role == models.UserRole.super_admin:
        raise HTTPException(status_code=400, detail="Clinic users cannot be platform admins")
    try:
        crud.get_tenant(db, tenant_id)
        new_user = crud.create_user(db, user, tenant_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "USER_CREATE", "USER", "user", new_user.id,
                                     details=f"Created {new_user.role.value} {new_user.username} for tenant {tenant_id}")
    return new_user
