# app/routers/users.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..services import subscription_service

router = APIRouter(
    tags=["Users"],
    dependencies=[Depends(security.require_clinic_admin)],
    responses={404: {"description": "Not found"}},
)

@router.post("/users", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_new_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    if user.role == models.UserRole.super_admin:
        raise HTTPException(status_code=403, detail="Clinic admins cannot create platform admins")
    try:
        subscription_service.enforce_user_limit(db, tenant_id)
        new_user = crud.create_user(db, user, tenant_id)
    except crud.LimitExceededError as e:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "USER_CREATE", "USER", "user", new_user.id,
                                     details=f"Created new user: {new_user.username} with role {new_user.role.value}")
    return new_user

@router.get("/users", response_model=List[schemas.UserResponse])
def read_all_users(
    skip: int = 0,
    limit: int = 100,
    role: Optional[models.UserRole] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    return crud.get_users(db, tenant_id, skip=skip, limit=limit, role=role)

@router.get("/users/{user_id}", response_model=schemas.UserResponse)
def read_user(user_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    db_user = crud.get_user(db, user_id, tenant_id)
    if not db_user:
        raise HTTPException(status_code=404, detail="User not found")
    return db_user

@router.put("/users/{user_id}", response_model=schemas.UserResponse)
def update_existing_user(
    user_id: int,
    user_update: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    if user_update.role == models.UserRole.super_admin:
        raise HTTPException(status_code=403, detail="Clinic admins cannot grant platform admin")
    try:
        updated_user = crud.update_user(db, tenant_id, user_id, user_update)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    changed = sorted(user_update.model_fields_set - {"password"})
    if "password" in user_update.model_fields_set:
        changed.append("password")
    compliance_logger.log_user_event(current_admin, "USER_UPDATE", "USER", "user", user_id,
                                     details=f"Updated user {updated_user.username}: {', '.join(changed)}")
    return updated_user

@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    if user_id == current_admin.id:
        raise HTTPException(status_code=403, detail="You cannot delete your own account.")
    try:
        crud.delete_user(db, tenant_id, user_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    compliance_logger.log_user_event(current_admin, "USER_DELETE", "USER", "user", user_id)
    return
