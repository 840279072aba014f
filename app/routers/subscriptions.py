# app/routers/subscriptions.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..services import subscription_service

router = APIRouter(
    prefix="/subscriptions",
    tags=["Subscriptions"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

# --- Plans ---
@router.get("/plans", response_model=List[schemas.SubscriptionPlanResponse])
def read_plans(
    include_hidden: bool = False,
    current_user: models.User = Depends(security.get_current_user),
    db: Session = Depends(get_db),
):
    # Hidden plans are only listed for platform admins
    show_hidden = include_hidden and current_user.role == models.UserRole.super_admin
    return [subscription_service.serialize_plan(p) for p in subscription_service.list_plans(db, include_hidden=show_hidden)]

@router.post("/plans", response_model=schemas.SubscriptionPlanResponse, status_code=status.HTTP_201_CREATED)
def create_new_plan(
    plan: schemas.SubscriptionPlanCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_super_admin),
):
    try:
        created = subscription_service.create_plan(db, plan, current_admin)
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return subscription_service.serialize_plan(created)

@router.put("/plans/{plan_id}", response_model=schemas.SubscriptionPlanResponse)
def update_existing_plan(
    plan_id: int,
    plan_update: schemas.SubscriptionPlanUpdate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_super_admin),
):
    try:
        updated = subscription_service.update_plan(db, plan_id, plan_update, current_admin)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return subscription_service.serialize_plan(updated)

# --- Clinic subscription ---
@router.post("", response_model=schemas.SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def subscribe(
    subscription: schemas.SubscriptionCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return subscription_service.create_subscription(db, tenant_id, subscription.plan_id, current_admin)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/current", response_model=Optional[schemas.SubscriptionResponse])
def read_current_subscription(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return subscription_service.get_current_subscription(db, tenant_id)

@router.post("/cancel", response_model=schemas.SubscriptionResponse)
def cancel_current_subscription(
    cancellation: schemas.SubscriptionCancel,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return subscription_service.cancel_subscription(db, tenant_id, current_admin, at_period_end=cancellation.at_period_end)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/payments", response_model=List[schemas.SubscriptionPaymentResponse],
            dependencies=[Depends(security.require_clinic_admin)])
def read_subscription_payments(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return [subscription_service.serialize_subscription_payment(p)
            for p in subscription_service.list_subscription_payments(db, tenant_id)]

# --- Gates ---
@router.get("/features/{feature}", response_model=schemas.AccessCheckResponse)
def check_feature(feature: str, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return subscription_service.check_feature_access(db, tenant_id, feature)

@router.get("/modules/{module}", response_model=schemas.AccessCheckResponse)
def check_module(module: str, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return subscription_service.check_module_access(db, tenant_id, module)

@router.get("/limits/users", response_model=schemas.AccessCheckResponse)
def check_users_limit(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return subscription_service.check_user_limit(db, tenant_id)

@router.get("/limits/patients", response_model=schemas.AccessCheckResponse)
def check_patients_limit(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    return subscription_service.check_patient_limit(db, tenant_id)

@router.get("/limits", response_model=schemas.TenantLimitsResponse)
def read_tenant_limits(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    limits = subscription_service.get_tenant_limits(db, tenant_id)
    if limits is None:
        raise HTTPException(status_code=404, detail=subscription_service.NO_SUBSCRIPTION)
    return limits
