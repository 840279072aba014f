# app/services/subscription_service.py
"""Subscription plans, tenant subscriptions and the plan-based feature and limit gates."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..core.clock import utcnow, add_months
from ..database import get_db
from ..security import get_current_user
from .tax_engine import format_amount, parse_amount

logger = logging.getLogger(__name__)

MODULE_FEATURES = {
    "patients": "Patient Management",
    "appointments": "Appointment Scheduling",
    "queue": "Queue Management",
    "prescriptions": "Prescriptions Management",
    "invoices": "Invoice & Billing",
    "inventory": "Inventory Management",
    "reports": "Reports & Analytics",
    "advanced-reports": "Advanced Reports & Analytics",
    "telemedicine": "Telemedicine",
    "multi-location": "Multi-Location Support",
    "api-access": "API Access",
    "custom-branding": "Custom Branding",
    "data-export": "Data Export",
    "audit-logs": "Audit Logs",
}
OPEN_STATUSES = (models.SubscriptionStatus.ACTIVE, models.SubscriptionStatus.PENDING)
NO_SUBSCRIPTION = "No active subscription found"


# ==================== PLANS ====================

def list_plans(db: Session, include_hidden: bool = False) -> List[models.SubscriptionPlan]:
    query = db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.status == models.PlanStatus.ACTIVE)
    if not include_hidden:
        query = query.filter(models.SubscriptionPlan.is_hidden.is_(False))
    return query.order_by(models.SubscriptionPlan.price, models.SubscriptionPlan.id).all()


def get_plan(db: Session, plan_id: int) -> models.SubscriptionPlan:
    plan = db.query(models.SubscriptionPlan).filter(models.SubscriptionPlan.id == plan_id).first()
    if not plan:
        raise crud.NotFoundError("Subscription plan not found")
    return plan


def create_plan(db: Session, data: schemas.SubscriptionPlanCreate, actor: models.User) -> models.SubscriptionPlan:
    values = data.model_dump()
    values["price"] = parse_amount(data.price, data.currency)
    try:
        plan = models.SubscriptionPlan(**values)
        db.add(plan)
        db.commit()
        db.refresh(plan)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating subscription plan: {e}")
        raise crud.CRUDError("A database error occurred while creating the plan.")

    logger.info(f"Created subscription plan {plan.id} ({plan.name})")
    compliance_logger.log_user_event(actor, "PLAN_CREATE", "SUBSCRIPTION", "subscription_plan", plan.id,
                                     details=f"Created plan {plan.name}")
    return plan


def update_plan(db: Session, plan_id: int, data: schemas.SubscriptionPlanUpdate, actor: models.User) -> models.SubscriptionPlan:
    plan = get_plan(db, plan_id)
    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("price") is not None:
        update_data["price"] = parse_amount(update_data["price"], update_data.get("currency") or plan.currency)
    for key, value in update_data.items():
        if value is None and key in ("name", "price", "currency", "billing_cycle", "status", "features"):
            continue
        setattr(plan, key, value)
    try:
        db.commit()
        db.refresh(plan)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating subscription plan {plan_id}: {e}")
        raise crud.CRUDError("A database error occurred while updating the plan.")

    compliance_logger.log_user_event(actor, "PLAN_UPDATE", "SUBSCRIPTION", "subscription_plan", plan.id,
                                     details=f"Updated fields: {', '.join(sorted(update_data))}")
    return plan


# ==================== SUBSCRIPTIONS ====================

def get_current_subscription(db: Session, tenant_id: int) -> Optional[models.Subscription]:
    """Latest ACTIVE or PENDING subscription of the tenant."""
    return db.query(models.Subscription).filter(
        models.Subscription.tenant_id == tenant_id,
        models.Subscription.status.in_(OPEN_STATUSES),
    ).order_by(models.Subscription.created_at.desc(), models.Subscription.id.desc()).first()


def get_active_subscription(db: Session, tenant_id: int) -> Optional[models.Subscription]:
    return db.query(models.Subscription).filter(
        models.Subscription.tenant_id == tenant_id,
        models.Subscription.status == models.SubscriptionStatus.ACTIVE,
    ).order_by(models.Subscription.created_at.desc(), models.Subscription.id.desc()).first()


def create_subscription(db: Session, tenant_id: int, plan_id: int, actor: models.User) -> models.Subscription:
    crud.get_tenant(db, tenant_id)
    plan = get_plan(db, plan_id)
    if plan.status != models.PlanStatus.ACTIVE:
        raise crud.CRUDError("Subscription plan is not available")
    if get_current_subscription(db, tenant_id):
        raise crud.CRUDError("Clinic already has an active subscription")

    start = utcnow()
    months = 12 if plan.billing_cycle == models.BillingCycle.YEARLY else 1
    end = add_months(start, months)
    try:
        subscription = models.Subscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=models.SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=end,
            next_billing_date=end,
            cancel_at_period_end=False,
            created_at=start,
        )
        subscription.payments.append(models.SubscriptionPayment(
            tenant_id=tenant_id,
            amount=plan.price,
            currency=plan.currency,
            status=models.PaymentStatus.completed,
            paid_at=start,
        ))
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating subscription for tenant {tenant_id}: {e}")
        raise crud.CRUDError("A database error occurred while creating the subscription.")

    logger.info(f"Tenant {tenant_id} subscribed to plan {plan.name} until {end.isoformat()}")
    compliance_logger.log_user_event(actor, "SUBSCRIPTION_CREATE", "SUBSCRIPTION", "subscription", subscription.id,
                                     details=f"Subscribed to {plan.name} ({plan.billing_cycle.value})")
    return subscription


def cancel_subscription(db: Session, tenant_id: int, actor: models.User, at_period_end: bool = False) -> models.Subscription:
    subscription = get_current_subscription(db, tenant_id)
    if not subscription:
        raise crud.NotFoundError("No active subscription found")

    if at_period_end:
        subscription.cancel_at_period_end = True
    else:
        subscription.status = models.SubscriptionStatus.CANCELLED
        subscription.cancelled_at = utcnow()
    try:
        db.commit()
        db.refresh(subscription)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error cancelling subscription {subscription.id}: {e}")
        raise crud.CRUDError("A database error occurred while cancelling the subscription.")

    detail = "cancel at period end" if at_period_end else "cancelled immediately"
    logger.info(f"Subscription {subscription.id} of tenant {tenant_id}: {detail}")
    compliance_logger.log_user_event(actor, "SUBSCRIPTION_CANCEL", "SUBSCRIPTION", "subscription", subscription.id,
                                     details=detail)
    return subscription


def list_subscription_payments(db: Session, tenant_id: int) -> List[models.SubscriptionPayment]:
    return db.query(models.SubscriptionPayment).filter(
        models.SubscriptionPayment.tenant_id == tenant_id,
    ).order_by(models.SubscriptionPayment.paid_at.desc(), models.SubscriptionPayment.id.desc()).all()


# ==================== GATES ====================

def _active_plan(db: Session, tenant_id: int) -> Optional[models.SubscriptionPlan]:
    subscription = get_active_subscription(db, tenant_id)
    return subscription.plan if subscription else None


def check_feature_access(db: Session, tenant_id: int, feature: str) -> Dict[str, Any]:
    plan = _active_plan(db, tenant_id)
    if not plan:
        return {"has_access": False, "reason": NO_SUBSCRIPTION}
    if feature not in (plan.features or []):
        return {"has_access": False, "reason": f'Feature "{feature}" is not included in your subscription plan'}
    return {"has_access": True}


def _check_limit(limit: Optional[int], current: int, noun: str) -> Dict[str, Any]:
    # A missing or zero limit means unlimited
    if not limit:
        return {"has_access": True}
    if current >= limit:
        return {
            "has_access": False,
            "reason": f"{noun.capitalize()} limit reached. Maximum {limit:,} {noun}s allowed in your plan",
            "limit": limit,
            "current": current,
        }
    return {"has_access": True, "limit": limit, "current": current}


def check_user_limit(db: Session, tenant_id: int) -> Dict[str, Any]:
    plan = _active_plan(db, tenant_id)
    if not plan:
        return {"has_access": False, "reason": NO_SUBSCRIPTION}
    if not plan.max_users:
        return {"has_access": True}
    return _check_limit(plan.max_users, crud.count_active_users(db, tenant_id), "user")


def check_patient_limit(db: Session, tenant_id: int) -> Dict[str, Any]:
    plan = _active_plan(db, tenant_id)
    if not plan:
        return {"has_access": False, "reason": NO_SUBSCRIPTION}
    if not plan.max_patients:
        return {"has_access": True}
    return _check_limit(plan.max_patients, crud.count_patients(db, tenant_id), "patient")


def check_module_access(db: Session, tenant_id: int, module: str) -> Dict[str, Any]:
    feature = MODULE_FEATURES.get(module.lower(), module)
    return check_feature_access(db, tenant_id, feature)


def get_tenant_limits(db: Session, tenant_id: int) -> Optional[Dict[str, Any]]:
    plan = _active_plan(db, tenant_id)
    if not plan:
        return None
    return {
        "features": plan.features or [],
        "max_users": plan.max_users,
        "max_patients": plan.max_patients,
        "max_storage_gb": plan.max_storage_gb,
        "current_users": crud.count_active_users(db, tenant_id),
        "current_patients": crud.count_patients(db, tenant_id),
    }


def enforce(result: Dict[str, Any]) -> None:
    """Turn a refused gate check into a LimitExceededError."""
    if not result.get("has_access"):
        raise crud.LimitExceededError(result.get("reason") or "Not allowed by your subscription plan")


def enforce_patient_limit(db: Session, tenant_id: int) -> None:
    if get_settings().enforce_subscriptions:
        enforce(check_patient_limit(db, tenant_id))


def enforce_user_limit(db: Session, tenant_id: int) -> None:
    if get_settings().enforce_subscriptions:
        enforce(check_user_limit(db, tenant_id))


def require_module(module: str):
    """Router dependency: refuse with 402 when the clinic's plan lacks the module.

    Only active with ENFORCE_SUBSCRIPTIONS. Platform admins are never gated.
    """
    def module_dependency(
        db: Session = Depends(get_db),
        current_user: models.User = Depends(get_current_user),
    ) -> None:
        if not get_settings().enforce_subscriptions or current_user.tenant_id is None:
            return
        result = check_module_access(db, current_user.tenant_id, module)
        if not result["has_access"]:
            compliance_logger.log_user_event(current_user, "ACCESS_DENIED", "SUBSCRIPTION", "module", None,
                                             details=f"{module}: {result['reason']}", severity="WARN")
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=result["reason"])

    return module_dependency


def serialize_plan(plan: models.SubscriptionPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "price": format_amount(plan.price, plan.currency),
        "currency": plan.currency,
        "billing_cycle": plan.billing_cycle,
        "features": plan.features or [],
        "max_users": plan.max_users,
        "max_patients": plan.max_patients,
        "max_storage_gb": plan.max_storage_gb,
        "status": plan.status,
        "is_popular": plan.is_popular,
        "is_hidden": plan.is_hidden,
    }


def serialize_subscription_payment(payment: models.SubscriptionPayment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "subscription_id": payment.subscription_id,
        "amount": format_amount(payment.amount, payment.currency),
        "currency": payment.currency,
        "status": payment.status,
        "transaction_id": payment.transaction_id,
        "paid_at": payment.paid_at,
    }
