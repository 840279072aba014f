# tests/test_subscription_service.py
from datetime import datetime

import pytest

from app import crud, models, schemas
from app.core.clock import add_months
from app.services import subscription_service
from conftest import make_patient, make_user


@pytest.fixture
def basic_plan(db, super_admin):
    return subscription_service.create_plan(
        db,
        schemas.SubscriptionPlanCreate(
            name="Starter",
            price=49.99,
            features=["Patient Management", "Queue Management"],
            max_users=2,
            max_patients=1,
        ),
        super_admin,
    )


def test_add_months_clamps_day():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 12, 15), 1) == datetime(2024, 1, 15)
    assert add_months(datetime(2024, 2, 29), 12) == datetime(2025, 2, 28)


def test_plan_price_is_stored_in_minor_units(db, basic_plan):
    assert basic_plan.price == 4999
    assert subscription_service.serialize_plan(basic_plan)["price"] == 49.99


def test_hidden_and_inactive_plans_are_not_listed(db, super_admin, basic_plan):
    subscription_service.create_plan(
        db, schemas.SubscriptionPlanCreate(name="Partner", price=0, is_hidden=True), super_admin
    )
    retired = subscription_service.create_plan(db, schemas.SubscriptionPlanCreate(name="Legacy", price=10), super_admin)
    subscription_service.update_plan(
        db, retired.id, schemas.SubscriptionPlanUpdate(status=models.PlanStatus.INACTIVE), super_admin
    )

    assert [p.name for p in subscription_service.list_plans(db)] == ["Starter"]
    assert [p.name for p in subscription_service.list_plans(db, include_hidden=True)] == ["Partner", "Starter"]


def test_subscribe_starts_an_active_period(db, tenant, clinic_admin, basic_plan):
    subscription = subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)

    assert subscription.status == models.SubscriptionStatus.ACTIVE
    assert subscription.current_period_end == add_months(subscription.current_period_start, 1)
    assert subscription.next_billing_date == subscription.current_period_end
    payments = subscription_service.list_subscription_payments(db, tenant.id)
    assert [p.amount for p in payments] == [4999]
    assert payments[0].status == models.PaymentStatus.completed


def test_only_one_open_subscription(db, tenant, clinic_admin, basic_plan):
    subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)
    with pytest.raises(crud.CRUDError, match="already has"):
        subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)


def test_cancel_now_or_at_period_end(db, tenant, clinic_admin, basic_plan):
    subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)

    pending_cancel = subscription_service.cancel_subscription(db, tenant.id, clinic_admin, at_period_end=True)
    assert pending_cancel.cancel_at_period_end is True
    assert pending_cancel.status == models.SubscriptionStatus.ACTIVE

    cancelled = subscription_service.cancel_subscription(db, tenant.id, clinic_admin)
    assert cancelled.status == models.SubscriptionStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert subscription_service.get_current_subscription(db, tenant.id) is None

    with pytest.raises(crud.NotFoundError):
        subscription_service.cancel_subscription(db, tenant.id, clinic_admin)


def test_no_subscription_means_no_access(db, tenant):
    result = subscription_service.check_feature_access(db, tenant.id, "Patient Management")
    assert result == {"has_access": False, "reason": subscription_service.NO_SUBSCRIPTION}
    assert subscription_service.get_tenant_limits(db, tenant.id) is None


def test_feature_and_module_access(db, tenant, clinic_admin, basic_plan):
    subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)

    assert subscription_service.check_feature_access(db, tenant.id, "Queue Management")["has_access"]
    assert subscription_service.check_module_access(db, tenant.id, "patients")["has_access"]
    denied = subscription_service.check_module_access(db, tenant.id, "invoices")
    assert denied["has_access"] is False
    assert "Invoice & Billing" in denied["reason"]


def test_patient_limit(db, tenant, clinic_admin, basic_plan):
    subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)
    assert subscription_service.check_patient_limit(db, tenant.id) == {"has_access": True, "limit": 1, "current": 0}

    make_patient(db, tenant.id)
    result = subscription_service.check_patient_limit(db, tenant.id)
    assert result["has_access"] is False
    assert result["reason"] == "Patient limit reached. Maximum 1 patients allowed in your plan"


def test_user_limit_counts_active_users(db, tenant, clinic_admin, basic_plan):
    subscription_service.create_subscription(db, tenant.id, basic_plan.id, clinic_admin)
    assert subscription_service.check_user_limit(db, tenant.id)["has_access"]

    make_user(db, tenant.id, "nurse1", models.UserRole.nurse)
    assert subscription_service.check_user_limit(db, tenant.id)["has_access"] is False

    limits = subscription_service.get_tenant_limits(db, tenant.id)
    assert limits["max_users"] == 2
    assert limits["current_users"] == 2


def test_zero_limit_is_unlimited(db, tenant, clinic_admin, super_admin):
    plan = subscription_service.create_plan(
        db, schemas.SubscriptionPlanCreate(name="Unlimited", price=99, max_patients=0), super_admin
    )
    subscription_service.create_subscription(db, tenant.id, plan.id, clinic_admin)
    make_patient(db, tenant.id)
    assert subscription_service.check_patient_limit(db, tenant.id) == {"has_access": True}


def test_enforcement_follows_the_setting(db, tenant, settings, monkeypatch):
    # Without a subscription every check fails, but nothing is enforced by default
    subscription_service.enforce_patient_limit(db, tenant.id)

    monkeypatch.setattr(settings, "enforce_subscriptions", True)
    with pytest.raises(crud.LimitExceededError):
        subscription_service.enforce_patient_limit(db, tenant.id)
    with pytest.raises(crud.LimitExceededError):
        subscription_service.enforce_user_limit(db, tenant.id)
