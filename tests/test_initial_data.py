# tests/test_initial_data.py
from app import models
from app.initial_data import create_initial_data, create_or_update_admin
from app.security import verify_password
from conftest import make_user


def test_default_plans_are_seeded_once(db):
    create_initial_data()
    create_initial_data()

    plans = db.query(models.SubscriptionPlan).order_by(models.SubscriptionPlan.price).all()
    assert [(p.name, p.price) for p in plans] == [("Basic", 4999), ("Professional", 9999), ("Enterprise", 19999)]
    assert plans[1].is_popular
    assert "Audit Logs" in plans[2].features


def test_no_admin_without_password(db, settings, monkeypatch):
    monkeypatch.setattr(settings, "bootstrap_admin_username", "root")
    monkeypatch.setattr(settings, "bootstrap_admin_password", None)
    create_or_update_admin()
    assert db.query(models.User).count() == 0


def test_bootstrap_admin_is_created(db, settings, monkeypatch):
    monkeypatch.setattr(settings, "bootstrap_admin_username", "root")
    monkeypatch.setattr(settings, "bootstrap_admin_password", "simple-secret")
    create_or_update_admin()

    admin = db.query(models.User).filter(models.User.username == "root").one()
    assert admin.role == models.UserRole.super_admin
    assert admin.tenant_id is None
    assert verify_password("simple-secret", admin.password_hash)


def test_existing_user_is_promoted(db, tenant, settings, monkeypatch):
    user = make_user(db, tenant.id, "ops", models.UserRole.receptionist)
    monkeypatch.setattr(settings, "bootstrap_admin_username", "ops")
    monkeypatch.setattr(settings, "bootstrap_admin_password", "N3w-secret")
    create_or_update_admin()

    db.refresh(user)
    assert user.role == models.UserRole.super_admin
    assert user.tenant_id is None
    assert verify_password("N3w-secret", user.password_hash)


def test_existing_user_matched_by_email_is_promoted(db, tenant, settings, monkeypatch):
    user = make_user(db, tenant.id, "ops", models.UserRole.receptionist)
    monkeypatch.setattr(settings, "bootstrap_admin_username", "root")
    monkeypatch.setattr(settings, "bootstrap_admin_email", "ops@example.com")
    monkeypatch.setattr(settings, "bootstrap_admin_password", "N3w-secret")
    create_or_update_admin()

    db.refresh(user)
    assert user.role == models.UserRole.super_admin
    assert db.query(models.User).filter(models.User.role == models.UserRole.super_admin).count() == 1
    assert db.query(models.User).filter(models.User.username == "root").first() is None
