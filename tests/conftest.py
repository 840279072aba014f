# tests/conftest.py
import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("BOOTSTRAP_ADMIN_PASSWORD", None)

from datetime import date

import pytest
from fastapi.testclient import TestClient

from app import crud, models, schemas
from app.config import get_settings
from app.database import SessionLocal, create_tables, drop_tables
from app.security import create_access_token
from app.main import app

PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True)
def fresh_database():
    create_tables()
    yield
    drop_tables()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    """The cached settings object; tests may monkeypatch its attributes."""
    return get_settings()


@pytest.fixture
def tenant(db):
    return crud.create_tenant(db, schemas.TenantCreate(name="Sunrise Clinic", slug="sunrise", region=models.Region.US))


@pytest.fixture
def other_tenant(db):
    return crud.create_tenant(db, schemas.TenantCreate(name="Harbor Clinic", slug="harbor", region=models.Region.IN))


def make_user(db, tenant_id, username, role):
    return crud.create_user(
        db,
        schemas.UserCreate(
            username=username,
            email=f"{username}@example.com",
            first_name=username.capitalize(),
            last_name="Tester",
            role=role,
            password=PASSWORD,
        ),
        tenant_id=tenant_id,
    )


@pytest.fixture
def clinic_admin(db, tenant):
    return make_user(db, tenant.id, "admin", models.UserRole.clinic_admin)


@pytest.fixture
def doctor(db, tenant):
    return make_user(db, tenant.id, "drhouse", models.UserRole.doctor)


@pytest.fixture
def second_doctor(db, tenant):
    return make_user(db, tenant.id, "drwilson", models.UserRole.doctor)


@pytest.fixture
def receptionist(db, tenant):
    return make_user(db, tenant.id, "frontdesk", models.UserRole.receptionist)


@pytest.fixture
def super_admin(db):
    return make_user(db, None, "platform", models.UserRole.super_admin)


def make_patient(db, tenant_id, first_name="Jane", last_name="Doe", phone="+15550001111"):
    return crud.create_patient(
        db,
        tenant_id,
        schemas.PatientCreate(
            first_name=first_name,
            last_name=last_name,
            date_of_birth=date(1985, 4, 12),
            gender=models.Gender.female,
            phone=phone,
            email=f"{first_name.lower()}@example.com",
            allergies="Penicillin",
        ),
    )


@pytest.fixture
def patient(db, tenant):
    return make_patient(db, tenant.id)


@pytest.fixture
def client():
    return TestClient(app)


def auth_headers(user):
    token = create_access_token({
        "sub": user.username,
        "user_id": user.id,
        "tenant_id": user.tenant_id,
        "role": user.role.value,
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(clinic_admin):
    return auth_headers(clinic_admin)


@pytest.fixture
def doctor_headers(doctor):
    return auth_headers(doctor)


@pytest.fixture
def receptionist_headers(receptionist):
    return auth_headers(receptionist)


@pytest.fixture
def super_admin_headers(super_admin):
    return auth_headers(super_admin)
