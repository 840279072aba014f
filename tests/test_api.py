# tests/test_api.py
import pytest
from httpx import ASGITransport, AsyncClient

from app import models, schemas
from app.main import app
from app.services import subscription_service
from conftest import PASSWORD, auth_headers, make_patient, make_user

API = "/api/v1"

PATIENT_PAYLOAD = {
    "first_name": "John",
    "last_name": "Doe",
    "date_of_birth": "1990-01-15",
    "gender": "male",
    "phone": "+1234567890",
    "email": "john@example.com",
    "medical_history": "Asthma",
}


@pytest.fixture
async def async_client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health_check(async_client: AsyncClient):
    response = await async_client.get(f"{API}/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert data["environment"] == "testing"


# --- Authentication ---

def test_login_and_me(client, doctor):
    response = client.post(f"{API}/auth/token", data={"username": "drhouse", "password": PASSWORD})
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "doctor"

    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["username"] == "drhouse"


def test_login_by_email(client, doctor):
    response = client.post(f"{API}/auth/token", data={"username": "drhouse@example.com", "password": PASSWORD})
    assert response.status_code == 200


def test_failed_login_is_audited(client, db, doctor):
    response = client.post(f"{API}/auth/token", data={"username": "drhouse", "password": "wrong"})
    assert response.status_code == 401

    denied = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.ACCESS_DENIED).all()
    assert len(denied) == 1
    assert denied[0].category == "AUTHENTICATION"


def test_inactive_user_cannot_log_in(client, db, doctor):
    doctor.is_active = False
    db.commit()
    response = client.post(f"{API}/auth/token", data={"username": "drhouse", "password": PASSWORD})
    assert response.status_code == 403


def test_inactive_clinic_is_locked_out(client, db, tenant, doctor, doctor_headers):
    tenant.is_active = False
    db.commit()

    me = client.get(f"{API}/auth/me", headers=doctor_headers)
    assert me.status_code == 403
    assert me.json()["detail"] == "Clinic account is inactive"

    login = client.post(f"{API}/auth/token", data={"username": "drhouse", "password": PASSWORD})
    assert login.status_code == 403


def test_requests_without_token_are_rejected(client):
    assert client.get(f"{API}/patients").status_code == 401


# --- Patients ---

def test_create_and_read_patient(client, receptionist_headers):
    response = client.post(f"{API}/patients", json=PATIENT_PAYLOAD, headers=receptionist_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["first_name"] == "John"
    assert data["patient_code"] == "PAT-0001"
    assert data["phone"] == "+1234567890"
    assert data["medical_history"] == "Asthma"

    detail = client.get(f"{API}/patients/{data['id']}", headers=receptionist_headers)
    assert detail.status_code == 200
    assert detail.json()["email"] == "john@example.com"


def test_patient_search_by_phone(client, receptionist_headers):
    client.post(f"{API}/patients", json=PATIENT_PAYLOAD, headers=receptionist_headers)
    client.post(f"{API}/patients", json={**PATIENT_PAYLOAD, "first_name": "Mary", "phone": "+1999999999",
                                         "email": "mary@example.com"}, headers=receptionist_headers)

    response = client.get(f"{API}/patients", params={"search": "+1999999999"}, headers=receptionist_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["items"][0]["first_name"] == "Mary"


def test_patient_validation(client, receptionist_headers):
    payload = {key: value for key, value in PATIENT_PAYLOAD.items() if key != "phone"}
    assert client.post(f"{API}/patients", json=payload, headers=receptionist_headers).status_code == 422


def test_only_admins_delete_patients(client, receptionist_headers, admin_headers, patient):
    assert client.delete(f"{API}/patients/{patient.id}", headers=receptionist_headers).status_code == 403
    assert client.delete(f"{API}/patients/{patient.id}", headers=admin_headers).status_code == 204
    assert client.get(f"{API}/patients/{patient.id}", headers=admin_headers).status_code == 404


def test_patients_are_isolated_between_clinics(client, db, other_tenant, patient):
    outsider = make_user(db, other_tenant.id, "outsider", models.UserRole.clinic_admin)
    response = client.get(f"{API}/patients/{patient.id}", headers=auth_headers(outsider))
    assert response.status_code == 404


# --- Appointments and queue ---

def test_queue_flow(client, db, tenant, doctor, receptionist_headers, doctor_headers):
    first = make_patient(db, tenant.id, first_name="Anna")
    second = make_patient(db, tenant.id, first_name="Ben")

    a = client.post(f"{API}/queue", json={"patient_id": first.id, "doctor_id": doctor.id}, headers=receptionist_headers)
    b = client.post(f"{API}/queue", json={"patient_id": second.id, "doctor_id": doctor.id, "priority": "urgent"},
                    headers=receptionist_headers)
    assert a.status_code == 201 and b.status_code == 201

    line = client.get(f"{API}/queue/doctor/{doctor.id}", headers=doctor_headers).json()
    assert [entry["display_name"] for entry in line] == ["Ben Doe", "Anna Doe"]
    assert [entry["position"] for entry in line] == [1, 2]

    called = client.patch(f"{API}/queue/{b.json()['id']}/status", json={"status": "called"}, headers=doctor_headers)
    assert called.status_code == 200
    assert called.json()["status"] == "called"

    stats = client.get(f"{API}/queue/statistics", params={"doctor_id": doctor.id}, headers=doctor_headers).json()
    assert stats["waiting"] == 1
    assert stats["called"] == 1

    remaining = client.get(f"{API}/queue/{a.json()['id']}", headers=doctor_headers).json()
    assert remaining["position"] == 1


def test_queue_rejects_unknown_doctor(client, patient, receptionist_headers):
    response = client.post(f"{API}/queue", json={"patient_id": patient.id, "doctor_id": 999}, headers=receptionist_headers)
    assert response.status_code == 404


def test_appointment_booking_conflict(client, patient, doctor, receptionist_headers):
    payload = {"patient_id": patient.id, "doctor_id": doctor.id, "start_time": "2030-05-01T09:00:00Z"}
    first = client.post(f"{API}/appointments", json=payload, headers=receptionist_headers)
    assert first.status_code == 201
    assert first.json()["end_time"].startswith("2030-05-01T09:30")

    clash = client.post(f"{API}/appointments", json={**payload, "start_time": "2030-05-01T09:15:00Z"},
                        headers=receptionist_headers)
    assert clash.status_code == 400

    listed = client.get(f"{API}/appointments", params={"date": "2030-05-01"}, headers=receptionist_headers).json()
    assert listed["total"] == 1


# --- Billing ---

def test_invoice_and_payments(client, patient, receptionist_headers):
    response = client.post(f"{API}/invoices", json={
        "patient_id": patient.id,
        "items": [{"description": "Consultation", "unit_price": 80, "quantity": 1}],
        "discount_type": "fixed",
        "discount_value": 5,
    }, headers=receptionist_headers)
    assert response.status_code == 201
    invoice = response.json()
    assert invoice["invoice_number"] == "INV-0001"
    assert invoice["total_amount"] == 75.0
    assert invoice["discount_value"] == 5.0
    assert invoice["status"] == "pending"

    too_much = client.post(f"{API}/payments", json={"invoice_id": invoice["id"], "amount": 100}, headers=receptionist_headers)
    assert too_much.status_code == 400

    paid = client.post(f"{API}/payments", json={"invoice_id": invoice["id"], "amount": 75, "method": "card"},
                       headers=receptionist_headers)
    assert paid.status_code == 201
    assert paid.json()["payment_number"] == "PAY-0001"

    refreshed = client.get(f"{API}/invoices/{invoice['id']}", headers=receptionist_headers).json()
    assert refreshed["status"] == "paid"
    assert refreshed["balance_amount"] == 0


def test_doctors_cannot_bill(client, patient, doctor_headers):
    response = client.post(f"{API}/invoices", json={
        "patient_id": patient.id, "items": [{"description": "Consultation", "unit_price": 80}],
    }, headers=doctor_headers)
    assert response.status_code == 403


# --- Subscriptions ---

def test_subscription_lifecycle(client, super_admin_headers, admin_headers):
    plan = client.post(f"{API}/subscriptions/plans", json={
        "name": "Starter", "price": 29.5, "features": ["Patient Management"], "max_users": 3,
    }, headers=super_admin_headers)
    assert plan.status_code == 201
    assert plan.json()["price"] == 29.5

    assert client.get(f"{API}/subscriptions/limits", headers=admin_headers).status_code == 404

    subscribed = client.post(f"{API}/subscriptions", json={"plan_id": plan.json()["id"]}, headers=admin_headers)
    assert subscribed.status_code == 201
    assert subscribed.json()["status"] == "ACTIVE"

    limits = client.get(f"{API}/subscriptions/limits", headers=admin_headers).json()
    assert limits["max_users"] == 3
    assert limits["current_users"] == 1

    module = client.get(f"{API}/subscriptions/modules/invoices", headers=admin_headers).json()
    assert module["has_access"] is False

    payments = client.get(f"{API}/subscriptions/payments", headers=admin_headers).json()
    assert payments[0]["amount"] == 29.5

    cancelled = client.post(f"{API}/subscriptions/cancel", json={}, headers=admin_headers)
    assert cancelled.json()["status"] == "CANCELLED"


def test_clinic_admins_cannot_create_plans(client, admin_headers):
    response = client.post(f"{API}/subscriptions/plans", json={"name": "Free", "price": 0}, headers=admin_headers)
    assert response.status_code == 403


def test_module_gate_when_enforced(client, settings, monkeypatch, patient, receptionist_headers):
    monkeypatch.setattr(settings, "enforce_subscriptions", True)
    response = client.get(f"{API}/patients", headers=receptionist_headers)
    assert response.status_code == 402
    assert response.json()["detail"] == "No active subscription found"


def test_user_limit_when_enforced(client, db, settings, monkeypatch, super_admin, tenant, clinic_admin, admin_headers):
    plan = subscription_service.create_plan(
        db, schemas.SubscriptionPlanCreate(name="Solo", price=10, max_users=1), super_admin
    )
    subscription_service.create_subscription(db, tenant.id, plan.id, clinic_admin)
    monkeypatch.setattr(settings, "enforce_subscriptions", True)

    response = client.post(f"{API}/users", json={
        "username": "nurse1", "email": "nurse1@example.com", "role": "nurse", "password": "Secr3tPass",
    }, headers=admin_headers)
    assert response.status_code == 402


# --- Administration ---

def test_super_admin_creates_clinics(client, super_admin_headers, admin_headers):
    response = client.post(f"{API}/tenants", json={"name": "North Clinic", "slug": "north", "region": "EU"},
                           headers=super_admin_headers)
    assert response.status_code == 201
    assert response.json()["settings"]["currency"] == "USD"

    assert client.get(f"{API}/tenants", headers=admin_headers).status_code == 403


def test_clinic_settings(client, admin_headers):
    response = client.put(f"{API}/tenants/current/settings", json={
        "currency": "eur", "tax_rules": {"tax_type": "VAT", "rate": 21},
    }, headers=admin_headers)
    assert response.status_code == 200
    settings = response.json()["settings"]
    assert settings["currency"] == "EUR"
    assert settings["tax_rules"]["rate"] == 21


def test_admin_cannot_create_platform_admin(client, admin_headers):
    response = client.post(f"{API}/users", json={
        "username": "sneaky", "email": "sneaky@example.com", "role": "super_admin", "password": "Secr3tPass",
    }, headers=admin_headers)
    assert response.status_code == 403


def test_weak_password_is_rejected(client, admin_headers):
    response = client.post(f"{API}/users", json={
        "username": "weak", "email": "weak@example.com", "password": "password",
    }, headers=admin_headers)
    assert response.status_code == 422


def test_audit_log_and_dashboard(client, admin_headers, receptionist_headers):
    created = client.post(f"{API}/patients", json=PATIENT_PAYLOAD, headers=receptionist_headers).json()

    logs = client.get(f"{API}/logs", params={"resource_type": "patient"}, headers=admin_headers)
    assert logs.status_code == 200
    entries = logs.json()
    assert entries[0]["action"] == "CREATE"
    assert entries[0]["resource_id"] == created["id"]
    assert entries[0]["username"] == "frontdesk"

    stats = client.get(f"{API}/dashboard/stats", headers=admin_headers).json()
    assert stats["total_patients"] == 1
    assert stats["month_revenue"] == 0.0

    assert client.get(f"{API}/logs", headers=receptionist_headers).status_code == 403


def test_reports(client, patient, doctor, receptionist_headers, doctor_headers):
    client.post(f"{API}/invoices", json={
        "patient_id": patient.id,
        "items": [{"description": "Consultation", "unit_price": 80, "tax_rate": 0}],
    }, headers=receptionist_headers)

    revenue = client.get(f"{API}/reports/revenue", params={"include_breakdown": "true"}, headers=receptionist_headers)
    assert revenue.status_code == 200
    assert revenue.json()["summary"]["total_revenue"] == 80.0
    assert revenue.json()["breakdown"]["statuses"] == {"pending": 1}

    patients = client.get(f"{API}/reports/patients", headers=doctor_headers).json()
    assert patients["summary"]["total_patients"] == 1

    appointments = client.get(f"{API}/reports/appointments", params={"include_no_shows": "true"},
                              headers=doctor_headers).json()
    assert appointments["summary"]["no_show_rate"] == 0.0

    assert client.get(f"{API}/reports/revenue", headers=doctor_headers).status_code == 403
    bad = client.get(f"{API}/reports/appointments", params={"group_by": "quarter"}, headers=doctor_headers)
    assert bad.status_code == 422
    reversed_range = client.get(f"{API}/reports/patients", params={"start_date": "2024-05-02", "end_date": "2024-05-01"},
                                headers=doctor_headers)
    assert reversed_range.status_code == 400


def test_reports_need_the_module_when_enforced(client, settings, monkeypatch, receptionist_headers):
    monkeypatch.setattr(settings, "enforce_subscriptions", True)
    assert client.get(f"{API}/reports/patients", headers=receptionist_headers).status_code == 402
