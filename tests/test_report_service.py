# tests/test_report_service.py
from datetime import date, datetime, timedelta, timezone

import pytest

from app import crud, models, schemas
from app.core.clock import utcnow
from app.services import appointment_service, billing_service, report_service
from conftest import make_patient

TOMORROW_9AM = (datetime.now(timezone.utc) + timedelta(days=1)).replace(hour=9, minute=0, second=0, microsecond=0)


def test_period_keys():
    thursday = date(2024, 3, 14)
    assert report_service.period_key(thursday, "day") == "2024-03-14"
    assert report_service.period_key(thursday, "week") == "2024-03-10"
    assert report_service.period_key(date(2024, 3, 10), "week") == "2024-03-10"
    assert report_service.period_key(thursday, "month") == "2024-03"
    assert report_service.period_key(thursday, "year") == "2024"


def test_group_by_period_sums_and_sorts():
    rows = [(date(2024, 2, 3), 500), (date(2024, 1, 9), 100), (date(2024, 2, 20), 250)]
    assert report_service.group_by_period(rows, "month") == [
        {"period": "2024-01", "count": 1, "total": 100},
        {"period": "2024-02", "count": 2, "total": 750},
    ]


def test_age_groups_use_birthdays():
    today = date(2024, 10, 19)
    assert report_service.age_group(date(2006, 10, 20), today) == "0-18"
    assert report_service.age_group(date(2005, 10, 19), today) == "19-30"
    assert report_service.age_group(date(1994, 1, 1), today) == "19-30"
    assert report_service.age_group(date(1973, 6, 1), today) == "51-70"
    assert report_service.age_group(date(1950, 1, 1), today) == "71+"


def test_invalid_range_and_grouping_are_rejected(db, tenant, clinic_admin):
    with pytest.raises(crud.CRUDError, match="end_date"):
        report_service.get_patient_report(
            db, tenant.id, clinic_admin, start_date=date(2024, 5, 2), end_date=date(2024, 5, 1)
        )
    with pytest.raises(crud.CRUDError, match="group_by"):
        report_service.get_appointment_report(db, tenant.id, clinic_admin, group_by="quarter")


def bill(db, tenant, patient, actor, unit_price):
    return billing_service.create_invoice(
        db, tenant.id,
        schemas.InvoiceCreate(
            patient_id=patient.id,
            items=[schemas.InvoiceItemIn(description="Consultation", unit_price=unit_price, tax_rate=0)],
        ),
        actor,
    )


def test_revenue_report(db, tenant, patient, doctor, receptionist):
    kept = bill(db, tenant, patient, receptionist, 100)
    billing_service.create_payment(
        db, tenant.id, schemas.PaymentCreate(invoice_id=kept.id, amount=40, method="cash"), receptionist
    )
    voided = bill(db, tenant, patient, receptionist, 50)
    billing_service.update_invoice(db, tenant.id, voided.id, schemas.InvoiceUpdate(status="cancelled"), receptionist)

    report = report_service.get_revenue_report(
        db, tenant.id, receptionist, group_by="month", include_breakdown=True
    )

    assert report["summary"] == {
        "total_revenue": 100.0,
        "total_paid": 40.0,
        "total_pending": 60.0,
        "invoice_count": 1,
        "payment_count": 1,
    }
    assert report["breakdown"] == {"payment_methods": {"cash": 40.0}, "statuses": {"partial": 1}}
    assert report["time_series"] == [{"period": utcnow().strftime("%Y-%m"), "count": 1, "total": 100.0}]

    cancelled_only = report_service.get_revenue_report(db, tenant.id, receptionist, status=models.InvoiceStatus.cancelled)
    assert cancelled_only["summary"]["invoice_count"] == 1
    assert cancelled_only["breakdown"] is None

    # No invoice is linked to one of the doctor's appointments
    by_doctor = report_service.get_revenue_report(db, tenant.id, receptionist, doctor_id=doctor.id)
    assert by_doctor["summary"]["invoice_count"] == 0


def test_revenue_report_date_range(db, tenant, patient, receptionist):
    bill(db, tenant, patient, receptionist, 100)
    yesterday = utcnow().date() - timedelta(days=1)

    report = report_service.get_revenue_report(db, tenant.id, receptionist, end_date=yesterday)
    assert report["summary"]["invoice_count"] == 0
    assert report["period"] == {"start_date": None, "end_date": yesterday}


def test_patient_report(db, tenant, patient, clinic_admin):
    second = make_patient(db, tenant.id, first_name="Omar", phone="+15550002222")
    second.blood_group = "O+"
    db.commit()

    report = report_service.get_patient_report(
        db, tenant.id, clinic_admin,
        start_date=utcnow().date(), include_new_patients=True, group_by="day", today=date(2025, 1, 1),
    )

    assert report["summary"] == {"total_patients": 2, "new_patients": 2}
    assert report["breakdown"]["gender"] == {"female": 2}
    assert report["breakdown"]["age_groups"] == {"0-18": 0, "19-30": 0, "31-50": 2, "51-70": 0, "71+": 0}
    assert report["breakdown"]["blood_groups"] == {"O+": 1}
    assert report["monthly_trend"] == [{"period": utcnow().date().isoformat(), "count": 2}]

    plain = report_service.get_patient_report(db, tenant.id, clinic_admin)
    assert plain["summary"]["new_patients"] is None
    assert plain["monthly_trend"] is None


def test_appointment_report(db, tenant, patient, doctor, receptionist):
    appointments = [
        appointment_service.create_appointment(
            db, tenant.id,
            schemas.AppointmentCreate(
                patient_id=patient.id, doctor_id=doctor.id, start_time=TOMORROW_9AM + timedelta(hours=offset)
            ),
            receptionist,
        )
        for offset in range(3)
    ]
    appointments[0].status = models.AppointmentStatus.no_show
    appointments[1].status = models.AppointmentStatus.completed
    db.commit()

    report = report_service.get_appointment_report(
        db, tenant.id, receptionist, doctor_id=doctor.id, group_by="day", include_no_shows=True
    )

    assert report["summary"] == {
        "total_appointments": 3,
        "completed": 1,
        "cancelled": 0,
        "no_shows": 1,
        "no_show_rate": 33.33,
    }
    assert report["breakdown"]["statuses"] == {"no_show": 1, "completed": 1, "scheduled": 1}
    assert report["breakdown"]["types"] == {"consultation": 3}
    assert report["time_series"] == [{"period": TOMORROW_9AM.date().isoformat(), "count": 3}]

    no_shows = report_service.get_appointment_report(
        db, tenant.id, receptionist, status=models.AppointmentStatus.no_show
    )
    assert no_shows["summary"]["total_appointments"] == 1
    assert no_shows["summary"]["no_shows"] is None


def test_empty_appointment_report_has_zero_no_show_rate(db, tenant, receptionist):
    report = report_service.get_appointment_report(db, tenant.id, receptionist, include_no_shows=True)
    assert report["summary"]["no_show_rate"] == 0.0


def test_reports_are_audited(db, tenant, clinic_admin):
    report_service.get_patient_report(db, tenant.id, clinic_admin)

    logs = db.query(models.AuditLog).filter(models.AuditLog.resource_type == "report").all()
    assert len(logs) == 1
    assert logs[0].action == models.AuditAction.READ
