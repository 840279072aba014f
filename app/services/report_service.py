# app/services/report_service.py
"""
Revenue, patient and appointment analytics for a clinic.

Every report takes an optional inclusive date range and an optional `group_by`
(day, week, month or year) for a time series. Money is returned in major units.
"""
import logging
from collections import Counter
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import crud, models
from ..compliance_logger import compliance_logger
from ..core.clock import utcnow, as_utc, day_bounds
from .tax_engine import format_amount

logger = logging.getLogger(__name__)

GROUP_BY_PERIODS = ("day", "week", "month", "year")
AGE_GROUPS = (("0-18", 18), ("19-30", 30), ("31-50", 50), ("51-70", 70), ("71+", None))


def period_key(value: date, group_by: str) -> str:
    if group_by == "week":
        # Weeks start on Sunday
        week_start = value - timedelta(days=(value.weekday() + 1) % 7)
        return week_start.isoformat()
    if group_by == "month":
        return f"{value.year}-{value.month:02d}"
    if group_by == "year":
        return str(value.year)
    return value.isoformat()


def group_by_period(rows: Iterable[Tuple[date, int]], group_by: str) -> List[Dict[str, Any]]:
    """Buckets (date, amount) pairs into {"period", "count", "total"} rows, oldest first."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for value, amount in rows:
        key = period_key(value, group_by)
        bucket = grouped.setdefault(key, {"period": key, "count": 0, "total": 0})
        bucket["count"] += 1
        bucket["total"] += amount or 0
    return [grouped[key] for key in sorted(grouped)]


def age_group(date_of_birth: date, today: date) -> str:
    age = today.year - date_of_birth.year - ((today.month, today.day) < (date_of_birth.month, date_of_birth.day))
    for label, upper in AGE_GROUPS:
        if upper is None or age <= upper:
            return label
    return AGE_GROUPS[-1][0]


def _validate_range(start_date: Optional[date], end_date: Optional[date], group_by: Optional[str]) -> None:
    if start_date and end_date and end_date < start_date:
        raise crud.CRUDError("end_date must not be before start_date")
    if group_by is not None and group_by not in GROUP_BY_PERIODS:
        raise crud.CRUDError(f"group_by must be one of: {', '.join(GROUP_BY_PERIODS)}")


def _period(start_date: Optional[date], end_date: Optional[date]) -> Dict[str, Optional[date]]:
    return {"start_date": start_date, "end_date": end_date}


def _filter_datetime_range(query, column, start_date: Optional[date], end_date: Optional[date]):
    if start_date:
        query = query.filter(column >= day_bounds(start_date)[0])
    if end_date:
        query = query.filter(column < day_bounds(end_date)[1])
    return query


def get_revenue_report(
    db: Session,
    tenant_id: int,
    actor: models.User,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    doctor_id: Optional[int] = None,
    status: Optional[models.InvoiceStatus] = None,
    payment_method: Optional[models.PaymentMethod] = None,
    group_by: Optional[str] = None,
    include_breakdown: bool = False,
) -> Dict[str, Any]:
    _validate_range(start_date, end_date, group_by)
    tenant = crud.get_tenant(db, tenant_id)
    currency = crud.tenant_setting(tenant, "currency", default="USD")

    invoice_query = db.query(models.Invoice).filter(
        models.Invoice.tenant_id == tenant_id,
        models.Invoice.deleted_at.is_(None),
    )
    if status:
        invoice_query = invoice_query.filter(models.Invoice.status == status)
    else:
        invoice_query = invoice_query.filter(models.Invoice.status != models.InvoiceStatus.cancelled)
    if doctor_id:
        # Only invoices raised for one of the doctor's appointments
        invoice_query = invoice_query.join(
            models.Appointment, models.Appointment.id == models.Invoice.appointment_id
        ).filter(models.Appointment.doctor_id == doctor_id)
    invoice_query = _filter_datetime_range(invoice_query, models.Invoice.invoice_date, start_date, end_date)
    invoices = invoice_query.all()

    payment_query = db.query(models.Payment).filter(
        models.Payment.tenant_id == tenant_id,
        models.Payment.status == models.PaymentStatus.completed,
    )
    if payment_method:
        payment_query = payment_query.filter(models.Payment.method == payment_method)
    payment_query = _filter_datetime_range(payment_query, models.Payment.paid_at, start_date, end_date)
    payments = payment_query.all()

    total_pending = sum(
        invoice.balance_amount or 0 for invoice in invoices
        if invoice.status in (models.InvoiceStatus.pending, models.InvoiceStatus.partial)
    )
    report: Dict[str, Any] = {
        "currency": currency,
        "summary": {
            "total_revenue": format_amount(sum(invoice.total_amount or 0 for invoice in invoices), currency),
            "total_paid": format_amount(sum(payment.amount or 0 for payment in payments), currency),
            "total_pending": format_amount(total_pending, currency),
            "invoice_count": len(invoices),
            "payment_count": len(payments),
        },
        "breakdown": None,
        "time_series": None,
        "period": _period(start_date, end_date),
    }

    if include_breakdown:
        by_method: Dict[str, int] = {}
        for payment in payments:
            by_method[payment.method.value] = by_method.get(payment.method.value, 0) + payment.amount
        report["breakdown"] = {
            "payment_methods": {method: format_amount(amount, currency) for method, amount in by_method.items()},
            "statuses": dict(Counter(invoice.status.value for invoice in invoices)),
        }

    if group_by:
        series = group_by_period(
            ((as_utc(invoice.invoice_date).date(), invoice.total_amount) for invoice in invoices), group_by
        )
        for bucket in series:
            bucket["total"] = format_amount(bucket["total"], currency)
        report["time_series"] = series

    compliance_logger.log_user_event(actor, "READ", "REPORT", "report", details="Viewed revenue report")
    return report


def get_patient_report(
    db: Session,
    tenant_id: int,
    actor: models.User,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_new_patients: bool = False,
    group_by: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    _validate_range(start_date, end_date, group_by)
    today = today or utcnow().date()

    all_patients = db.query(models.Patient).filter(
        models.Patient.tenant_id == tenant_id,
        models.Patient.deleted_at.is_(None),
    ).all()

    patients = all_patients
    date_filtered = include_new_patients and (start_date or end_date)
    if date_filtered:
        patients = [
            patient for patient in all_patients
            if patient.created_at is not None
            and (start_date is None or as_utc(patient.created_at).date() >= start_date)
            and (end_date is None or as_utc(patient.created_at).date() <= end_date)
        ]

    age_groups = {label: 0 for label, _ in AGE_GROUPS}
    for patient in patients:
        age_groups[age_group(patient.date_of_birth, today)] += 1

    monthly_trend = None
    if group_by:
        monthly_trend = [
            {"period": bucket["period"], "count": bucket["count"]}
            for bucket in group_by_period(
                ((as_utc(patient.created_at).date(), 0) for patient in patients if patient.created_at is not None),
                group_by,
            )
        ]

    compliance_logger.log_user_event(actor, "READ", "REPORT", "report", details="Viewed patient report")
    return {
        "summary": {
            "total_patients": len(all_patients),
            "new_patients": len(patients) if date_filtered else None,
        },
        "breakdown": {
            "gender": dict(Counter(patient.gender.value for patient in patients)),
            "age_groups": age_groups,
            "blood_groups": dict(Counter(patient.blood_group for patient in patients if patient.blood_group)),
        },
        "monthly_trend": monthly_trend,
        "period": _period(start_date, end_date),
    }


def get_appointment_report(
    db: Session,
    tenant_id: int,
    actor: models.User,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.AppointmentStatus] = None,
    appointment_type: Optional[models.AppointmentType] = None,
    group_by: Optional[str] = None,
    include_no_shows: bool = False,
) -> Dict[str, Any]:
    _validate_range(start_date, end_date, group_by)

    query = db.query(models.Appointment).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.deleted_at.is_(None),
    )
    if start_date:
        query = query.filter(models.Appointment.appointment_date >= start_date)
    if end_date:
        query = query.filter(models.Appointment.appointment_date <= end_date)
    if doctor_id:
        query = query.filter(models.Appointment.doctor_id == doctor_id)
    if patient_id:
        query = query.filter(models.Appointment.patient_id == patient_id)
    if status:
        query = query.filter(models.Appointment.status == status)
    if appointment_type:
        query = query.filter(models.Appointment.type == appointment_type)
    appointments = query.all()

    statuses = Counter(appointment.status.value for appointment in appointments)
    no_shows = statuses.get(models.AppointmentStatus.no_show.value, 0)
    no_show_rate = round(no_shows / len(appointments) * 100, 2) if appointments else 0.0

    time_series = None
    if group_by:
        time_series = [
            {"period": bucket["period"], "count": bucket["count"]}
            for bucket in group_by_period(((a.appointment_date, 0) for a in appointments), group_by)
        ]

    compliance_logger.log_user_event(actor, "READ", "REPORT", "report", details="Viewed appointment report")
    return {
        "summary": {
            "total_appointments": len(appointments),
            "completed": statuses.get(models.AppointmentStatus.completed.value, 0),
            "cancelled": statuses.get(models.AppointmentStatus.cancelled.value, 0),
            "no_shows": no_shows if include_no_shows else None,
            "no_show_rate": no_show_rate if include_no_shows else None,
        },
        "breakdown": {
            "statuses": dict(statuses),
            "types": dict(Counter(appointment.type.value for appointment in appointments)),
        },
        "time_series": time_series,
        "period": _period(start_date, end_date),
    }
