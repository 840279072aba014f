# app/routers/reports.py
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db
from ..services import report_service, subscription_service

router = APIRouter(
    prefix="/reports",
    tags=["Reports"],
    dependencies=[Depends(subscription_service.require_module("reports"))],
)

GroupBy = Optional[Literal["day", "week", "month", "year"]]


@router.get("/revenue", response_model=schemas.RevenueReportResponse)
def read_revenue_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    doctor_id: Optional[int] = None,
    status: Optional[models.InvoiceStatus] = None,
    payment_method: Optional[models.PaymentMethod] = None,
    group_by: GroupBy = None,
    include_breakdown: bool = False,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_billing_staff),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return report_service.get_revenue_report(
            db, tenant_id, current_user, start_date=start_date, end_date=end_date, doctor_id=doctor_id,
            status=status, payment_method=payment_method, group_by=group_by, include_breakdown=include_breakdown,
        )
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/patients", response_model=schemas.PatientReportResponse)
def read_patient_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_new_patients: bool = False,
    group_by: GroupBy = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_staff),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return report_service.get_patient_report(
            db, tenant_id, current_user, start_date=start_date, end_date=end_date,
            include_new_patients=include_new_patients, group_by=group_by,
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/appointments", response_model=schemas.AppointmentReportResponse)
def read_appointment_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.AppointmentStatus] = None,
    type: Optional[models.AppointmentType] = None,
    group_by: GroupBy = None,
    include_no_shows: bool = False,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_staff),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        return report_service.get_appointment_report(
            db, tenant_id, current_user, start_date=start_date, end_date=end_date, doctor_id=doctor_id,
            patient_id=patient_id, status=status, appointment_type=type, group_by=group_by,
            include_no_shows=include_no_shows,
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
