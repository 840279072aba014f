# app/services/appointment_service.py
import logging
from datetime import date, timedelta, datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..core.clock import utcnow, as_utc
from . import queue_service

logger = logging.getLogger(__name__)

# Appointments in these states hold their time slot
SLOT_HOLDING_STATUSES = (
    models.AppointmentStatus.scheduled,
    models.AppointmentStatus.confirmed,
    models.AppointmentStatus.arrived,
    models.AppointmentStatus.in_queue,
    models.AppointmentStatus.in_progress,
)
LOCKED_STATUSES = (models.AppointmentStatus.completed, models.AppointmentStatus.cancelled)
REMINDER_LEAD = timedelta(hours=24)


def is_time_slot_available(db: Session, tenant_id: int, doctor_id: int, start_time: datetime, end_time: datetime,
                           exclude_appointment_id: Optional[int] = None) -> bool:
    """True when no slot-holding appointment of the doctor overlaps [start_time, end_time)."""
    query = db.query(models.Appointment.id).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.deleted_at.is_(None),
        models.Appointment.status.in_(SLOT_HOLDING_STATUSES),
        models.Appointment.start_time < end_time,
        models.Appointment.end_time > start_time,
    )
    if exclude_appointment_id:
        query = query.filter(models.Appointment.id != exclude_appointment_id)
    return query.first() is None


def get_appointment(db: Session, tenant_id: int, appointment_id: int) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(
        models.Appointment.id == appointment_id,
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.deleted_at.is_(None),
    ).first()
    if not appointment:
        raise crud.NotFoundError("Appointment not found")
    return appointment


def create_appointment(db: Session, tenant_id: int, data: schemas.AppointmentCreate, actor: models.User) -> models.Appointment:
    crud.get_patient(db, tenant_id, data.patient_id)
    crud.get_active_doctor(db, tenant_id, data.doctor_id)

    start_time = as_utc(data.start_time)
    duration = data.duration or get_settings().default_consultation_minutes
    end_time = as_utc(data.end_time) if data.end_time else start_time + timedelta(minutes=duration)
    if end_time <= start_time:
        raise crud.CRUDError("End time must be after start time")

    if not is_time_slot_available(db, tenant_id, data.doctor_id, start_time, end_time):
        raise crud.CRUDError("Time slot is not available. Please choose another time.")

    try:
        appointment = models.Appointment(
            tenant_id=tenant_id,
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            appointment_date=data.appointment_date or start_time.date(),
            start_time=start_time,
            end_time=end_time,
            duration=int((end_time - start_time).total_seconds() // 60),
            type=data.type,
            status=data.status or models.AppointmentStatus.scheduled,
            reason=data.reason,
            notes=data.notes,
            reminder_scheduled_at=start_time - REMINDER_LEAD,
            created_by=actor.id,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating appointment: {e}")
        raise crud.CRUDError("A database error occurred while creating the appointment.")

    logger.info(f"Created appointment {appointment.id} for patient {appointment.patient_id} with doctor {appointment.doctor_id}")
    compliance_logger.log_user_event(actor, "APPOINTMENT_CREATE", "APPOINTMENT", "appointment", appointment.id,
                                     details=f"Booked {appointment.type.value} at {start_time.isoformat()}")
    return appointment


def list_appointments(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.AppointmentStatus] = None,
    appointment_type: Optional[models.AppointmentType] = None,
    on_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Tuple[List[models.Appointment], int]:
    query = db.query(models.Appointment).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.deleted_at.is_(None),
    )
    if doctor_id:
        query = query.filter(models.Appointment.doctor_id == doctor_id)
    if patient_id:
        query = query.filter(models.Appointment.patient_id == patient_id)
    if status:
        query = query.filter(models.Appointment.status == status)
    if appointment_type:
        query = query.filter(models.Appointment.type == appointment_type)
    if on_date:
        query = query.filter(models.Appointment.appointment_date == on_date)
    if start_date:
        query = query.filter(models.Appointment.appointment_date >= start_date)
    if end_date:
        query = query.filter(models.Appointment.appointment_date <= end_date)
    query = query.order_by(models.Appointment.appointment_date, models.Appointment.start_time)
    return crud.paginate(query, page, limit)


def update_appointment(db: Session, tenant_id: int, appointment_id: int, data: schemas.AppointmentUpdate,
                       actor: models.User) -> models.Appointment:
    appointment = get_appointment(db, tenant_id, appointment_id)
    if appointment.status in LOCKED_STATUSES:
        raise crud.CRUDError(f"Cannot update a {appointment.status.value} appointment")

    update_data = data.model_dump(exclude_unset=True)
    for key in ("start_time", "duration", "type", "appointment_date"):
        if key in update_data and update_data[key] is None:
            update_data.pop(key)

    reschedule = any(key in update_data for key in ("start_time", "duration", "appointment_date"))
    if "duration" in update_data:
        appointment.duration = update_data.pop("duration")
    if "start_time" in update_data:
        start_time = as_utc(update_data.pop("start_time"))
        appointment.start_time = start_time
        if "appointment_date" not in update_data:
            appointment.appointment_date = start_time.date()
    for key, value in update_data.items():
        setattr(appointment, key, value)

    if reschedule:
        start_time = as_utc(appointment.start_time)
        end_time = start_time + timedelta(minutes=appointment.duration)
        appointment.end_time = end_time
        appointment.reminder_scheduled_at = start_time - REMINDER_LEAD
        if not is_time_slot_available(db, tenant_id, appointment.doctor_id, start_time, end_time,
                                      exclude_appointment_id=appointment.id):
            db.rollback()
            raise crud.CRUDError("Time slot is not available. Please choose another time.")

    try:
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating appointment {appointment_id}: {e}")
        raise crud.CRUDError("A database error occurred while updating the appointment.")

    compliance_logger.log_user_event(actor, "APPOINTMENT_UPDATE", "APPOINTMENT", "appointment", appointment.id,
                                     details=f"Updated fields: {', '.join(sorted(data.model_fields_set))}")
    return appointment


def change_status(db: Session, tenant_id: int, appointment_id: int, new_status: models.AppointmentStatus,
                  actor: models.User, reason: Optional[str] = None) -> models.Appointment:
    appointment = get_appointment(db, tenant_id, appointment_id)
    previous = appointment.status
    now = utcnow()
    appointment.status = new_status

    try:
        if new_status == models.AppointmentStatus.arrived:
            appointment.arrived_at = now
        elif new_status == models.AppointmentStatus.in_queue:
            if not queue_service.get_active_entry_for_appointment(db, tenant_id, appointment.id):
                tenant = crud.get_tenant(db, tenant_id)
                patient = crud.get_patient(db, tenant_id, appointment.patient_id)
                queue_service.enqueue(
                    db, tenant, patient, appointment.doctor_id, actor,
                    appointment=appointment,
                    queue_type=models.QueueType.appointment,
                )
        elif new_status == models.AppointmentStatus.in_progress:
            appointment.started_at = now
        elif new_status == models.AppointmentStatus.completed:
            appointment.completed_at = now
        elif new_status == models.AppointmentStatus.cancelled:
            appointment.cancelled_at = now
            appointment.cancelled_by = actor.id
            appointment.cancellation_reason = reason

        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error changing status of appointment {appointment_id}: {e}")
        raise crud.CRUDError("A database error occurred while changing the appointment status.")
    except crud.CRUDError:
        db.rollback()
        raise

    logger.info(f"Appointment {appointment.id}: {previous.value} -> {new_status.value}")
    compliance_logger.log_user_event(actor, "APPOINTMENT_STATUS", "APPOINTMENT", "appointment", appointment.id,
                                     details=f"Status changed from {previous.value} to {new_status.value}")
    return appointment


def cancel_appointment(db: Session, tenant_id: int, appointment_id: int, actor: models.User,
                       reason: Optional[str] = None) -> models.Appointment:
    return change_status(db, tenant_id, appointment_id, models.AppointmentStatus.cancelled, actor, reason=reason)


def delete_appointment(db: Session, tenant_id: int, appointment_id: int, actor: models.User) -> None:
    appointment = get_appointment(db, tenant_id, appointment_id)
    appointment.deleted_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting appointment {appointment_id}: {e}")
        raise crud.CRUDError("A database error occurred while deleting the appointment.")

    compliance_logger.log_user_event(actor, "APPOINTMENT_DELETE", "APPOINTMENT", "appointment", appointment_id)
