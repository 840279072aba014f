# app/services/queue_service.py
"""Doctor waiting lines.

Positions are 1-based and only meaningful for `waiting` entries; an entry that
leaves the line (completed, skipped, cancelled, removed) drops to position 0.
Recalculation orders a doctor's waiting entries by priority (urgent first) and
then by arrival time. Linked appointments follow the queue entry's lifecycle.
"""
import logging
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..core.clock import utcnow, as_utc, day_bounds, minutes_between

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (
    models.QueueStatus.waiting,
    models.QueueStatus.called,
    models.QueueStatus.in_progress,
)
CLOSED_STATUSES = (models.QueueStatus.completed, models.QueueStatus.cancelled)
LEAVING_STATUSES = (
    models.QueueStatus.completed,
    models.QueueStatus.skipped,
    models.QueueStatus.cancelled,
)
# Appointments already past the waiting room keep their status when queued
_APPOINTMENT_KEEPS_STATUS = (
    models.AppointmentStatus.arrived,
    models.AppointmentStatus.in_progress,
    models.AppointmentStatus.completed,
)


def _priority_rank():
    return case({p.value: p.rank for p in models.QueuePriority}, value=models.QueueEntry.priority)


def average_consultation_time(tenant: models.Tenant) -> int:
    default = get_settings().default_consultation_minutes
    return int(crud.tenant_setting(tenant, "queue_settings", "average_consultation_time", default=default))


def calculate_estimated_wait(position: int, average_consultation_minutes: int = 30) -> int:
    """Minutes until a patient at `position` is seen. Position 1 is next in line."""
    return max(0, (position - 1) * average_consultation_minutes)


def generate_queue_number(db: Session, tenant_id: int) -> str:
    return crud.next_sequence_number(db, models.QueueEntry.queue_number, tenant_id, "Q")


def _base_query(db: Session, tenant_id: int):
    return db.query(models.QueueEntry).filter(
        models.QueueEntry.tenant_id == tenant_id,
        models.QueueEntry.deleted_at.is_(None),
    )


def recalculate_positions(db: Session, tenant: models.Tenant, doctor_id: int) -> List[models.QueueEntry]:
    """Renumber a doctor's waiting entries and refresh their wait estimates. Flushes, does not commit."""
    waiting = _base_query(db, tenant.id).filter(
        models.QueueEntry.doctor_id == doctor_id,
        models.QueueEntry.status == models.QueueStatus.waiting,
    ).all()
    waiting.sort(key=lambda e: (-e.priority.rank, as_utc(e.joined_at), e.id))

    average = average_consultation_time(tenant)
    for index, entry in enumerate(waiting, start=1):
        entry.position = index
        entry.estimated_wait_time = calculate_estimated_wait(index, average)
    db.flush()
    return waiting


def get_queue_entry(db: Session, tenant_id: int, entry_id: int) -> models.QueueEntry:
    entry = _base_query(db, tenant_id).filter(models.QueueEntry.id == entry_id).first()
    if not entry:
        raise crud.NotFoundError("Queue entry not found")
    return entry


def get_active_entry_for_appointment(db: Session, tenant_id: int, appointment_id: int) -> Optional[models.QueueEntry]:
    return _base_query(db, tenant_id).filter(
        models.QueueEntry.appointment_id == appointment_id,
        models.QueueEntry.status.in_(ACTIVE_STATUSES),
    ).first()


def _get_appointment(db: Session, tenant_id: int, appointment_id: int) -> models.Appointment:
    appointment = db.query(models.Appointment).filter(
        models.Appointment.id == appointment_id,
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.deleted_at.is_(None),
    ).first()
    if not appointment:
        raise crud.NotFoundError("Appointment not found")
    return appointment


def enqueue(
    db: Session,
    tenant: models.Tenant,
    patient: models.Patient,
    doctor_id: int,
    actor: models.User,
    appointment: Optional[models.Appointment] = None,
    queue_type: models.QueueType = models.QueueType.walk_in,
    priority: models.QueuePriority = models.QueuePriority.normal,
    display_name: Optional[str] = None,
    notes: Optional[str] = None,
) -> models.QueueEntry:
    """Put a patient in a doctor's line and renumber it. Flushes, does not commit."""
    max_length = crud.tenant_setting(tenant, "queue_settings", "max_queue_length")
    if max_length:
        waiting = _base_query(db, tenant.id).filter(
            models.QueueEntry.doctor_id == doctor_id,
            models.QueueEntry.status == models.QueueStatus.waiting,
        ).count()
        if waiting >= int(max_length):
            raise crud.CRUDError(f"The queue for this doctor is full ({max_length} patients waiting)")

    entry = models.QueueEntry(
        tenant_id=tenant.id,
        queue_number=generate_queue_number(db, tenant.id),
        patient_id=patient.id,
        doctor_id=doctor_id,
        appointment_id=appointment.id if appointment else None,
        type=queue_type,
        priority=priority,
        status=models.QueueStatus.waiting,
        position=0,
        joined_at=utcnow(),
        display_name=display_name or patient.full_name,
        notes=notes,
        is_active=True,
        created_by=actor.id,
    )
    db.add(entry)

    if appointment and appointment.status not in _APPOINTMENT_KEEPS_STATUS:
        appointment.status = models.AppointmentStatus.in_queue

    db.flush()
    recalculate_positions(db, tenant, doctor_id)
    return entry


def create_queue_entry(db: Session, tenant_id: int, data: schemas.QueueEntryCreate, actor: models.User) -> models.QueueEntry:
    tenant = crud.get_tenant(db, tenant_id)
    patient = crud.get_patient(db, tenant_id, data.patient_id)
    crud.get_active_doctor(db, tenant_id, data.doctor_id)

    if data.type == models.QueueType.appointment and not data.appointment_id:
        raise crud.CRUDError("Appointment ID is required for appointment-type queue entries")

    appointment = None
    if data.appointment_id:
        appointment = _get_appointment(db, tenant_id, data.appointment_id)
        if appointment.patient_id != patient.id or appointment.doctor_id != data.doctor_id:
            raise crud.CRUDError("Appointment does not match the given patient and doctor")
        if get_active_entry_for_appointment(db, tenant_id, appointment.id):
            raise crud.CRUDError("This appointment is already in the queue")

    try:
        entry = enqueue(
            db, tenant, patient, data.doctor_id, actor,
            appointment=appointment,
            queue_type=data.type,
            priority=data.priority,
            display_name=data.display_name,
            notes=data.notes,
        )
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating queue entry: {e}")
        raise crud.CRUDError("A database error occurred while adding the patient to the queue.")

    logger.info(f"Queued patient {patient.id} as {entry.queue_number} for doctor {entry.doctor_id} at position {entry.position}")
    compliance_logger.log_user_event(
        actor, "QUEUE_CREATE", "QUEUE", "queue_entry", entry.id,
        details=f"Added {entry.queue_number} to queue of doctor {entry.doctor_id}",
    )
    return entry


def list_queue_entries(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.QueueStatus] = None,
    priority: Optional[models.QueuePriority] = None,
    queue_type: Optional[models.QueueType] = None,
    appointment_id: Optional[int] = None,
    on_date: Optional[date] = None,
    is_active: Optional[bool] = None,
) -> Tuple[List[models.QueueEntry], int]:
    query = _base_query(db, tenant_id)
    if doctor_id:
        query = query.filter(models.QueueEntry.doctor_id == doctor_id)
    if patient_id:
        query = query.filter(models.QueueEntry.patient_id == patient_id)
    if status:
        query = query.filter(models.QueueEntry.status == status)
    if priority:
        query = query.filter(models.QueueEntry.priority == priority)
    if queue_type:
        query = query.filter(models.QueueEntry.type == queue_type)
    if appointment_id:
        query = query.filter(models.QueueEntry.appointment_id == appointment_id)
    if on_date:
        start, end = day_bounds(on_date)
        query = query.filter(models.QueueEntry.joined_at >= start, models.QueueEntry.joined_at < end)
    if is_active is not None:
        query = query.filter(models.QueueEntry.is_active.is_(is_active))

    if status == models.QueueStatus.waiting:
        query = query.order_by(_priority_rank().desc(), models.QueueEntry.position, models.QueueEntry.joined_at)
    else:
        query = query.order_by(models.QueueEntry.joined_at.desc(), models.QueueEntry.id.desc())
    return crud.paginate(query, page, limit)


def get_doctor_queue(db: Session, tenant_id: int, doctor_id: int) -> List[models.QueueEntry]:
    return _base_query(db, tenant_id).filter(
        models.QueueEntry.doctor_id == doctor_id,
        models.QueueEntry.status == models.QueueStatus.waiting,
    ).order_by(_priority_rank().desc(), models.QueueEntry.position, models.QueueEntry.joined_at).all()


def update_queue_entry(db: Session, tenant_id: int, entry_id: int, data: schemas.QueueEntryUpdate,
                       actor: models.User) -> models.QueueEntry:
    entry = get_queue_entry(db, tenant_id, entry_id)
    if entry.status in CLOSED_STATUSES:
        raise crud.CRUDError(f"Cannot update a {entry.status.value} queue entry")

    update_data = data.model_dump(exclude_unset=True)
    for key in ("priority", "position", "is_active"):
        if key in update_data and update_data[key] is None:
            update_data.pop(key)
    for key, value in update_data.items():
        setattr(entry, key, value)

    try:
        if "priority" in update_data or "position" in update_data:
            recalculate_positions(db, crud.get_tenant(db, tenant_id), entry.doctor_id)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating queue entry {entry_id}: {e}")
        raise crud.CRUDError("A database error occurred while updating the queue entry.")

    compliance_logger.log_user_event(actor, "QUEUE_UPDATE", "QUEUE", "queue_entry", entry.id,
                                     details=f"Updated fields: {', '.join(sorted(update_data))}")
    return entry


def change_queue_status(db: Session, tenant_id: int, entry_id: int, new_status: models.QueueStatus,
                        actor: models.User, notes: Optional[str] = None) -> models.QueueEntry:
    entry = get_queue_entry(db, tenant_id, entry_id)
    if entry.status in CLOSED_STATUSES:
        raise crud.CRUDError(f"Queue entry is already {entry.status.value}")

    previous = entry.status
    now = utcnow()
    appointment = entry.appointment if entry.appointment_id else None
    entry.status = new_status

    if new_status == models.QueueStatus.called:
        entry.called_at = now
        entry.called_by = actor.id
    elif new_status == models.QueueStatus.in_progress:
        entry.started_at = now
        entry.actual_wait_time = max(0, minutes_between(entry.joined_at, now))
        if appointment:
            appointment.status = models.AppointmentStatus.in_progress
            appointment.started_at = now
    elif new_status == models.QueueStatus.completed:
        entry.completed_at = now
        entry.position = 0
        if appointment:
            appointment.status = models.AppointmentStatus.completed
            appointment.completed_at = now
    elif new_status == models.QueueStatus.skipped:
        entry.position = 0
    elif new_status == models.QueueStatus.cancelled:
        entry.position = 0
        if appointment:
            appointment.status = models.AppointmentStatus.cancelled
            appointment.cancelled_at = now
            appointment.cancelled_by = actor.id

    if notes:
        entry.notes = notes

    try:
        # Any move into or out of the waiting line shifts everyone behind it
        if new_status in LEAVING_STATUSES or models.QueueStatus.waiting in (previous, new_status):
            db.flush()
            recalculate_positions(db, crud.get_tenant(db, tenant_id), entry.doctor_id)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error changing status of queue entry {entry_id}: {e}")
        raise crud.CRUDError("A database error occurred while changing the queue status.")

    logger.info(f"Queue entry {entry.queue_number}: {previous.value} -> {new_status.value}")
    compliance_logger.log_user_event(
        actor, "QUEUE_STATUS", "QUEUE", "queue_entry", entry.id,
        details=f"Status changed from {previous.value} to {new_status.value}",
    )
    return entry


def reorder_queue(db: Session, tenant_id: int, doctor_id: int, entry_ids: List[int],
                  actor: models.User) -> List[models.QueueEntry]:
    """Set positions from an explicit ordering. Every id must be one of this doctor's entries."""
    if len(set(entry_ids)) != len(entry_ids):
        raise crud.CRUDError("Queue entry IDs must not repeat")
    tenant = crud.get_tenant(db, tenant_id)
    entries = _base_query(db, tenant_id).filter(
        models.QueueEntry.id.in_(entry_ids),
        models.QueueEntry.doctor_id == doctor_id,
    ).all()
    if len(entries) != len(entry_ids):
        raise crud.CRUDError("Some queue entries do not belong to this doctor")

    by_id = {entry.id: entry for entry in entries}
    average = average_consultation_time(tenant)
    for index, entry_id in enumerate(entry_ids, start=1):
        by_id[entry_id].position = index
        by_id[entry_id].estimated_wait_time = calculate_estimated_wait(index, average)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error reordering queue for doctor {doctor_id}: {e}")
        raise crud.CRUDError("A database error occurred while reordering the queue.")

    compliance_logger.log_user_event(actor, "QUEUE_REORDER", "QUEUE", "doctor_queue", doctor_id,
                                     details=f"Reordered {len(entry_ids)} entries")
    return get_doctor_queue(db, tenant_id, doctor_id)


def remove_queue_entry(db: Session, tenant_id: int, entry_id: int, actor: models.User) -> None:
    entry = get_queue_entry(db, tenant_id, entry_id)
    now = utcnow()
    entry.deleted_at = now
    entry.is_active = False
    entry.status = models.QueueStatus.cancelled
    entry.position = 0

    appointment = entry.appointment if entry.appointment_id else None
    if appointment and appointment.status != models.AppointmentStatus.completed:
        appointment.status = models.AppointmentStatus.scheduled

    try:
        db.flush()
        recalculate_positions(db, crud.get_tenant(db, tenant_id), entry.doctor_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error removing queue entry {entry_id}: {e}")
        raise crud.CRUDError("A database error occurred while removing the queue entry.")

    compliance_logger.log_user_event(actor, "QUEUE_DELETE", "QUEUE", "queue_entry", entry_id,
                                     details=f"Removed {entry.queue_number} from the queue")


def complete_in_progress_entry(db: Session, tenant: models.Tenant, patient_id: int, doctor_id: int,
                               appointment_id: Optional[int] = None) -> Optional[models.QueueEntry]:
    """Close the consultation a prescription was written in. Flushes, does not commit."""
    query = _base_query(db, tenant.id).filter(
        models.QueueEntry.patient_id == patient_id,
        models.QueueEntry.doctor_id == doctor_id,
        models.QueueEntry.status == models.QueueStatus.in_progress,
    )
    if appointment_id:
        query = query.filter(models.QueueEntry.appointment_id == appointment_id)
    entry = query.order_by(models.QueueEntry.joined_at.desc()).first()
    if not entry:
        return None

    now = utcnow()
    entry.status = models.QueueStatus.completed
    entry.completed_at = now
    entry.position = 0
    if entry.appointment_id and entry.appointment:
        entry.appointment.status = models.AppointmentStatus.completed
        entry.appointment.completed_at = now
    db.flush()
    recalculate_positions(db, tenant, doctor_id)
    return entry


def get_queue_statistics(db: Session, tenant_id: int, doctor_id: Optional[int] = None,
                         today: Optional[date] = None) -> dict:
    query = _base_query(db, tenant_id)
    if doctor_id:
        query = query.filter(models.QueueEntry.doctor_id == doctor_id)
    day_start, day_end = day_bounds(today or utcnow().date())

    def count(status):
        return query.filter(models.QueueEntry.status == status).count()

    completed_waits = [
        wait for (wait,) in query.filter(
            models.QueueEntry.status == models.QueueStatus.completed,
            models.QueueEntry.completed_at >= day_start,
            models.QueueEntry.completed_at < day_end,
            models.QueueEntry.actual_wait_time.isnot(None),
        ).with_entities(models.QueueEntry.actual_wait_time).all()
    ]
    average = round(sum(completed_waits) / len(completed_waits)) if completed_waits else 0

    return {
        "waiting": count(models.QueueStatus.waiting),
        "called": count(models.QueueStatus.called),
        "in_progress": count(models.QueueStatus.in_progress),
        "average_wait_time": average,
        "total_today": query.filter(
            models.QueueEntry.joined_at >= day_start,
            models.QueueEntry.joined_at < day_end,
        ).count(),
    }
