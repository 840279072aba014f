# tests/test_appointment_service.py
from datetime import datetime, timedelta, timezone

import pytest

from app import crud, models, schemas
from app.services import appointment_service, queue_service

TOMORROW_9AM = (datetime.now(timezone.utc) + timedelta(days=1)).replace(hour=9, minute=0, second=0, microsecond=0)


def book(db, tenant, patient, doctor, actor, start=TOMORROW_9AM, **extra):
    return appointment_service.create_appointment(
        db, tenant.id,
        schemas.AppointmentCreate(patient_id=patient.id, doctor_id=doctor.id, start_time=start, **extra),
        actor,
    )


def test_create_fills_defaults(db, tenant, patient, doctor, receptionist):
    appointment = book(db, tenant, patient, doctor, receptionist)

    assert appointment.status == models.AppointmentStatus.scheduled
    assert appointment.duration == 30
    assert appointment.appointment_date == TOMORROW_9AM.date()
    assert appointment.end_time.replace(tzinfo=timezone.utc) == TOMORROW_9AM + timedelta(minutes=30)
    assert appointment.reminder_scheduled_at.replace(tzinfo=timezone.utc) == TOMORROW_9AM - timedelta(hours=24)
    assert appointment.created_by == receptionist.id


def test_overlapping_booking_is_rejected(db, tenant, patient, doctor, receptionist):
    book(db, tenant, patient, doctor, receptionist, duration=60)

    with pytest.raises(crud.CRUDError, match="not available"):
        book(db, tenant, patient, doctor, receptionist, start=TOMORROW_9AM + timedelta(minutes=30))


def test_back_to_back_bookings_are_allowed(db, tenant, patient, doctor, receptionist):
    book(db, tenant, patient, doctor, receptionist)
    second = book(db, tenant, patient, doctor, receptionist, start=TOMORROW_9AM + timedelta(minutes=30))
    assert second.id


def test_other_doctor_is_free(db, tenant, patient, doctor, second_doctor, receptionist):
    book(db, tenant, patient, doctor, receptionist)
    assert book(db, tenant, patient, second_doctor, receptionist).doctor_id == second_doctor.id


def test_cancelled_appointment_frees_the_slot(db, tenant, patient, doctor, receptionist):
    first = book(db, tenant, patient, doctor, receptionist)
    appointment_service.cancel_appointment(db, tenant.id, first.id, receptionist, reason="Patient called")

    db.refresh(first)
    assert first.cancellation_reason == "Patient called"
    assert first.cancelled_by == receptionist.id
    assert book(db, tenant, patient, doctor, receptionist).id != first.id


def test_end_before_start_is_rejected(db, tenant, patient, doctor, receptionist):
    with pytest.raises(crud.CRUDError):
        book(db, tenant, patient, doctor, receptionist, end_time=TOMORROW_9AM - timedelta(minutes=5))


def test_unknown_patient_or_doctor(db, tenant, patient, doctor, receptionist):
    with pytest.raises(crud.NotFoundError):
        appointment_service.create_appointment(
            db, tenant.id,
            schemas.AppointmentCreate(patient_id=9999, doctor_id=doctor.id, start_time=TOMORROW_9AM),
            receptionist,
        )
    with pytest.raises(crud.NotFoundError):
        appointment_service.create_appointment(
            db, tenant.id,
            schemas.AppointmentCreate(patient_id=patient.id, doctor_id=9999, start_time=TOMORROW_9AM),
            receptionist,
        )


def test_reschedule_checks_availability(db, tenant, patient, doctor, receptionist):
    first = book(db, tenant, patient, doctor, receptionist)
    second = book(db, tenant, patient, doctor, receptionist, start=TOMORROW_9AM + timedelta(hours=1))

    with pytest.raises(crud.CRUDError):
        appointment_service.update_appointment(
            db, tenant.id, second.id, schemas.AppointmentUpdate(start_time=TOMORROW_9AM + timedelta(minutes=15)),
            receptionist,
        )

    moved = appointment_service.update_appointment(
        db, tenant.id, first.id, schemas.AppointmentUpdate(duration=45), receptionist
    )
    assert moved.duration == 45
    assert moved.end_time.replace(tzinfo=timezone.utc) == TOMORROW_9AM + timedelta(minutes=45)


def test_completed_appointment_is_locked(db, tenant, patient, doctor, receptionist):
    appointment = book(db, tenant, patient, doctor, receptionist)
    appointment_service.change_status(db, tenant.id, appointment.id, models.AppointmentStatus.completed, doctor)

    with pytest.raises(crud.CRUDError):
        appointment_service.update_appointment(
            db, tenant.id, appointment.id, schemas.AppointmentUpdate(notes="late note"), receptionist
        )


def test_in_queue_status_enqueues_patient(db, tenant, patient, doctor, receptionist):
    appointment = book(db, tenant, patient, doctor, receptionist)

    updated = appointment_service.change_status(
        db, tenant.id, appointment.id, models.AppointmentStatus.in_queue, receptionist
    )

    assert updated.status == models.AppointmentStatus.in_queue
    entry = queue_service.get_active_entry_for_appointment(db, tenant.id, appointment.id)
    assert entry is not None
    assert entry.type == models.QueueType.appointment
    assert entry.position == 1

    # a second transition does not queue the patient twice
    appointment_service.change_status(db, tenant.id, appointment.id, models.AppointmentStatus.in_queue, receptionist)
    entries, total = queue_service.list_queue_entries(db, tenant.id, appointment_id=appointment.id)
    assert total == 1


def test_arrival_is_timestamped(db, tenant, patient, doctor, receptionist):
    appointment = book(db, tenant, patient, doctor, receptionist)
    arrived = appointment_service.change_status(db, tenant.id, appointment.id, models.AppointmentStatus.arrived, receptionist)
    assert arrived.arrived_at is not None


def test_list_filters(db, tenant, patient, doctor, second_doctor, receptionist):
    book(db, tenant, patient, doctor, receptionist)
    book(db, tenant, patient, second_doctor, receptionist)
    book(db, tenant, patient, doctor, receptionist, start=TOMORROW_9AM + timedelta(days=1))

    items, total = appointment_service.list_appointments(db, tenant.id, doctor_id=doctor.id)
    assert total == 2
    assert items[0].start_time < items[1].start_time

    items, total = appointment_service.list_appointments(db, tenant.id, on_date=TOMORROW_9AM.date())
    assert total == 2


def test_deleted_appointment_is_gone(db, tenant, patient, doctor, receptionist):
    appointment = book(db, tenant, patient, doctor, receptionist)
    appointment_service.delete_appointment(db, tenant.id, appointment.id, receptionist)
    with pytest.raises(crud.NotFoundError):
        appointment_service.get_appointment(db, tenant.id, appointment.id)
