# app/services/prescription_service.py
import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..core.clock import utcnow, as_utc
from ..security import encryption_service
from . import appointment_service, queue_service

logger = logging.getLogger(__name__)

DEFAULT_DRUG_UNIT = "tablets"
LOCKED_STATUSES = (models.PrescriptionStatus.dispensed, models.PrescriptionStatus.cancelled)


def generate_prescription_number(db: Session, tenant_id: int) -> str:
    return crud.next_sequence_number(db, models.Prescription.prescription_number, tenant_id, "RX")


def _drug_available_in_region(drug: models.Drug, region: models.Region) -> bool:
    regions = drug.available_in_regions or []
    return not regions or region.value in regions


def build_items(db: Session, tenant: models.Tenant, items: List[schemas.PrescriptionItemIn]) -> List[models.PrescriptionItem]:
    """Turn request items into rows, filling drug details from the catalog."""
    built = []
    for item in items:
        values = item.model_dump()
        if item.type == models.PrescriptionItemType.drug:
            if not item.drug_id:
                raise crud.CRUDError("Drug ID is required for drug items")
            drug = crud.get_drug(db, tenant.id, item.drug_id)
            if not drug.is_active:
                raise crud.CRUDError(f"Drug {drug.name} is no longer active")
            if not _drug_available_in_region(drug, tenant.region):
                raise crud.CRUDError(f"Drug {drug.name} is not available in region {tenant.region.value}")
            values.update(
                name=drug.name,
                generic_name=drug.generic_name,
                form=drug.form.value,
                strength=drug.strength,
                unit=item.unit or DEFAULT_DRUG_UNIT,
            )
        elif not item.name:
            raise crud.CRUDError(f"A name is required for {item.type.value} items")
        built.append(models.PrescriptionItem(**values))
    return built


def get_prescription(db: Session, tenant_id: int, prescription_id: int) -> models.Prescription:
    prescription = db.query(models.Prescription).filter(
        models.Prescription.id == prescription_id,
        models.Prescription.tenant_id == tenant_id,
        models.Prescription.deleted_at.is_(None),
    ).first()
    if not prescription:
        raise crud.NotFoundError("Prescription not found")
    return prescription


def _sync_queue_after_prescribing(db: Session, tenant: models.Tenant, prescription: models.Prescription) -> None:
    """Writing a prescription ends the consultation: complete the patient's in-progress queue entry.

    Runs after the prescription is committed. Failures are logged and never undo the prescription.
    """
    try:
        entry = queue_service.complete_in_progress_entry(
            db, tenant, prescription.patient_id, prescription.doctor_id, prescription.appointment_id
        )
        if entry:
            db.commit()
            logger.info(f"Completed queue entry {entry.queue_number} after prescription {prescription.prescription_number}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to complete queue entry for prescription {prescription.id}: {e}")


def create_prescription(db: Session, tenant_id: int, data: schemas.PrescriptionCreate, actor: models.User) -> models.Prescription:
    tenant = crud.get_tenant(db, tenant_id)
    crud.get_patient(db, tenant_id, data.patient_id)
    doctor_id = data.doctor_id or actor.id
    crud.get_active_doctor(db, tenant_id, doctor_id)
    if data.appointment_id:
        appointment = appointment_service.get_appointment(db, tenant_id, data.appointment_id)
        if appointment.patient_id != data.patient_id:
            raise crud.CRUDError("Appointment does not belong to this patient")

    now = utcnow()
    valid_until = as_utc(data.valid_until)
    if valid_until <= now:
        raise crud.CRUDError("Valid until must be in the future")

    items = build_items(db, tenant, data.items)
    try:
        prescription = models.Prescription(
            tenant_id=tenant_id,
            prescription_number=generate_prescription_number(db, tenant_id),
            patient_id=data.patient_id,
            doctor_id=doctor_id,
            appointment_id=data.appointment_id,
            diagnosis_encrypted=encryption_service.encrypt(data.diagnosis),
            instructions_encrypted=encryption_service.encrypt(data.instructions),
            status=data.status or models.PrescriptionStatus.active,
            valid_from=now,
            valid_until=valid_until,
            refills_allowed=data.refills_allowed,
            refills_used=0,
            created_by=actor.id,
            items=items,
        )
        db.add(prescription)
        db.commit()
        db.refresh(prescription)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating prescription: {e}")
        raise crud.CRUDError("A database error occurred while creating the prescription.")

    logger.info(f"Created new prescription {prescription.prescription_number} for patient {prescription.patient_id}")
    compliance_logger.log_user_event(actor, "PRESCRIPTION_CREATE", "PRESCRIPTION", "prescription", prescription.id,
                                     details=f"Created {prescription.prescription_number} with {len(items)} items")
    _sync_queue_after_prescribing(db, tenant, prescription)
    return prescription


def list_prescriptions(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    patient_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    status: Optional[models.PrescriptionStatus] = None,
    appointment_id: Optional[int] = None,
) -> Tuple[List[models.Prescription], int]:
    query = db.query(models.Prescription).filter(
        models.Prescription.tenant_id == tenant_id,
        models.Prescription.deleted_at.is_(None),
    )
    if patient_id:
        query = query.filter(models.Prescription.patient_id == patient_id)
    if doctor_id:
        query = query.filter(models.Prescription.doctor_id == doctor_id)
    if status:
        query = query.filter(models.Prescription.status == status)
    if appointment_id:
        query = query.filter(models.Prescription.appointment_id == appointment_id)
    query = query.order_by(models.Prescription.created_at.desc(), models.Prescription.id.desc())
    return crud.paginate(query, page, limit)


def update_prescription(db: Session, tenant_id: int, prescription_id: int, data: schemas.PrescriptionUpdate,
                        actor: models.User) -> models.Prescription:
    prescription = get_prescription(db, tenant_id, prescription_id)
    if prescription.status in LOCKED_STATUSES:
        raise crud.CRUDError(f"Cannot update a {prescription.status.value} prescription")

    update_data = data.model_dump(exclude_unset=True)
    if data.patient_id is not None and data.patient_id != prescription.patient_id:
        raise crud.CRUDError("The patient of a prescription cannot be changed")
    if "items" in update_data and data.items is not None:
        if not data.items:
            raise crud.CRUDError("A prescription needs at least one item")
        prescription.items = build_items(db, crud.get_tenant(db, tenant_id), data.items)
    if "diagnosis" in update_data:
        prescription.diagnosis_encrypted = encryption_service.encrypt(data.diagnosis)
    if "instructions" in update_data:
        prescription.instructions_encrypted = encryption_service.encrypt(data.instructions)
    if data.valid_until is not None:
        prescription.valid_until = as_utc(data.valid_until)
    if data.refills_allowed is not None:
        prescription.refills_allowed = data.refills_allowed

    try:
        db.commit()
        db.refresh(prescription)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating prescription {prescription_id}: {e}")
        raise crud.CRUDError("A database error occurred while updating the prescription.")

    compliance_logger.log_user_event(actor, "PRESCRIPTION_UPDATE", "PRESCRIPTION", "prescription", prescription.id,
                                     details=f"Updated fields: {', '.join(sorted(update_data))}")
    return prescription


def _transition(db: Session, prescription: models.Prescription, actor: models.User, action: str, detail: str) -> models.Prescription:
    try:
        db.commit()
        db.refresh(prescription)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error saving prescription {prescription.id}: {e}")
        raise crud.CRUDError("A database error occurred while saving the prescription.")
    logger.info(f"Prescription {prescription.prescription_number}: {detail}")
    compliance_logger.log_user_event(actor, action, "PRESCRIPTION", "prescription", prescription.id, details=detail)
    return prescription


def activate_prescription(db: Session, tenant_id: int, prescription_id: int, actor: models.User) -> models.Prescription:
    prescription = get_prescription(db, tenant_id, prescription_id)
    if prescription.status != models.PrescriptionStatus.draft:
        raise crud.CRUDError(f"Only draft prescriptions can be activated (current status: {prescription.status.value})")
    prescription.status = models.PrescriptionStatus.active
    return _transition(db, prescription, actor, "PRESCRIPTION_ACTIVATE", "activated")


def dispense_prescription(db: Session, tenant_id: int, prescription_id: int, actor: models.User,
                          pharmacy_notes: Optional[str] = None) -> models.Prescription:
    prescription = get_prescription(db, tenant_id, prescription_id)
    if prescription.status != models.PrescriptionStatus.active:
        raise crud.CRUDError(f"Only active prescriptions can be dispensed (current status: {prescription.status.value})")

    now = utcnow()
    if now > as_utc(prescription.valid_until):
        prescription.status = models.PrescriptionStatus.expired
        _transition(db, prescription, actor, "PRESCRIPTION_UPDATE", "expired on dispense attempt")
        raise crud.CRUDError("Prescription has expired")

    prescription.status = models.PrescriptionStatus.dispensed
    prescription.dispensed_at = now
    prescription.dispensed_by = actor.id
    prescription.pharmacy_notes = pharmacy_notes
    prescription.refills_used = (prescription.refills_used or 0) + 1
    return _transition(db, prescription, actor, "PRESCRIPTION_DISPENSE", "dispensed")


def cancel_prescription(db: Session, tenant_id: int, prescription_id: int, actor: models.User) -> models.Prescription:
    prescription = get_prescription(db, tenant_id, prescription_id)
    if prescription.status in LOCKED_STATUSES:
        raise crud.CRUDError(f"Prescription is already {prescription.status.value}")
    prescription.status = models.PrescriptionStatus.cancelled
    prescription.cancelled_at = utcnow()
    prescription.cancelled_by = actor.id
    return _transition(db, prescription, actor, "PRESCRIPTION_CANCEL", "cancelled")


def delete_prescription(db: Session, tenant_id: int, prescription_id: int, actor: models.User) -> None:
    prescription = get_prescription(db, tenant_id, prescription_id)
    prescription.deleted_at = utcnow()
    _transition(db, prescription, actor, "PRESCRIPTION_DELETE", "deleted")


def decrypt_prescription(prescription: models.Prescription) -> dict:
    """Plain-text view of a prescription for API responses."""
    return {
        "id": prescription.id,
        "prescription_number": prescription.prescription_number,
        "patient_id": prescription.patient_id,
        "doctor_id": prescription.doctor_id,
        "appointment_id": prescription.appointment_id,
        "items": prescription.items,
        "diagnosis": encryption_service.decrypt(prescription.diagnosis_encrypted),
        "instructions": encryption_service.decrypt(prescription.instructions_encrypted),
        "status": prescription.status,
        "valid_from": prescription.valid_from,
        "valid_until": prescription.valid_until,
        "refills_allowed": prescription.refills_allowed,
        "refills_used": prescription.refills_used,
        "dispensed_at": prescription.dispensed_at,
        "dispensed_by": prescription.dispensed_by,
        "pharmacy_notes": prescription.pharmacy_notes,
        "cancelled_at": prescription.cancelled_at,
        "created_at": prescription.created_at,
        "updated_at": prescription.updated_at,
    }
