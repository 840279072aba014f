# app/crud.py - tenant-scoped CRUD for tenants, users, patients, drugs and audit logs
import logging
import re
from datetime import date, datetime
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import or_, func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .core.clock import utcnow, day_bounds, add_months
from .security import get_password_hash, encryption_service
from .services.tax_engine import format_amount

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


class NotFoundError(CRUDError):
    pass


class LimitExceededError(CRUDError):
    """Raised when a subscription limit or feature gate refuses an operation."""
    pass


_TRAILING_NUMBER = re.compile(r"(\d+)$")


def next_sequence_number(db: Session, column, tenant_id: int, prefix: str, width: int = 4) -> str:
    """Next `PREFIX-0001` style number for a tenant: the highest existing number plus one.

    Soft-deleted rows are counted so numbers are never handed out twice.
    """
    model = column.class_
    values = db.query(column).filter(model.tenant_id == tenant_id, column.like(f"{prefix}-%")).all()
    highest = 0
    for (value,) in values:
        match = _TRAILING_NUMBER.search(value or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}-{highest + 1:0{width}d}"


def paginate(query, page: int, limit: int) -> Tuple[List[Any], int]:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, total


# ==================== TENANTS ====================

def get_tenant(db: Session, tenant_id: int) -> models.Tenant:
    tenant = db.query(models.Tenant).filter(models.Tenant.id == tenant_id).first()
    if not tenant:
        raise NotFoundError("Tenant not found")
    return tenant


def get_tenant_by_slug(db: Session, slug: str) -> Optional[models.Tenant]:
    return db.query(models.Tenant).filter(models.Tenant.slug == slug).first()


def get_tenants(db: Session, skip: int = 0, limit: int = 100) -> List[models.Tenant]:
    return db.query(models.Tenant).order_by(models.Tenant.id).offset(skip).limit(limit).all()


def create_tenant(db: Session, tenant: schemas.TenantCreate) -> models.Tenant:
    if get_tenant_by_slug(db, tenant.slug):
        raise CRUDError(f"A clinic with slug '{tenant.slug}' already exists")
    try:
        db_tenant = models.Tenant(
            name=tenant.name,
            slug=tenant.slug,
            region=tenant.region,
            settings=tenant.settings.model_dump(exclude_none=True),
            is_active=True,
        )
        db.add(db_tenant)
        db.commit()
        db.refresh(db_tenant)
        logger.info(f"Created tenant {db_tenant.id} ({db_tenant.slug})")
        return db_tenant
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating tenant: {e}")
        raise CRUDError("A database error occurred while creating the clinic.")


def update_tenant(db: Session, tenant_id: int, tenant_update: schemas.TenantUpdate) -> models.Tenant:
    db_tenant = get_tenant(db, tenant_id)
    update_data = tenant_update.model_dump(exclude_unset=True)
    if "settings" in update_data and update_data["settings"] is not None:
        merged = dict(db_tenant.settings or {})
        merged.update(tenant_update.settings.model_dump(exclude_none=True))
        update_data["settings"] = merged
    for key, value in update_data.items():
        setattr(db_tenant, key, value)
    try:
        db.commit()
        db.refresh(db_tenant)
        return db_tenant
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating tenant {tenant_id}: {e}")
        raise CRUDError("A database error occurred while updating the clinic.")


def tenant_setting(tenant: models.Tenant, *path: str, default=None):
    """Read a nested value from tenant.settings, e.g. tenant_setting(t, "queue_settings", "max_queue_length")."""
    node: Any = tenant.settings or {}
    for key in path:
        if not isinstance(node, dict) or node.get(key) is None:
            return default
        node = node[key]
    return node


# ==================== USERS ====================

def get_user(db: Session, user_id: int, tenant_id: Optional[int] = None) -> Optional[models.User]:
    query = db.query(models.User).filter(models.User.id == user_id, models.User.deleted_at.is_(None))
    if tenant_id is not None:
        query = query.filter(models.User.tenant_id == tenant_id)
    return query.first()


def get_user_by_identifier(db: Session, identifier: str) -> Optional[models.User]:
    """Look a user up by username or email."""
    return db.query(models.User).filter(
        or_(models.User.username == identifier, models.User.email == identifier.lower()),
        models.User.deleted_at.is_(None),
    ).first()


def get_users(db: Session, tenant_id: int, skip: int = 0, limit: int = 100,
              role: Optional[models.UserRole] = None) -> List[models.User]:
    query = db.query(models.User).filter(models.User.tenant_id == tenant_id, models.User.deleted_at.is_(None))
    if role:
        query = query.filter(models.User.role == role)
    return query.order_by(models.User.id).offset(skip).limit(limit).all()


def get_active_doctor(db: Session, tenant_id: int, doctor_id: int) -> models.User:
    doctor = db.query(models.User).filter(
        models.User.id == doctor_id,
        models.User.tenant_id == tenant_id,
        models.User.is_active.is_(True),
        models.User.deleted_at.is_(None),
    ).first()
    if not doctor:
        raise NotFoundError("Doctor not found")
    return doctor


def count_active_users(db: Session, tenant_id: int) -> int:
    return db.query(models.User).filter(
        models.User.tenant_id == tenant_id,
        models.User.is_active.is_(True),
        models.User.deleted_at.is_(None),
    ).count()


def create_user(db: Session, user: schemas.UserCreate, tenant_id: Optional[int]) -> models.User:
    if get_user_by_identifier(db, user.username) or get_user_by_identifier(db, user.email):
        raise CRUDError("Username or email already registered")
    try:
        db_user = models.User(
            tenant_id=tenant_id,
            username=user.username,
            email=user.email.lower(),
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            password_hash=get_password_hash(user.password),
            is_active=True,
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        logger.info(f"Created user {db_user.id} with role {db_user.role.value} in tenant {tenant_id}")
        return db_user
    except IntegrityError:
        db.rollback()
        raise CRUDError("Username or email already registered")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user: {e}")
        raise CRUDError("A database error occurred while creating the user.")


def update_user(db: Session, tenant_id: int, user_id: int, user_update: schemas.UserUpdate) -> models.User:
    db_user = get_user(db, user_id, tenant_id)
    if not db_user:
        raise NotFoundError("User not found")
    update_data = user_update.model_dump(exclude_unset=True)
    if "password" in update_data:
        db_user.password_hash = get_password_hash(update_data.pop("password"))
    for key, value in update_data.items():
        setattr(db_user, key, value)
    try:
        db.commit()
        db.refresh(db_user)
        return db_user
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating user {user_id}: {e}")
        raise CRUDError("A database error occurred while updating the user.")


def delete_user(db: Session, tenant_id: int, user_id: int) -> None:
    db_user = get_user(db, user_id, tenant_id)
    if not db_user:
        raise NotFoundError("User not found")
    db_user.deleted_at = utcnow()
    db_user.is_active = False
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting user {user_id}: {e}")
        raise CRUDError("A database error occurred while deleting the user.")


# ==================== PATIENTS ====================

_PATIENT_PHI_FIELDS = ("medical_history", "allergies", "current_medications")


def get_patient(db: Session, tenant_id: int, patient_id: int) -> models.Patient:
    patient = db.query(models.Patient).filter(
        models.Patient.id == patient_id,
        models.Patient.tenant_id == tenant_id,
        models.Patient.deleted_at.is_(None),
    ).first()
    if not patient:
        raise NotFoundError("Patient not found")
    return patient


def count_patients(db: Session, tenant_id: int) -> int:
    return db.query(models.Patient).filter(
        models.Patient.tenant_id == tenant_id,
        models.Patient.deleted_at.is_(None),
    ).count()


def _apply_patient_phi(db_patient: models.Patient, data: Dict[str, Any]) -> None:
    if "phone" in data:
        phone = data.pop("phone")
        db_patient.phone_encrypted = encryption_service.encrypt(phone)
        db_patient.phone_hash = encryption_service.hash_for_lookup(phone)
    if "email" in data:
        email = data.pop("email")
        db_patient.email_encrypted = encryption_service.encrypt(email)
        db_patient.email_hash = encryption_service.hash_for_lookup(email)
    for field in _PATIENT_PHI_FIELDS:
        if field in data:
            setattr(db_patient, f"{field}_encrypted", encryption_service.encrypt(data.pop(field)))


def create_patient(db: Session, tenant_id: int, patient: schemas.PatientCreate, created_by: Optional[int] = None) -> models.Patient:
    data = patient.model_dump()
    patient_code = data.pop("patient_code", None)
    if patient_code:
        exists = db.query(models.Patient.id).filter(
            models.Patient.tenant_id == tenant_id,
            models.Patient.patient_code == patient_code,
        ).first()
        if exists:
            raise CRUDError(f"Patient ID {patient_code} already exists")
    else:
        patient_code = next_sequence_number(db, models.Patient.patient_code, tenant_id, "PAT")

    if data.get("address") is not None:
        data["address"] = patient.address.model_dump(exclude_none=True)

    try:
        db_patient = models.Patient(tenant_id=tenant_id, patient_code=patient_code, created_by=created_by)
        _apply_patient_phi(db_patient, data)
        for key, value in data.items():
            setattr(db_patient, key, value)
        db.add(db_patient)
        db.commit()
        db.refresh(db_patient)
        logger.info(f"Created patient {db_patient.id} ({patient_code}) in tenant {tenant_id}")
        return db_patient
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating patient: {e}")
        raise CRUDError("A database error occurred while creating the patient.")


def get_patients(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    gender: Optional[models.Gender] = None,
    blood_group: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> Tuple[List[models.Patient], int]:
    """List patients, newest first. Search matches name or code, or an exact phone/email via the lookup hash."""
    query = db.query(models.Patient).filter(
        models.Patient.tenant_id == tenant_id,
        models.Patient.deleted_at.is_(None),
    )
    if is_active is not None:
        query = query.filter(models.Patient.is_active.is_(is_active))
    if gender:
        query = query.filter(models.Patient.gender == gender)
    if blood_group:
        query = query.filter(models.Patient.blood_group == blood_group)
    if search:
        term = f"%{search.strip()}%"
        lookup = encryption_service.hash_for_lookup(search)
        query = query.filter(or_(
            models.Patient.first_name.ilike(term),
            models.Patient.last_name.ilike(term),
            models.Patient.patient_code.ilike(term),
            models.Patient.phone_hash == lookup,
            models.Patient.email_hash == lookup,
        ))
    query = query.order_by(models.Patient.created_at.desc(), models.Patient.id.desc())
    return paginate(query, page, limit)


def update_patient(db: Session, tenant_id: int, patient_id: int, patient_update: schemas.PatientUpdate) -> models.Patient:
    db_patient = get_patient(db, tenant_id, patient_id)
    data = patient_update.model_dump(exclude_unset=True)
    # Required columns cannot be cleared
    for key in ("first_name", "last_name", "date_of_birth", "gender", "phone", "is_active"):
        if key in data and data[key] is None:
            data.pop(key)
    if data.get("address") is not None:
        data["address"] = patient_update.address.model_dump(exclude_none=True)
    _apply_patient_phi(db_patient, data)
    for key, value in data.items():
        setattr(db_patient, key, value)
    try:
        db.commit()
        db.refresh(db_patient)
        return db_patient
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating patient {patient_id}: {e}")
        raise CRUDError("A database error occurred while updating the patient.")


def delete_patient(db: Session, tenant_id: int, patient_id: int) -> None:
    db_patient = get_patient(db, tenant_id, patient_id)
    db_patient.deleted_at = utcnow()
    db_patient.is_active = False
    try:
        db.commit()
        logger.info(f"Soft-deleted patient {patient_id} in tenant {tenant_id}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting patient {patient_id}: {e}")
        raise CRUDError("A database error occurred while deleting the patient.")


def decrypt_patient(patient: models.Patient) -> Dict[str, Any]:
    """Plain-text view of a patient for API responses."""
    return {
        "id": patient.id,
        "patient_code": patient.patient_code,
        "first_name": patient.first_name,
        "last_name": patient.last_name,
        "date_of_birth": patient.date_of_birth,
        "gender": patient.gender,
        "blood_group": patient.blood_group,
        "phone": encryption_service.decrypt(patient.phone_encrypted),
        "email": encryption_service.decrypt(patient.email_encrypted),
        "address": patient.address,
        "medical_history": encryption_service.decrypt(patient.medical_history_encrypted),
        "allergies": encryption_service.decrypt(patient.allergies_encrypted),
        "current_medications": encryption_service.decrypt(patient.current_medications_encrypted),
        "notes": patient.notes,
        "is_active": patient.is_active,
        "created_at": patient.created_at,
        "updated_at": patient.updated_at,
    }


# ==================== DRUGS ====================

def create_drug(db: Session, drug: schemas.DrugCreate, tenant_id: Optional[int]) -> models.Drug:
    try:
        db_drug = models.Drug(tenant_id=tenant_id, **drug.model_dump())
        db.add(db_drug)
        db.commit()
        db.refresh(db_drug)
        return db_drug
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating drug: {e}")
        raise CRUDError("A database error occurred while creating the drug.")


def get_drug(db: Session, tenant_id: int, drug_id: int) -> models.Drug:
    """A drug visible to the tenant: its own catalog or the global one."""
    drug = db.query(models.Drug).filter(
        models.Drug.id == drug_id,
        or_(models.Drug.tenant_id == tenant_id, models.Drug.tenant_id.is_(None)),
    ).first()
    if not drug:
        raise NotFoundError(f"Drug {drug_id} not found")
    return drug


def search_drugs(db: Session, tenant_id: int, search: Optional[str] = None, limit: int = 50) -> List[models.Drug]:
    query = db.query(models.Drug).filter(
        or_(models.Drug.tenant_id == tenant_id, models.Drug.tenant_id.is_(None)),
        models.Drug.is_active.is_(True),
    )
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(models.Drug.name.ilike(term), models.Drug.generic_name.ilike(term)))
    return query.order_by(models.Drug.name).limit(limit).all()


# ==================== AUDIT LOGS ====================

def get_audit_logs(
    db: Session,
    tenant_id: int,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = None,
    action: Optional[models.AuditAction] = None,
    resource_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[models.AuditLog]:
    try:
        query = db.query(models.AuditLog).filter(models.AuditLog.tenant_id == tenant_id)
        if user_id:
            query = query.filter(models.AuditLog.user_id == user_id)
        if action:
            query = query.filter(models.AuditLog.action == action)
        if resource_type:
            query = query.filter(models.AuditLog.resource_type == resource_type)
        if start_date:
            query = query.filter(models.AuditLog.timestamp >= day_bounds(start_date)[0])
        if end_date:
            query = query.filter(models.AuditLog.timestamp < day_bounds(end_date)[1])
        return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching audit logs: {e}")
        raise CRUDError("A database error occurred while fetching audit logs.")


# ==================== DASHBOARD ====================

def get_dashboard_stats(db: Session, tenant_id: int, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or utcnow().date()
    day_start, day_end = day_bounds(today)
    month_start = datetime.combine(today.replace(day=1), datetime.min.time(), tzinfo=day_start.tzinfo)
    next_month_start = add_months(month_start, 1)
    tenant = get_tenant(db, tenant_id)
    currency = tenant_setting(tenant, "currency", default="USD")

    today_appointments = db.query(models.Appointment).filter(
        models.Appointment.tenant_id == tenant_id,
        models.Appointment.appointment_date == today,
        models.Appointment.status != models.AppointmentStatus.arrived,
        models.Appointment.deleted_at.is_(None),
    ).count()

    month_revenue = db.query(func.coalesce(func.sum(models.Invoice.total_amount), 0)).filter(
        models.Invoice.tenant_id == tenant_id,
        models.Invoice.invoice_date >= month_start,
        models.Invoice.invoice_date < next_month_start,
        models.Invoice.status != models.InvoiceStatus.cancelled,
        models.Invoice.deleted_at.is_(None),
    ).scalar()

    pending_invoices = db.query(models.Invoice).filter(
        models.Invoice.tenant_id == tenant_id,
        models.Invoice.status.in_([models.InvoiceStatus.pending, models.InvoiceStatus.partial]),
        models.Invoice.deleted_at.is_(None),
    ).count()

    queue_waiting = db.query(models.QueueEntry).filter(
        models.QueueEntry.tenant_id == tenant_id,
        models.QueueEntry.status == models.QueueStatus.waiting,
        models.QueueEntry.deleted_at.is_(None),
        models.QueueEntry.joined_at >= day_start,
        models.QueueEntry.joined_at < day_end,
    ).count()

    return {
        "today_appointments": today_appointments,
        "month_revenue": format_amount(int(month_revenue or 0), currency),
        "currency": currency,
        "total_patients": count_patients(db, tenant_id),
        "pending_invoices": pending_invoices,
        "queue_waiting": queue_waiting,
    }
