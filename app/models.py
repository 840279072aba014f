# app/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text,
    Enum as SQLAlchemyEnum, Boolean, LargeBinary, JSON, Index, Float,
    UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .core.clock import utcnow
from .database import Base
import enum


class Region(str, enum.Enum):
    US = "US"
    EU = "EU"
    APAC = "APAC"
    IN = "IN"
    ME = "ME"
    CA = "CA"
    AU = "AU"


class UserRole(str, enum.Enum):
    super_admin = "super_admin"
    clinic_admin = "clinic_admin"
    doctor = "doctor"
    nurse = "nurse"
    receptionist = "receptionist"
    accountant = "accountant"
    pharmacist = "pharmacist"


class Gender(str, enum.Enum):
    male = "male"
    female = "female"
    other = "other"
    prefer_not_to_say = "prefer_not_to_say"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    arrived = "arrived"
    in_queue = "in_queue"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class AppointmentType(str, enum.Enum):
    consultation = "consultation"
    follow_up = "follow_up"
    checkup = "checkup"
    emergency = "emergency"
    procedure = "procedure"
    lab_test = "lab_test"


class QueueStatus(str, enum.Enum):
    waiting = "waiting"
    called = "called"
    in_progress = "in_progress"
    completed = "completed"
    skipped = "skipped"
    cancelled = "cancelled"


class QueuePriority(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    QueuePriority.low: 0,
    QueuePriority.normal: 1,
    QueuePriority.high: 2,
    QueuePriority.urgent: 3,
}


class QueueType(str, enum.Enum):
    appointment = "appointment"
    walk_in = "walk_in"


class DrugForm(str, enum.Enum):
    tablet = "tablet"
    capsule = "capsule"
    syrup = "syrup"
    injection = "injection"
    drops = "drops"
    cream = "cream"
    ointment = "ointment"
    inhaler = "inhaler"
    patch = "patch"
    other = "other"


class PrescriptionStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    dispensed = "dispensed"
    cancelled = "cancelled"
    expired = "expired"


class PrescriptionItemType(str, enum.Enum):
    drug = "drug"
    lab = "lab"
    procedure = "procedure"
    other = "other"


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    partial = "partial"
    paid = "paid"
    cancelled = "cancelled"
    refunded = "refunded"


class InvoiceItemType(str, enum.Enum):
    consultation = "consultation"
    procedure = "procedure"
    medication = "medication"
    lab_test = "lab_test"
    other = "other"


class PaymentMethod(str, enum.Enum):
    cash = "cash"
    card = "card"
    upi = "upi"
    bank_transfer = "bank_transfer"
    cheque = "cheque"
    insurance = "insurance"
    other = "other"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    cancelled = "cancelled"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class PlanStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    EXPORT = "EXPORT"


# Tenancy
class Tenant(Base):
    """A clinic. Every clinical and billing record carries its id."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, index=True, nullable=False)
    region = Column(SQLAlchemyEnum(Region, name='tenant_region'), nullable=False, default=Region.US)
    # currency, locale, timezone, tax_rules, queue_settings
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    users = relationship("User", back_populates="tenant")
    subscriptions = relationship("Subscription", back_populates="tenant")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_tenant_role', 'tenant_id', 'role', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.receptionist, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    tenant = relationship("Tenant", back_populates="users")
    audit_logs = relationship("AuditLog", back_populates="user")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or self.username


class Patient(Base):
    """Patient demographics. Contact details and clinical history are stored encrypted."""
    __tablename__ = "patients"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'patient_code', name='uq_patients_tenant_code'),
        Index('idx_patients_tenant_active', 'tenant_id', 'is_active'),
        Index('idx_patients_phone_hash', 'tenant_id', 'phone_hash'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    patient_code = Column(String(20), nullable=False)

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date, nullable=False)
    gender = Column(SQLAlchemyEnum(Gender, name='patient_gender'), nullable=False)
    blood_group = Column(String(10), nullable=True)

    # PHI
    phone_encrypted = Column(LargeBinary, nullable=False)
    phone_hash = Column(String(64), nullable=False)
    email_encrypted = Column(LargeBinary, nullable=True)
    email_hash = Column(String(64), nullable=True)
    medical_history_encrypted = Column(LargeBinary, nullable=True)
    allergies_encrypted = Column(LargeBinary, nullable=True)
    current_medications_encrypted = Column(LargeBinary, nullable=True)

    address = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    appointments = relationship("Appointment", back_populates="patient")
    queue_entries = relationship("QueueEntry", back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Drug(Base):
    """Drug catalog entry. A null tenant_id marks a global drug."""
    __tablename__ = "drugs"
    __table_args__ = (
        Index('idx_drugs_tenant_name', 'tenant_id', 'name'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True)
    name = Column(String(255), nullable=False)
    generic_name = Column(String(255), nullable=True)
    form = Column(SQLAlchemyEnum(DrugForm, name='drug_form'), nullable=False)
    strength = Column(String(50), nullable=True)
    unit = Column(String(20), nullable=True)
    category = Column(String(100), nullable=True)
    available_in_regions = Column(JSON, nullable=False, default=list)
    requires_prescription = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_tenant_date_status', 'tenant_id', 'appointment_date', 'status'),
        Index('idx_appointments_doctor_time', 'tenant_id', 'doctor_id', 'start_time'),
        Index('idx_appointments_patient', 'tenant_id', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    appointment_date = Column(Date, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False, default=30)

    type = Column(SQLAlchemyEnum(AppointmentType, name='appointment_type'), default=AppointmentType.consultation, nullable=False)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.scheduled, nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    reminder_scheduled_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("User", foreign_keys=[doctor_id])


class QueueEntry(Base):
    """A patient's place in a doctor's waiting line."""
    __tablename__ = "queue_entries"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'queue_number', name='uq_queue_tenant_number'),
        Index('idx_queue_doctor_status_position', 'tenant_id', 'doctor_id', 'status', 'position'),
        Index('idx_queue_appointment', 'tenant_id', 'appointment_id'),
        Index('idx_queue_joined', 'tenant_id', 'joined_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    queue_number = Column(String(20), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)

    type = Column(SQLAlchemyEnum(QueueType, name='queue_type'), default=QueueType.walk_in, nullable=False)
    priority = Column(SQLAlchemyEnum(QueuePriority, name='queue_priority'), default=QueuePriority.normal, nullable=False)
    status = Column(SQLAlchemyEnum(QueueStatus, name='queue_status'), default=QueueStatus.waiting, nullable=False)
    position = Column(Integer, nullable=False, default=0)

    joined_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    called_at = Column(DateTime(timezone=True), nullable=True)
    called_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    estimated_wait_time = Column(Integer, nullable=True)
    actual_wait_time = Column(Integer, nullable=True)

    display_name = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient", back_populates="queue_entries")
    doctor = relationship("User", foreign_keys=[doctor_id])
    appointment = relationship("Appointment")


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'prescription_number', name='uq_prescriptions_tenant_number'),
        Index('idx_prescriptions_patient', 'tenant_id', 'patient_id'),
        Index('idx_prescriptions_doctor_status', 'tenant_id', 'doctor_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    prescription_number = Column(String(20), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)

    # PHI
    diagnosis_encrypted = Column(LargeBinary, nullable=True)
    instructions_encrypted = Column(LargeBinary, nullable=True)

    status = Column(SQLAlchemyEnum(PrescriptionStatus, name='prescription_status'), default=PrescriptionStatus.active, nullable=False)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    refills_allowed = Column(Integer, default=0, nullable=False)
    refills_used = Column(Integer, default=0, nullable=False)

    dispensed_at = Column(DateTime(timezone=True), nullable=True)
    dispensed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    pharmacy_notes = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("PrescriptionItem", back_populates="prescription",
                         cascade="all, delete-orphan", order_by="PrescriptionItem.id")
    patient = relationship("Patient")
    doctor = relationship("User", foreign_keys=[doctor_id])


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLAlchemyEnum(PrescriptionItemType, name='prescription_item_type'), nullable=False)
    drug_id = Column(Integer, ForeignKey("drugs.id"), nullable=True)
    name = Column(String(255), nullable=False)
    generic_name = Column(String(255), nullable=True)
    form = Column(String(50), nullable=True)
    strength = Column(String(50), nullable=True)
    dosage = Column(String(100), nullable=True)
    frequency = Column(String(100), nullable=True)
    duration = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=True)
    unit = Column(String(20), nullable=True)
    instructions = Column(Text, nullable=True)
    refills = Column(Integer, default=0, nullable=False)

    prescription = relationship("Prescription", back_populates="items")


class Invoice(Base):
    """Invoice with all amounts held in minor currency units."""
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'invoice_number', name='uq_invoices_tenant_number'),
        Index('idx_invoices_tenant_status_date', 'tenant_id', 'status', 'invoice_date'),
        Index('idx_invoices_patient', 'tenant_id', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    invoice_number = Column(String(20), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True)

    invoice_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = Column(DateTime(timezone=True), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")

    # Invoice-level discount as entered: "percentage" (0-100) or "fixed" (minor units)
    discount_type = Column(String(20), nullable=True)
    discount_value = Column(Float, nullable=True)

    subtotal = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)
    taxable_amount = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    tax_breakdown = Column(JSON, nullable=False, default=list)

    insurance_coverage = Column(Integer, nullable=False, default=0)
    patient_payable = Column(Integer, nullable=False, default=0)
    paid_amount = Column(Integer, nullable=False, default=0)
    balance_amount = Column(Integer, nullable=False, default=0)

    status = Column(SQLAlchemyEnum(InvoiceStatus, name='invoice_status'), default=InvoiceStatus.pending, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("InvoiceItem", back_populates="invoice",
                         cascade="all, delete-orphan", order_by="InvoiceItem.id")
    payments = relationship("Payment", back_populates="invoice", order_by="Payment.id")
    patient = relationship("Patient")


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(SQLAlchemyEnum(InvoiceItemType, name='invoice_item_type'), nullable=False)
    description = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False)
    discount = Column(Float, nullable=True)  # percentage; discount_amount holds the applied minor units
    discount_amount = Column(Integer, nullable=False, default=0)
    tax_rate = Column(Float, nullable=True)
    tax_amount = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    total_with_tax = Column(Integer, nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'payment_number', name='uq_payments_tenant_number'),
        Index('idx_payments_invoice', 'tenant_id', 'invoice_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    payment_number = Column(String(20), nullable=False)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    method = Column(SQLAlchemyEnum(PaymentMethod, name='payment_method'), nullable=False)
    status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.completed, nullable=False)
    transaction_id = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    received_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    invoice = relationship("Invoice", back_populates="payments")


# Subscription billing
class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle = Column(SQLAlchemyEnum(BillingCycle, name='billing_cycle'), default=BillingCycle.MONTHLY, nullable=False)
    features = Column(JSON, nullable=False, default=list)
    max_users = Column(Integer, nullable=True)
    max_patients = Column(Integer, nullable=True)
    max_storage_gb = Column(Integer, nullable=True)
    status = Column(SQLAlchemyEnum(PlanStatus, name='plan_status'), default=PlanStatus.ACTIVE, nullable=False)
    is_popular = Column(Boolean, default=False, nullable=False)
    is_hidden = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index('idx_subscriptions_tenant_status', 'tenant_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(SQLAlchemyEnum(SubscriptionStatus, name='subscription_status'), default=SubscriptionStatus.PENDING, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    tenant = relationship("Tenant", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")
    payments = relationship("SubscriptionPayment", back_populates="subscription", order_by="SubscriptionPayment.id")


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLAlchemyEnum(PaymentStatus, name='subscription_payment_status'), default=PaymentStatus.completed, nullable=False)
    transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), default=utcnow)

    subscription = relationship("Subscription", back_populates="payments")


class AuditLog(Base):
    """Append-only audit trail written by the compliance logger."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_tenant_date', 'tenant_id', 'timestamp'),
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    username = Column(String(50), nullable=True)  # Denormalized for audit integrity
    role = Column(String(30), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR, CRITICAL
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="audit_logs")
