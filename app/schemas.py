# app/schemas.py
from datetime import datetime, date
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, EmailStr, validator, model_validator
from .models import (
    Region, UserRole, Gender, AppointmentStatus, AppointmentType, QueueStatus, QueuePriority, QueueType,
    DrugForm, PrescriptionStatus, PrescriptionItemType, InvoiceStatus, InvoiceItemType, PaymentMethod,
    PaymentStatus, BillingCycle, PlanStatus, SubscriptionStatus, AuditAction,
)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


class PageBase(BaseSchema):
    total: int
    page: int
    limit: int


# --- Tenant Schemas ---
class TaxRules(BaseSchema):
    country: Optional[str] = Field(None, max_length=2)
    tax_type: Literal["GST", "VAT", "SALES_TAX"]
    rate: float = Field(..., ge=0, le=100)


class QueueSettings(BaseSchema):
    display_order: Optional[str] = Field(None, max_length=20)
    average_consultation_time: int = Field(30, ge=1, le=480)
    show_estimated_wait_time: bool = True
    max_queue_length: Optional[int] = Field(None, ge=1)


class TenantSettings(BaseSchema):
    currency: str = Field("USD", min_length=3, max_length=3)
    locale: str = "en-US"
    timezone: str = "UTC"
    tax_rules: Optional[TaxRules] = None
    queue_settings: Optional[QueueSettings] = None

    @validator('currency')
    def upper_currency(cls, v):
        return v.upper()


class TenantSettingsUpdate(BaseSchema):
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    locale: Optional[str] = None
    timezone: Optional[str] = None
    tax_rules: Optional[TaxRules] = None
    queue_settings: Optional[QueueSettings] = None

    @validator('currency')
    def upper_currency(cls, v):
        return v.upper() if v else v


class TenantCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=2, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    region: Region = Region.US
    settings: TenantSettings = Field(default_factory=TenantSettings)


class TenantUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    region: Optional[Region] = None
    settings: Optional[TenantSettingsUpdate] = None
    is_active: Optional[bool] = None


class TenantResponse(BaseSchema):
    id: int
    name: str
    slug: str
    region: Region
    settings: Dict[str, Any]
    is_active: bool
    created_at: Optional[datetime] = None


# --- User Schemas ---
class UserBase(BaseSchema):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    role: UserRole = UserRole.receptionist


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)

    @validator('password')
    def validate_password(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters long')
        if not any(char.isdigit() for char in v):
            raise ValueError('Password must contain at least one digit')
        if not any(char.isupper() for char in v):
            raise ValueError('Password must contain at least one uppercase letter')
        return v


class UserUpdate(BaseSchema):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(None, min_length=8)


class UserResponse(UserBase):
    id: int
    tenant_id: Optional[int] = None
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# --- Patient Schemas ---
class Address(BaseSchema):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class PatientBase(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date
    gender: Gender
    blood_group: Optional[str] = Field(None, max_length=10)
    phone: str = Field(..., min_length=5, max_length=20)
    email: Optional[EmailStr] = None
    address: Optional[Address] = None
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None
    notes: Optional[str] = None

    @validator('email', pre=True)
    def empty_str_to_none(cls, v):
        if v == "":
            return None
        return v


class PatientCreate(PatientBase):
    patient_code: Optional[str] = Field(None, max_length=20)


class PatientUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    blood_group: Optional[str] = Field(None, max_length=10)
    phone: Optional[str] = Field(None, min_length=5, max_length=20)
    email: Optional[EmailStr] = None
    address: Optional[Address] = None
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class PatientResponse(BaseSchema):
    # Built from crud.decrypt_patient, never straight from the ORM row
    id: int
    patient_code: str
    first_name: str
    last_name: str
    date_of_birth: date
    gender: Gender
    blood_group: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PatientListResponse(PageBase):
    items: List[PatientResponse]


# --- Drug Schemas ---
class DrugCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    generic_name: Optional[str] = Field(None, max_length=255)
    form: DrugForm
    strength: Optional[str] = Field(None, max_length=50)
    unit: Optional[str] = Field(None, max_length=20)
    category: Optional[str] = Field(None, max_length=100)
    available_in_regions: List[Region] = Field(default_factory=list)
    requires_prescription: bool = True


class DrugResponse(DrugCreate):
    id: int
    tenant_id: Optional[int] = None
    is_active: bool


# --- Appointment Schemas ---
class AppointmentCreate(BaseSchema):
    patient_id: int
    doctor_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, ge=5, le=480)
    appointment_date: Optional[date] = None
    type: AppointmentType = AppointmentType.consultation
    status: Optional[AppointmentStatus] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class AppointmentUpdate(BaseSchema):
    start_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, ge=5, le=480)
    appointment_date: Optional[date] = None
    type: Optional[AppointmentType] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus
    reason: Optional[str] = None


class AppointmentCancel(BaseSchema):
    reason: Optional[str] = None


class AppointmentResponse(BaseSchema):
    id: int
    patient_id: int
    doctor_id: int
    appointment_date: date
    start_time: datetime
    end_time: datetime
    duration: int
    type: AppointmentType
    status: AppointmentStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    reminder_scheduled_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancellation_reason: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


class AppointmentListResponse(PageBase):
    items: List[AppointmentResponse]


# --- Queue Schemas ---
class QueueEntryCreate(BaseSchema):
    patient_id: int
    doctor_id: int
    appointment_id: Optional[int] = None
    type: QueueType = QueueType.walk_in
    priority: QueuePriority = QueuePriority.normal
    display_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None


class QueueEntryUpdate(BaseSchema):
    priority: Optional[QueuePriority] = None
    position: Optional[int] = Field(None, ge=1)
    display_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class QueueStatusUpdate(BaseSchema):
    status: QueueStatus
    notes: Optional[str] = None


class QueueReorder(BaseSchema):
    doctor_id: int
    entry_ids: List[int] = Field(..., min_length=1)


class QueueEntryResponse(BaseSchema):
    id: int
    queue_number: str
    patient_id: int
    doctor_id: int
    appointment_id: Optional[int] = None
    type: QueueType
    priority: QueuePriority
    status: QueueStatus
    position: int
    joined_at: datetime
    called_at: Optional[datetime] = None
    called_by: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_wait_time: Optional[int] = None
    actual_wait_time: Optional[int] = None
    display_name: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool


class QueueListResponse(PageBase):
    items: List[QueueEntryResponse]


class QueueStatistics(BaseSchema):
    waiting: int
    called: int
    in_progress: int
    average_wait_time: int
    total_today: int


# --- Prescription Schemas ---
class PrescriptionItemIn(BaseSchema):
    type: PrescriptionItemType = PrescriptionItemType.drug
    drug_id: Optional[int] = None
    name: Optional[str] = Field(None, max_length=255)
    dosage: Optional[str] = Field(None, max_length=100)
    frequency: Optional[str] = Field(None, max_length=100)
    duration: Optional[str] = Field(None, max_length=100)
    quantity: Optional[int] = Field(None, ge=1)
    unit: Optional[str] = Field(None, max_length=20)
    instructions: Optional[str] = None
    refills: int = Field(0, ge=0)


class PrescriptionItemResponse(BaseSchema):
    id: int
    type: PrescriptionItemType
    drug_id: Optional[int] = None
    name: str
    generic_name: Optional[str] = None
    form: Optional[str] = None
    strength: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    quantity: Optional[int] = None
    unit: Optional[str] = None
    instructions: Optional[str] = None
    refills: int = 0


class PrescriptionCreate(BaseSchema):
    patient_id: int
    doctor_id: Optional[int] = None
    appointment_id: Optional[int] = None
    items: List[PrescriptionItemIn] = Field(..., min_length=1)
    diagnosis: Optional[str] = None
    instructions: Optional[str] = None
    status: Optional[PrescriptionStatus] = None
    valid_until: datetime
    refills_allowed: int = Field(0, ge=0)

    @validator('status')
    def initial_status(cls, v):
        if v not in (None, PrescriptionStatus.draft, PrescriptionStatus.active):
            raise ValueError('A new prescription is either draft or active')
        return v


class PrescriptionUpdate(BaseSchema):
    patient_id: Optional[int] = None
    items: Optional[List[PrescriptionItemIn]] = None
    diagnosis: Optional[str] = None
    instructions: Optional[str] = None
    valid_until: Optional[datetime] = None
    refills_allowed: Optional[int] = Field(None, ge=0)


class PrescriptionDispense(BaseSchema):
    pharmacy_notes: Optional[str] = None


class PrescriptionResponse(BaseSchema):
    # Built from prescription_service.decrypt_prescription
    id: int
    prescription_number: str
    patient_id: int
    doctor_id: int
    appointment_id: Optional[int] = None
    items: List[PrescriptionItemResponse]
    diagnosis: Optional[str] = None
    instructions: Optional[str] = None
    status: PrescriptionStatus
    valid_from: datetime
    valid_until: datetime
    refills_allowed: int
    refills_used: int
    dispensed_at: Optional[datetime] = None
    dispensed_by: Optional[int] = None
    pharmacy_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PrescriptionListResponse(PageBase):
    items: List[PrescriptionResponse]


# --- Billing Schemas ---
# Request amounts are major units (12.34); responses are formatted back to major units.
class InvoiceItemIn(BaseSchema):
    type: InvoiceItemType = InvoiceItemType.consultation
    description: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    discount_amount: Optional[float] = Field(None, ge=0)
    tax_rate: Optional[float] = Field(None, ge=0, le=100)


def _check_invoice_discount(discount_type, discount_value):
    if discount_type == "percentage" and discount_value is not None and discount_value > 100:
        raise ValueError('Percentage discount cannot exceed 100')


class InvoiceCreate(BaseSchema):
    patient_id: int
    appointment_id: Optional[int] = None
    prescription_id: Optional[int] = None
    items: List[InvoiceItemIn] = Field(..., min_length=1)
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    insurance_coverage: Optional[float] = Field(0, ge=0)
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = None

    @model_validator(mode='after')
    def check_discount(self):
        _check_invoice_discount(self.discount_type, self.discount_value)
        if self.status not in (None, InvoiceStatus.draft, InvoiceStatus.pending):
            raise ValueError('A new invoice is either draft or pending')
        return self


class InvoiceUpdate(BaseSchema):
    items: Optional[List[InvoiceItemIn]] = None
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    insurance_coverage: Optional[float] = Field(None, ge=0)
    due_date: Optional[datetime] = None
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = None

    @model_validator(mode='after')
    def check_discount(self):
        _check_invoice_discount(self.discount_type, self.discount_value)
        return self


class InvoiceItemResponse(BaseSchema):
    id: int
    type: InvoiceItemType
    description: str
    quantity: int
    unit_price: float
    discount: Optional[float] = None
    discount_amount: float
    tax_rate: Optional[float] = None
    tax_amount: float
    total: float
    total_with_tax: float


class TaxBreakdownEntry(BaseSchema):
    tax_type: str
    rate: float
    amount: float
    taxable_amount: float


class InvoiceResponse(BaseSchema):
    # Built from billing_service.serialize_invoice
    id: int
    invoice_number: str
    patient_id: int
    appointment_id: Optional[int] = None
    prescription_id: Optional[int] = None
    invoice_date: datetime
    due_date: Optional[datetime] = None
    currency: str
    items: List[InvoiceItemResponse]
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    subtotal: float
    discount_amount: float
    taxable_amount: float
    tax_amount: float
    total_amount: float
    tax_breakdown: List[TaxBreakdownEntry]
    insurance_coverage: float
    patient_payable: float
    paid_amount: float
    balance_amount: float
    status: InvoiceStatus
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


class InvoiceListResponse(PageBase):
    items: List[InvoiceResponse]


class PaymentCreate(BaseSchema):
    invoice_id: int
    amount: float = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.cash
    transaction_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class PaymentResponse(BaseSchema):
    id: int
    payment_number: str
    invoice_id: int
    patient_id: int
    amount: float
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    paid_at: datetime
    received_by: Optional[int] = None


class PaymentListResponse(PageBase):
    items: List[PaymentResponse]


# --- Subscription Schemas ---
class SubscriptionPlanCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    features: List[str] = Field(default_factory=list)
    max_users: Optional[int] = Field(None, ge=0)
    max_patients: Optional[int] = Field(None, ge=0)
    max_storage_gb: Optional[int] = Field(None, ge=0)
    status: PlanStatus = PlanStatus.ACTIVE
    is_popular: bool = False
    is_hidden: bool = False


class SubscriptionPlanUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    billing_cycle: Optional[BillingCycle] = None
    features: Optional[List[str]] = None
    max_users: Optional[int] = Field(None, ge=0)
    max_patients: Optional[int] = Field(None, ge=0)
    max_storage_gb: Optional[int] = Field(None, ge=0)
    status: Optional[PlanStatus] = None
    is_popular: Optional[bool] = None
    is_hidden: Optional[bool] = None


class SubscriptionPlanResponse(BaseSchema):
    id: int
    name: str
    description: Optional[str] = None
    price: float
    currency: str
    billing_cycle: BillingCycle
    features: List[str]
    max_users: Optional[int] = None
    max_patients: Optional[int] = None
    max_storage_gb: Optional[int] = None
    status: PlanStatus
    is_popular: bool
    is_hidden: bool


class SubscriptionCreate(BaseSchema):
    plan_id: int


class SubscriptionCancel(BaseSchema):
    at_period_end: bool = False


class SubscriptionResponse(BaseSchema):
    id: int
    tenant_id: int
    plan_id: int
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: Optional[datetime] = None
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SubscriptionPaymentResponse(BaseSchema):
    id: int
    subscription_id: int
    amount: float
    currency: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class AccessCheckResponse(BaseSchema):
    has_access: bool
    reason: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None


class TenantLimitsResponse(BaseSchema):
    features: List[str]
    max_users: Optional[int] = None
    max_patients: Optional[int] = None
    max_storage_gb: Optional[int] = None
    current_users: int
    current_patients: int


# --- Audit Log Schemas ---
class AuditLogResponse(BaseSchema):
    id: int
    tenant_id: Optional[int] = None
    user_id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[str] = None
    action: AuditAction
    category: str
    severity: str
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    details: Optional[str] = None
    timestamp: datetime


# --- Dashboard Schemas ---
class DashboardStatsResponse(BaseSchema):
    today_appointments: int
    month_revenue: float
    currency: str
    total_patients: int
    pending_invoices: int
    queue_waiting: int


# --- Report Schemas ---
class ReportPeriod(BaseSchema):
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class CountPoint(BaseSchema):
    period: str
    count: int


class AmountPoint(CountPoint):
    total: float


class RevenueSummary(BaseSchema):
    total_revenue: float
    total_paid: float
    total_pending: float
    invoice_count: int
    payment_count: int


class RevenueBreakdown(BaseSchema):
    payment_methods: Dict[str, float]
    statuses: Dict[str, int]


class RevenueReportResponse(BaseSchema):
    currency: str
    summary: RevenueSummary
    breakdown: Optional[RevenueBreakdown] = None
    time_series: Optional[List[AmountPoint]] = None
    period: ReportPeriod


class PatientReportSummary(BaseSchema):
    total_patients: int
    new_patients: Optional[int] = None


class PatientReportBreakdown(BaseSchema):
    gender: Dict[str, int]
    age_groups: Dict[str, int]
    blood_groups: Dict[str, int]


class PatientReportResponse(BaseSchema):
    summary: PatientReportSummary
    breakdown: PatientReportBreakdown
    monthly_trend: Optional[List[CountPoint]] = None
    period: ReportPeriod


class AppointmentReportSummary(BaseSchema):
    total_appointments: int
    completed: int
    cancelled: int
    no_shows: Optional[int] = None
    no_show_rate: Optional[float] = None


class AppointmentReportBreakdown(BaseSchema):
    statuses: Dict[str, int]
    types: Dict[str, int]


class AppointmentReportResponse(BaseSchema):
    summary: AppointmentReportSummary
    breakdown: AppointmentReportBreakdown
    time_series: Optional[List[CountPoint]] = None
    period: ReportPeriod


# --- Health Schemas ---
class HealthCheckResponse(BaseModel):
    status: str
    version: str
    environment: str
    database: str
    timestamp: datetime
