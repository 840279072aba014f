# app/services/billing_service.py
"""Invoices and payments. Amounts arrive in major units and are stored in minor units."""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..core.clock import utcnow, as_utc, day_bounds
from . import tax_engine
from .tax_engine import format_amount, parse_amount

logger = logging.getLogger(__name__)

LOCKED_STATUSES = (models.InvoiceStatus.paid, models.InvoiceStatus.cancelled)


def generate_invoice_number(db: Session, tenant_id: int) -> str:
    return crud.next_sequence_number(db, models.Invoice.invoice_number, tenant_id, "INV")


def generate_payment_number(db: Session, tenant_id: int) -> str:
    return crud.next_sequence_number(db, models.Payment.payment_number, tenant_id, "PAY")


def calculate_invoice_totals(
    items: List[Dict[str, Any]],
    discount_type: Optional[str] = None,
    discount_value: Optional[float] = None,
    region: Optional[str] = "US",
    tax_rules: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Invoice arithmetic over minor-unit items.

    Each item is {"type", "quantity", "unit_price", "discount"? (percent),
    "discount_amount"? (fixed), "tax_rate"?}. A percentage discount wins over a
    fixed one. The invoice-level discount applies after item discounts; tax is
    charged per item on the item total after its own discount.
    """
    subtotal = 0
    item_discounts = 0
    enriched = []
    for item in items:
        line = item["unit_price"] * item["quantity"]
        subtotal += line
        if item.get("discount") is not None:
            item_discount = tax_engine.percentage_of(line, item["discount"])
        else:
            item_discount = item.get("discount_amount") or 0
        if item_discount > line:
            raise crud.CRUDError("Item discount cannot exceed the item amount")
        item_discounts += item_discount

        item_total = line - item_discount
        item_tax = tax_engine.calculate_tax(
            [{"type": item["type"], "amount": item_total, "tax_rate": item.get("tax_rate")}],
            region, tax_rules,
        )["total_tax"]
        enriched.append({
            **item,
            "total": item_total,
            "discount_amount": item_discount,
            "tax_amount": item_tax,
            "total_with_tax": item_total + item_tax,
        })

    total_discount = item_discounts
    taxable_amount = subtotal - item_discounts
    if discount_type and discount_value is not None:
        if discount_type == "percentage":
            invoice_discount = tax_engine.percentage_of(taxable_amount, discount_value)
        else:
            invoice_discount = int(discount_value)
        if invoice_discount > taxable_amount:
            raise crud.CRUDError("Invoice discount cannot exceed the invoice amount")
        total_discount += invoice_discount
        taxable_amount -= invoice_discount

    tax = tax_engine.calculate_tax(
        [{"type": i["type"], "amount": i["total"], "tax_rate": i.get("tax_rate")} for i in enriched],
        region, tax_rules,
    )
    return {
        "subtotal": subtotal,
        "total_discount": total_discount,
        "taxable_amount": taxable_amount,
        "total_tax": tax["total_tax"],
        "total_amount": taxable_amount + tax["total_tax"],
        "tax_breakdown": tax["tax_breakdown"],
        "items": enriched,
    }


def _items_to_minor(items: List[schemas.InvoiceItemIn], currency: str) -> List[Dict[str, Any]]:
    converted = []
    for item in items:
        converted.append({
            "type": item.type,
            "description": item.description,
            "quantity": item.quantity,
            "unit_price": parse_amount(item.unit_price, currency),
            "discount": item.discount,
            "discount_amount": parse_amount(item.discount_amount, currency) if item.discount_amount is not None else None,
            "tax_rate": item.tax_rate,
        })
    return converted


def _invoice_discount_minor(discount_type: Optional[str], discount_value: Optional[float], currency: str) -> Optional[float]:
    if discount_type == "fixed" and discount_value is not None:
        return parse_amount(discount_value, currency)
    return discount_value


def _apply_totals(invoice: models.Invoice, tenant: models.Tenant, items: List[Dict[str, Any]]) -> None:
    totals = calculate_invoice_totals(
        items,
        discount_type=invoice.discount_type,
        discount_value=invoice.discount_value,
        region=tenant.region,
        tax_rules=crud.tenant_setting(tenant, "tax_rules"),
    )
    invoice.items = [
        models.InvoiceItem(
            type=item["type"],
            description=item["description"],
            quantity=item["quantity"],
            unit_price=item["unit_price"],
            discount=item.get("discount"),
            discount_amount=item["discount_amount"],
            tax_rate=item.get("tax_rate"),
            tax_amount=item["tax_amount"],
            total=item["total"],
            total_with_tax=item["total_with_tax"],
        )
        for item in totals["items"]
    ]
    invoice.subtotal = totals["subtotal"]
    invoice.discount_amount = totals["total_discount"]
    invoice.taxable_amount = totals["taxable_amount"]
    invoice.tax_amount = totals["total_tax"]
    invoice.total_amount = totals["total_amount"]
    invoice.tax_breakdown = totals["tax_breakdown"]
    invoice.patient_payable = invoice.total_amount - (invoice.insurance_coverage or 0)
    if invoice.patient_payable < 0:
        raise crud.CRUDError("Insurance coverage cannot exceed the invoice total")
    invoice.balance_amount = invoice.patient_payable - (invoice.paid_amount or 0)


def _stored_items(invoice: models.Invoice) -> List[Dict[str, Any]]:
    return [
        {
            "type": item.type,
            "description": item.description,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "discount": item.discount,
            "discount_amount": None if item.discount is not None else item.discount_amount,
            "tax_rate": item.tax_rate,
        }
        for item in invoice.items
    ]


def get_invoice(db: Session, tenant_id: int, invoice_id: int) -> models.Invoice:
    invoice = db.query(models.Invoice).filter(
        models.Invoice.id == invoice_id,
        models.Invoice.tenant_id == tenant_id,
        models.Invoice.deleted_at.is_(None),
    ).first()
    if not invoice:
        raise crud.NotFoundError("Invoice not found")
    return invoice


def create_invoice(db: Session, tenant_id: int, data: schemas.InvoiceCreate, actor: models.User) -> models.Invoice:
    tenant = crud.get_tenant(db, tenant_id)
    crud.get_patient(db, tenant_id, data.patient_id)
    currency = crud.tenant_setting(tenant, "currency", default="USD")

    invoice = models.Invoice(
        tenant_id=tenant_id,
        invoice_number=generate_invoice_number(db, tenant_id),
        patient_id=data.patient_id,
        appointment_id=data.appointment_id,
        prescription_id=data.prescription_id,
        invoice_date=as_utc(data.invoice_date) if data.invoice_date else utcnow(),
        due_date=as_utc(data.due_date) if data.due_date else None,
        currency=currency,
        discount_type=data.discount_type,
        discount_value=_invoice_discount_minor(data.discount_type, data.discount_value, currency),
        insurance_coverage=parse_amount(data.insurance_coverage or 0, currency),
        paid_amount=0,
        status=data.status or models.InvoiceStatus.pending,
        notes=data.notes,
        created_by=actor.id,
    )
    _apply_totals(invoice, tenant, _items_to_minor(data.items, currency))

    try:
        db.add(invoice)
        db.commit()
        db.refresh(invoice)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating invoice: {e}")
        raise crud.CRUDError("A database error occurred while creating the invoice.")

    logger.info(f"Created invoice {invoice.invoice_number} for patient {invoice.patient_id}: total {invoice.total_amount} {currency} minor units")
    compliance_logger.log_user_event(actor, "INVOICE_CREATE", "BILLING", "invoice", invoice.id,
                                     details=f"Created {invoice.invoice_number}")
    return invoice


def list_invoices(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    patient_id: Optional[int] = None,
    status: Optional[models.InvoiceStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Tuple[List[models.Invoice], int]:
    query = db.query(models.Invoice).filter(
        models.Invoice.tenant_id == tenant_id,
        models.Invoice.deleted_at.is_(None),
    )
    if patient_id:
        query = query.filter(models.Invoice.patient_id == patient_id)
    if status:
        query = query.filter(models.Invoice.status == status)
    if start_date:
        query = query.filter(models.Invoice.invoice_date >= day_bounds(start_date)[0])
    if end_date:
        query = query.filter(models.Invoice.invoice_date < day_bounds(end_date)[1])
    query = query.order_by(models.Invoice.invoice_date.desc(), models.Invoice.id.desc())
    return crud.paginate(query, page, limit)


def update_invoice(db: Session, tenant_id: int, invoice_id: int, data: schemas.InvoiceUpdate,
                   actor: models.User) -> models.Invoice:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if invoice.status in LOCKED_STATUSES:
        raise crud.CRUDError(f"Cannot update a {invoice.status.value} invoice")

    tenant = crud.get_tenant(db, tenant_id)
    currency = invoice.currency
    fields = data.model_fields_set
    recalculate = False

    if "due_date" in fields:
        invoice.due_date = as_utc(data.due_date) if data.due_date else None
    if "notes" in fields:
        invoice.notes = data.notes
    if "discount_type" in fields or "discount_value" in fields:
        # A stored value is percent or minor units depending on the type; it cannot be carried across
        if ("discount_type" in fields and data.discount_type != invoice.discount_type
                and "discount_value" not in fields and invoice.discount_value is not None):
            raise crud.CRUDError("discount_value is required when changing discount_type")
        invoice.discount_type = data.discount_type if "discount_type" in fields else invoice.discount_type
        value = data.discount_value if "discount_value" in fields else None
        if value is not None:
            invoice.discount_value = _invoice_discount_minor(invoice.discount_type, value, currency)
        elif "discount_value" in fields:
            invoice.discount_value = None
        recalculate = True
    if "insurance_coverage" in fields and data.insurance_coverage is not None:
        invoice.insurance_coverage = parse_amount(data.insurance_coverage, currency)
        recalculate = True

    if data.items is not None:
        if not data.items:
            raise crud.CRUDError("An invoice needs at least one item")
        _apply_totals(invoice, tenant, _items_to_minor(data.items, currency))
    elif recalculate:
        _apply_totals(invoice, tenant, _stored_items(invoice))

    if data.status is not None:
        invoice.status = data.status
        if data.status == models.InvoiceStatus.paid:
            invoice.paid_amount = invoice.patient_payable
            invoice.balance_amount = 0

    try:
        db.commit()
        db.refresh(invoice)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating invoice {invoice_id}: {e}")
        raise crud.CRUDError("A database error occurred while updating the invoice.")

    compliance_logger.log_user_event(actor, "INVOICE_UPDATE", "BILLING", "invoice", invoice.id,
                                     details=f"Updated fields: {', '.join(sorted(fields))}")
    return invoice


def delete_invoice(db: Session, tenant_id: int, invoice_id: int, actor: models.User) -> None:
    invoice = get_invoice(db, tenant_id, invoice_id)
    invoice.deleted_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting invoice {invoice_id}: {e}")
        raise crud.CRUDError("A database error occurred while deleting the invoice.")
    compliance_logger.log_user_event(actor, "INVOICE_DELETE", "BILLING", "invoice", invoice_id)


def create_payment(db: Session, tenant_id: int, data: schemas.PaymentCreate, actor: models.User) -> models.Payment:
    invoice = get_invoice(db, tenant_id, data.invoice_id)
    if invoice.status == models.InvoiceStatus.cancelled:
        raise crud.CRUDError("Cannot record a payment against a cancelled invoice")

    amount = parse_amount(data.amount, invoice.currency)
    if amount <= 0:
        raise crud.CRUDError("Payment amount must be greater than zero")
    if amount > invoice.balance_amount:
        raise crud.CRUDError(
            f"Payment amount exceeds the outstanding balance of {format_amount(invoice.balance_amount, invoice.currency)}"
        )

    payment = models.Payment(
        tenant_id=tenant_id,
        payment_number=generate_payment_number(db, tenant_id),
        invoice_id=invoice.id,
        patient_id=invoice.patient_id,
        amount=amount,
        currency=invoice.currency,
        method=data.method,
        status=models.PaymentStatus.completed,
        transaction_id=data.transaction_id,
        notes=data.notes,
        paid_at=utcnow(),
        received_by=actor.id,
    )
    invoice.paid_amount = (invoice.paid_amount or 0) + amount
    invoice.balance_amount = invoice.balance_amount - amount
    invoice.status = models.InvoiceStatus.paid if invoice.balance_amount <= 0 else models.InvoiceStatus.partial

    try:
        db.add(payment)
        db.commit()
        db.refresh(payment)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error recording payment for invoice {invoice.id}: {e}")
        raise crud.CRUDError("A database error occurred while recording the payment.")

    logger.info(f"Recorded payment {payment.payment_number} of {amount} minor units on {invoice.invoice_number}; balance {invoice.balance_amount}")
    compliance_logger.log_user_event(actor, "PAYMENT_CREATE", "BILLING", "payment", payment.id,
                                     details=f"Payment {payment.payment_number} on {invoice.invoice_number}")
    return payment


def list_payments(
    db: Session,
    tenant_id: int,
    page: int = 1,
    limit: int = 20,
    invoice_id: Optional[int] = None,
    patient_id: Optional[int] = None,
) -> Tuple[List[models.Payment], int]:
    query = db.query(models.Payment).filter(models.Payment.tenant_id == tenant_id)
    if invoice_id:
        query = query.filter(models.Payment.invoice_id == invoice_id)
    if patient_id:
        query = query.filter(models.Payment.patient_id == patient_id)
    query = query.order_by(models.Payment.paid_at.desc(), models.Payment.id.desc())
    return crud.paginate(query, page, limit)


# ==================== SERIALIZATION ====================

def serialize_invoice(invoice: models.Invoice) -> Dict[str, Any]:
    """API view of an invoice with every amount in major units."""
    currency = invoice.currency

    def money(value: Optional[int]) -> float:
        return format_amount(value or 0, currency)

    discount_value = invoice.discount_value
    if invoice.discount_type == "fixed" and discount_value is not None:
        discount_value = money(int(discount_value))

    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "patient_id": invoice.patient_id,
        "appointment_id": invoice.appointment_id,
        "prescription_id": invoice.prescription_id,
        "invoice_date": invoice.invoice_date,
        "due_date": invoice.due_date,
        "currency": currency,
        "items": [
            {
                "id": item.id,
                "type": item.type,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": money(item.unit_price),
                "discount": item.discount,
                "discount_amount": money(item.discount_amount),
                "tax_rate": item.tax_rate,
                "tax_amount": money(item.tax_amount),
                "total": money(item.total),
                "total_with_tax": money(item.total_with_tax),
            }
            for item in invoice.items
        ],
        "discount_type": invoice.discount_type,
        "discount_value": discount_value,
        "subtotal": money(invoice.subtotal),
        "discount_amount": money(invoice.discount_amount),
        "taxable_amount": money(invoice.taxable_amount),
        "tax_amount": money(invoice.tax_amount),
        "total_amount": money(invoice.total_amount),
        "tax_breakdown": [
            {**entry, "amount": money(entry["amount"]), "taxable_amount": money(entry["taxable_amount"])}
            for entry in (invoice.tax_breakdown or [])
        ],
        "insurance_coverage": money(invoice.insurance_coverage),
        "patient_payable": money(invoice.patient_payable),
        "paid_amount": money(invoice.paid_amount),
        "balance_amount": money(invoice.balance_amount),
        "status": invoice.status,
        "notes": invoice.notes,
        "created_by": invoice.created_by,
        "created_at": invoice.created_at,
    }


def serialize_payment(payment: models.Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "payment_number": payment.payment_number,
        "invoice_id": payment.invoice_id,
        "patient_id": payment.patient_id,
        "amount": format_amount(payment.amount, payment.currency),
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "transaction_id": payment.transaction_id,
        "notes": payment.notes,
        "paid_at": payment.paid_at,
        "received_by": payment.received_by,
    }
