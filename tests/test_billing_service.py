# tests/test_billing_service.py
import pytest

from app import crud, models, schemas
from app.core.clock import add_months, utcnow
from app.services import billing_service
from conftest import make_patient, make_user


def consultation(quantity=1, unit_price=5000, **extra):
    return {"type": models.InvoiceItemType.consultation, "quantity": quantity, "unit_price": unit_price, **extra}


class TestCalculateInvoiceTotals:
    def test_item_discount_then_tax(self):
        totals = billing_service.calculate_invoice_totals([consultation(quantity=2, discount=10)], region="IN")

        assert totals["subtotal"] == 10000
        assert totals["total_discount"] == 1000
        assert totals["taxable_amount"] == 9000
        assert totals["total_tax"] == 1620
        assert totals["total_amount"] == 10620
        item = totals["items"][0]
        assert item["total"] == 9000
        assert item["tax_amount"] == 1620
        assert item["total_with_tax"] == 10620

    def test_percentage_discount_wins_over_fixed(self):
        totals = billing_service.calculate_invoice_totals(
            [consultation(discount=20, discount_amount=100)], region="US"
        )
        assert totals["total_discount"] == 1000

    def test_fixed_item_discount(self):
        totals = billing_service.calculate_invoice_totals([consultation(discount_amount=750)], region="US")
        assert totals["total_discount"] == 750
        assert totals["total_amount"] == 4250

    def test_invoice_discount_reduces_taxable_not_tax(self):
        totals = billing_service.calculate_invoice_totals(
            [consultation(quantity=2, discount=10)],
            discount_type="percentage", discount_value=10, region="IN",
        )
        assert totals["total_discount"] == 1900
        assert totals["taxable_amount"] == 8100
        assert totals["total_tax"] == 1620
        assert totals["total_amount"] == 9720

    def test_fixed_invoice_discount(self):
        totals = billing_service.calculate_invoice_totals(
            [consultation()], discount_type="fixed", discount_value=500, region="US",
        )
        assert totals["total_amount"] == 4500

    def test_explicit_zero_item_tax_rate_is_honored(self):
        totals = billing_service.calculate_invoice_totals([consultation(tax_rate=0)], region="IN")
        assert totals["total_tax"] == 0

    def test_clinic_tax_rules(self):
        totals = billing_service.calculate_invoice_totals(
            [consultation()], region="US", tax_rules={"tax_type": "SALES_TAX", "rate": 8}
        )
        assert totals["total_tax"] == 400

    def test_item_discount_larger_than_line_is_rejected(self):
        with pytest.raises(crud.CRUDError):
            billing_service.calculate_invoice_totals([consultation(discount_amount=6000)])

    def test_invoice_discount_larger_than_invoice_is_rejected(self):
        with pytest.raises(crud.CRUDError):
            billing_service.calculate_invoice_totals([consultation()], discount_type="fixed", discount_value=9000)


@pytest.fixture
def india_clinic(db, other_tenant):
    user = make_user(db, other_tenant.id, "cashier", models.UserRole.accountant)
    patient = make_patient(db, other_tenant.id, first_name="Ravi", phone="+919800000000")
    return other_tenant, user, patient


def invoice_in(patient_id, **extra):
    return schemas.InvoiceCreate(
        patient_id=patient_id,
        items=[schemas.InvoiceItemIn(description="Consultation", unit_price=50, quantity=2, discount=10)],
        **extra,
    )


def test_create_invoice_stores_minor_units(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)

    assert invoice.invoice_number == "INV-0001"
    assert invoice.status == models.InvoiceStatus.pending
    assert invoice.subtotal == 10000
    assert invoice.tax_amount == 1620
    assert invoice.total_amount == 10620
    assert invoice.patient_payable == 10620
    assert invoice.balance_amount == 10620
    assert len(invoice.items) == 1

    view = billing_service.serialize_invoice(invoice)
    assert view["total_amount"] == 106.2
    assert view["items"][0]["unit_price"] == 50.0
    assert view["tax_breakdown"][0]["tax_type"] == "GST"


def test_invoice_numbers_increment_per_tenant(db, india_clinic, tenant, clinic_admin, patient):
    other, user, other_patient = india_clinic
    billing_service.create_invoice(db, other.id, invoice_in(other_patient.id), user)
    second = billing_service.create_invoice(db, other.id, invoice_in(other_patient.id), user)
    first_here = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), clinic_admin)

    assert second.invoice_number == "INV-0002"
    assert first_here.invoice_number == "INV-0001"


def test_insurance_coverage_reduces_payable(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id, insurance_coverage=60), user)
    assert invoice.insurance_coverage == 6000
    assert invoice.patient_payable == 4620


def test_insurance_above_total_is_rejected(db, india_clinic):
    tenant, user, patient = india_clinic
    with pytest.raises(crud.CRUDError):
        billing_service.create_invoice(db, tenant.id, invoice_in(patient.id, insurance_coverage=500), user)


def test_partial_then_full_payment(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)

    first = billing_service.create_payment(db, tenant.id, schemas.PaymentCreate(invoice_id=invoice.id, amount=6.2), user)
    db.refresh(invoice)
    assert first.payment_number == "PAY-0001"
    assert first.amount == 620
    assert invoice.status == models.InvoiceStatus.partial
    assert invoice.balance_amount == 10000

    billing_service.create_payment(db, tenant.id, schemas.PaymentCreate(invoice_id=invoice.id, amount=100), user)
    db.refresh(invoice)
    assert invoice.status == models.InvoiceStatus.paid
    assert invoice.paid_amount == 10620
    assert invoice.balance_amount == 0


def test_overpayment_is_rejected(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)
    with pytest.raises(crud.CRUDError, match="outstanding balance"):
        billing_service.create_payment(db, tenant.id, schemas.PaymentCreate(invoice_id=invoice.id, amount=200), user)


def test_update_recalculates_and_locks_paid_invoices(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)

    updated = billing_service.update_invoice(
        db, tenant.id, invoice.id,
        schemas.InvoiceUpdate(discount_type="fixed", discount_value=10), user,
    )
    assert updated.discount_value == 1000
    assert updated.taxable_amount == 8000
    assert updated.total_amount == 9620

    paid = billing_service.update_invoice(db, tenant.id, invoice.id, schemas.InvoiceUpdate(status="paid"), user)
    assert paid.balance_amount == 0
    assert paid.paid_amount == paid.patient_payable

    with pytest.raises(crud.CRUDError):
        billing_service.update_invoice(db, tenant.id, invoice.id, schemas.InvoiceUpdate(notes="late"), user)


def test_deleted_invoice_is_hidden(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)
    billing_service.delete_invoice(db, tenant.id, invoice.id, user)

    with pytest.raises(crud.NotFoundError):
        billing_service.get_invoice(db, tenant.id, invoice.id)
    items, total = billing_service.list_invoices(db, tenant.id)
    assert total == 0 and items == []


def test_invoices_are_tenant_scoped(db, india_clinic, tenant):
    other, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, other.id, invoice_in(patient.id), user)
    with pytest.raises(crud.NotFoundError):
        billing_service.get_invoice(db, tenant.id, invoice.id)


def test_changing_discount_type_needs_a_new_value(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(
        db, tenant.id, invoice_in(patient.id, discount_type="percentage", discount_value=10), user
    )
    assert invoice.total_amount == 9720

    with pytest.raises(crud.CRUDError, match="discount_value is required"):
        billing_service.update_invoice(db, tenant.id, invoice.id, schemas.InvoiceUpdate(discount_type="fixed"), user)
    db.refresh(invoice)
    assert invoice.discount_type == "percentage"
    assert invoice.discount_value == 10
    assert invoice.total_amount == 9720

    switched = billing_service.update_invoice(
        db, tenant.id, invoice.id, schemas.InvoiceUpdate(discount_type="fixed", discount_value=9), user
    )
    assert switched.discount_value == 900
    assert switched.total_amount == 9720


def test_marking_paid_settles_the_patient_share(db, india_clinic):
    tenant, user, patient = india_clinic
    invoice = billing_service.create_invoice(db, tenant.id, invoice_in(patient.id, insurance_coverage=60), user)

    paid = billing_service.update_invoice(db, tenant.id, invoice.id, schemas.InvoiceUpdate(status="paid"), user)
    assert paid.paid_amount == 4620
    assert paid.balance_amount == 0


def test_month_revenue_ignores_future_invoices(db, india_clinic):
    tenant, user, patient = india_clinic
    billing_service.create_invoice(db, tenant.id, invoice_in(patient.id), user)
    billing_service.create_invoice(
        db, tenant.id, invoice_in(patient.id, invoice_date=add_months(utcnow(), 1)), user
    )

    stats = crud.get_dashboard_stats(db, tenant.id)
    assert stats["month_revenue"] == 106.2
    assert stats["pending_invoices"] == 2
