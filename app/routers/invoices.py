# app/routers/invoices.py
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..services import billing_service, subscription_service

router = APIRouter(
    tags=["Billing"],
    dependencies=[Depends(security.require_billing_staff), Depends(subscription_service.require_module("invoices"))],
    responses={404: {"description": "Not found"}},
)

@router.post("/invoices", response_model=schemas.InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_new_invoice(
    invoice: schemas.InvoiceCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Raise an invoice. Amounts are given in major units of the clinic currency; tax follows the clinic's region rules.
    """
    try:
        created = billing_service.create_invoice(db, tenant_id, invoice, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return billing_service.serialize_invoice(created)

@router.get("/invoices", response_model=schemas.InvoiceListResponse)
def read_invoices(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    patient_id: Optional[int] = None,
    status: Optional[models.InvoiceStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    items, total = billing_service.list_invoices(
        db, tenant_id, page=page, limit=limit, patient_id=patient_id,
        status=status, start_date=start_date, end_date=end_date,
    )
    return {"items": [billing_service.serialize_invoice(i) for i in items], "total": total, "page": page, "limit": limit}

@router.get("/invoices/{invoice_id}", response_model=schemas.InvoiceResponse)
def read_invoice(invoice_id: int, tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return billing_service.serialize_invoice(billing_service.get_invoice(db, tenant_id, invoice_id))
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.put("/invoices/{invoice_id}", response_model=schemas.InvoiceResponse)
def update_existing_invoice(
    invoice_id: int,
    invoice_update: schemas.InvoiceUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        updated = billing_service.update_invoice(db, tenant_id, invoice_id, invoice_update, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return billing_service.serialize_invoice(updated)

@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_clinic_admin),
    tenant_id: int = Depends(security.get_tenant_id),
):
    try:
        billing_service.delete_invoice(db, tenant_id, invoice_id, current_admin)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return
