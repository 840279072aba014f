# app/routers/payments.py
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

@router.post("/payments", response_model=schemas.PaymentResponse, status_code=status.HTTP_201_CREATED)
def record_payment(
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    tenant_id: int = Depends(security.get_tenant_id),
):
    """
    Record a payment against an invoice. The amount may not exceed the outstanding balance.
    """
    try:
        created = billing_service.create_payment(db, tenant_id, payment, current_user)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return billing_service.serialize_payment(created)

@router.get("/payments", response_model=schemas.PaymentListResponse)
def read_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    invoice_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    tenant_id: int = Depends(security.get_tenant_id),
    db: Session = Depends(get_db),
):
    items, total = billing_service.list_payments(
        db, tenant_id, page=page, limit=limit, invoice_id=invoice_id, patient_id=patient_id
    )
    return {"items": [billing_service.serialize_payment(p) for p in items], "total": total, "page": page, "limit": limit}
