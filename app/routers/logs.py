# app/routers/logs.py
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, models
from ..database import get_db
from ..security import require_clinic_admin, get_tenant_id
from ..services import subscription_service

router = APIRouter(
    tags=["Logs"],
    dependencies=[Depends(require_clinic_admin), Depends(subscription_service.require_module("audit-logs"))],
    responses={404: {"description": "Not found"}},
)

@router.get("/logs", response_model=List[schemas.AuditLogResponse])
def read_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    user_id: Optional[int] = None,
    action: Optional[models.AuditAction] = None,
    resource_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    tenant_id: int = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    """
    Retrieve the clinic's audit trail with optional filtering.
    Only accessible by clinic administrators.
    """
    try:
        return crud.get_audit_logs(
            db, tenant_id, skip=skip, limit=limit, user_id=user_id, action=action,
            resource_type=resource_type, start_date=start_date, end_date=end_date,
        )
    except crud.CRUDError as e:
        raise HTTPException(status_code=400, detail=str(e))
