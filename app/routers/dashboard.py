# app/routers/dashboard.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..database import get_db
from ..services import subscription_service

router = APIRouter(
    tags=["Dashboard"],
    dependencies=[Depends(security.require_staff), Depends(subscription_service.require_module("reports"))],
)

@router.get("/dashboard/stats", response_model=schemas.DashboardStatsResponse)
def read_dashboard_stats(tenant_id: int = Depends(security.get_tenant_id), db: Session = Depends(get_db)):
    try:
        return crud.get_dashboard_stats(db, tenant_id)
    except crud.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
