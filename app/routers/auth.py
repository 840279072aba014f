# app/routers/auth.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..core.clock import utcnow
from ..database import get_db
from ..limiter import limiter, LOGIN_RATE

import logging

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)

@router.post("/token", response_model=schemas.TokenResponse)
@limiter.limit(LOGIN_RATE)
def login_for_access_token(request: Request, db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    user = crud.get_user_by_identifier(db, identifier=form_data.username)
    if not user or user.deleted_at is not None or not security.verify_password(form_data.password, user.password_hash):
        logger.warning(f"Failed login attempt for username: {form_data.username}")
        compliance_logger.log_event(
            tenant_id=user.tenant_id if user else None, user_id=user.id if user else None, role=None,
            action="ACCESS_DENIED", category="AUTHENTICATION", severity="WARN",
            details=f"Failed login for {form_data.username}",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    if user.tenant is not None and not user.tenant.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Clinic account is inactive")

    user.last_login = utcnow()
    try:
        db.commit()
        db.refresh(user)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record last login for user {user.username}: {e}")

    compliance_logger.log_user_event(user, "LOGIN", "AUTHENTICATION", "user", user.id,
                                     details=f"User {user.username} logged in successfully.")
    logger.info(f"User '{user.username}' successfully authenticated.")

    access_token = security.create_access_token(
        data={"sub": user.username, "user_id": user.id, "tenant_id": user.tenant_id, "role": user.role.value}
    )
    return {"access_token": access_token, "token_type": "bearer", "expires_in": security.ACCESS_TOKEN_EXPIRE_MINUTES * 60, "user": user}

@router.get("/me", response_model=schemas.UserResponse)
async def read_users_me(current_user: models.User = Depends(security.get_current_user)):
    """
    Get the current logged in user's details.
    """
    return current_user
