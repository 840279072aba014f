import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from passlib.context import CryptContext
from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings
from .database import get_db
from . import models

security_logger = logging.getLogger("security")

pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=4,
    argon2__memory_cost=65536,
    argon2__parallelism=1,
)

SECRET_KEY = get_settings().secret_key
ALGORITHM = get_settings().algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = get_settings().access_token_expire_minutes

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")


class EncryptionService:
    """Service for encrypting and decrypting PHI fields"""

    def __init__(self, master_key: Optional[str] = None):
        self.master_key = master_key or get_settings().master_encryption_key
        if not self.master_key:
            # Generate a new key if not provided (for development only)
            self.master_key = Fernet.generate_key().decode()
            security_logger.warning("Using generated encryption key - not suitable for production")

        self.fernet = Fernet(self.master_key.encode())

    def encrypt(self, data: Optional[str]) -> Optional[bytes]:
        """Encrypt sensitive data"""
        if not data:
            return None
        return self.fernet.encrypt(data.encode())

    def decrypt(self, encrypted_data: Optional[bytes]) -> Optional[str]:
        """Decrypt sensitive data"""
        if not encrypted_data:
            return None
        try:
            return self.fernet.decrypt(encrypted_data).decode()
        except InvalidToken:
            security_logger.error("Failed to decrypt PHI field: invalid token or wrong key")
            raise

    def hash_for_lookup(self, data: Optional[str]) -> Optional[str]:
        """Create a hash for searchable lookups (one-way)"""
        if not data:
            return None
        return hashlib.sha256(data.lower().strip().encode()).hexdigest()


encryption_service = EncryptionService()


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Unknown hash formats are a non-match, not a crash
        return False


def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": datetime.now(timezone.utc),
        "jti": secrets.token_urlsafe(16),
    })

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

        if payload.get("type") != token_type:
            return None

        return payload
    except JWTError:
        return None


# Dependencies for FastAPI
async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token, "access")
    if not payload:
        raise credentials_exception

    user_id = payload.get("user_id")
    if not payload.get("sub") or not user_id:
        raise credentials_exception

    user = db.query(models.User).filter(
        models.User.id == user_id,
        models.User.deleted_at.is_(None),
    ).first()
    if not user:
        raise credentials_exception

    if not user.is_active:
        security_logger.warning(f"Inactive user {user_id} rejected on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    if user.role != models.UserRole.super_admin and user.tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not attached to a clinic"
        )

    if user.tenant is not None and not user.tenant.is_active:
        security_logger.warning(f"User {user_id} of inactive clinic {user.tenant_id} rejected on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Clinic account is inactive"
        )

    return user


def require_role(*allowed_roles: str):
    """Decorator factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return current_user

    return role_dependency


def get_tenant_id(current_user: models.User = Depends(get_current_user)) -> int:
    """Tenant scope for clinic routes. Platform admins have no clinic of their own."""
    if current_user.tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires a clinic account"
        )
    return current_user.tenant_id


# Specific role dependencies
require_super_admin = require_role("super_admin")
require_clinic_admin = require_role("clinic_admin")
require_staff = require_role("clinic_admin", "doctor", "nurse", "receptionist", "accountant", "pharmacist")
require_medical_staff = require_role("clinic_admin", "doctor", "nurse")
require_prescriber = require_role("clinic_admin", "doctor")
require_dispenser = require_role("clinic_admin", "doctor", "pharmacist")
require_billing_staff = require_role("clinic_admin", "receptionist", "accountant")


__all__ = [
    "EncryptionService",
    "encryption_service",
    "verify_password",
    "get_password_hash",
    "create_access_token",
    "verify_token",
    "get_current_user",
    "get_tenant_id",
    "require_role",
    "require_super_admin",
    "require_clinic_admin",
    "require_staff",
    "require_medical_staff",
    "require_prescriber",
    "require_dispenser",
    "require_billing_staff",
]
