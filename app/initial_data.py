# Startup data: the default subscription plans and the platform administrator.
import logging

from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .database import SessionLocal
from . import crud, models, schemas

logger = logging.getLogger(__name__)

CORE_FEATURES = [
    "Patient Management",
    "Appointment Scheduling",
    "Queue Management",
    "Prescriptions Management",
    "Invoice & Billing",
    "Inventory Management",
]
PROFESSIONAL_FEATURES = CORE_FEATURES + [
    "Reports & Analytics",
    "Automated Reminders",
    "Multi-Location Support",
    "Advanced Reports & Analytics",
    "Data Export",
    "Audit Logs",
]
ENTERPRISE_FEATURES = PROFESSIONAL_FEATURES + [
    "Telemedicine",
    "API Access",
    "Custom Branding",
    "Priority Support",
    "HIPAA/GDPR Compliance",
    "White Label Solution",
    "Dedicated Support",
]

DEFAULT_PLANS = [
    {"name": "Basic", "description": "Perfect for small clinics getting started", "price": 4999,
     "features": CORE_FEATURES, "max_users": 5, "max_patients": 500, "max_storage_gb": 10, "is_popular": False},
    {"name": "Professional", "description": "Ideal for growing clinics with advanced needs", "price": 9999,
     "features": PROFESSIONAL_FEATURES, "max_users": 20, "max_patients": 5000, "max_storage_gb": 50, "is_popular": True},
    {"name": "Enterprise", "description": "Complete solution for large clinics and organizations", "price": 19999,
     "features": ENTERPRISE_FEATURES, "max_users": 100, "max_patients": 50000, "max_storage_gb": 500, "is_popular": False},
]


def create_initial_data():
    """Creates the default subscription plans if they don't exist."""
    db = SessionLocal()
    try:
        for plan_data in DEFAULT_PLANS:
            exists = db.query(models.SubscriptionPlan.id).filter(
                models.SubscriptionPlan.name == plan_data["name"]
            ).first()
            if exists:
                continue
            db.add(models.SubscriptionPlan(
                currency="USD",
                billing_cycle=models.BillingCycle.MONTHLY,
                status=models.PlanStatus.ACTIVE,
                **plan_data,
            ))
            logger.info(f"Initial subscription plan '{plan_data['name']}' created.")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"CRITICAL: Error during initial data creation: {e}")
    finally:
        db.close()


def create_or_update_admin():
    """
    Ensures the platform administrator from BOOTSTRAP_ADMIN_* exists and can sign in.
    Nothing is created when no bootstrap password is configured.
    """
    from .security import get_password_hash, verify_password

    settings = get_settings()
    username = settings.bootstrap_admin_username
    password = settings.bootstrap_admin_password
    if not username or not password:
        logger.warning("BOOTSTRAP_ADMIN_USERNAME or BOOTSTRAP_ADMIN_PASSWORD not set. Platform admin not created.")
        return

    db = SessionLocal()
    try:
        admin = crud.get_user_by_identifier(db, username)
        if admin is None and settings.bootstrap_admin_email:
            admin = crud.get_user_by_identifier(db, settings.bootstrap_admin_email)
        if admin:
            admin.role = models.UserRole.super_admin
            admin.tenant_id = None
            admin.is_active = True
            admin.deleted_at = None
            # Only update the hash if the current password doesn't match
            if not verify_password(password, admin.password_hash):
                admin.password_hash = get_password_hash(password)
                logger.info("Platform admin password has been updated on startup to match the environment.")
            db.commit()
            logger.info("Platform admin verified.")
        else:
            # Bypass the password policy of UserCreate: the operator chose this secret
            user_in = schemas.UserCreate.model_construct(
                username=username,
                email=settings.bootstrap_admin_email,
                first_name=None,
                last_name=None,
                role=models.UserRole.super_admin,
                password=password,
            )
            crud.create_user(db, user_in, tenant_id=None)
            logger.info("Platform admin created.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"CRITICAL: Error ensuring the platform admin: {e}")
    except crud.CRUDError as e:
        logger.error(f"CRITICAL: Could not create the platform admin: {e}")
    finally:
        db.close()
