from datetime import datetime, timezone
from typing import Optional, Any, Callable
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app import models

logger = logging.getLogger(__name__)


class ComplianceLogger:
	"""Audit sink: stores every compliance event in the AuditLog table.

	Events are written through a dedicated session so a failing business
	transaction never takes its audit trail down with it. Callers emit events
	after their own commit.
	"""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal, standard: str = 'HIPAA'):
		self.session_factory = session_factory
		self.standard = standard

	@staticmethod
	def normalize_action(action: str) -> models.AuditAction:
		action_upper = (action or '').upper()
		if action_upper in models.AuditAction.__members__:
			return models.AuditAction[action_upper]
		if 'LOGIN' in action_upper:
			return models.AuditAction.LOGIN
		if 'LOGOUT' in action_upper:
			return models.AuditAction.LOGOUT
		if action_upper.endswith('_CREATE') or action_upper.startswith('CREATE_'):
			return models.AuditAction.CREATE
		if action_upper.endswith('_DELETE') or action_upper.startswith('DELETE_'):
			return models.AuditAction.DELETE
		if 'DENIED' in action_upper:
			return models.AuditAction.ACCESS_DENIED
		if 'EXPORT' in action_upper:
			return models.AuditAction.EXPORT
		if action_upper.endswith('_UPDATE') or action_upper.startswith('UPDATE_') \
				or any(word in action_upper for word in ('STATUS', 'REORDER', 'DISPENSE', 'CANCEL', 'ACTIVATE', 'PAY')):
			# State transitions are recorded as updates
			return models.AuditAction.UPDATE
		return models.AuditAction.READ

	def log_event(
		self,
		tenant_id: Optional[int],
		user_id: Optional[int],
		role: Optional[str],
		action: str,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
		username: Optional[str] = None,
		**_: Any
	) -> None:
		"""Logs an event into the AuditLog table. Failures are logged, never raised."""
		db = self.session_factory()
		try:
			db_log = models.AuditLog(
				tenant_id=tenant_id,
				user_id=user_id,
				username=username if username else (str(user_id) if user_id else 'System'),
				role=getattr(role, 'value', role),
				action=self.normalize_action(action),
				category=category or 'GENERAL',
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=resource_id,
				details=details,
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			logger.error(f"Failed to save compliance log to DB: {e}")
		finally:
			db.close()

	def log_user_event(self, user: models.User, action: str, category: str, resource_type: str,
					   resource_id: Optional[int] = None, details: Optional[str] = None, severity: str = 'INFO') -> None:
		"""Shortcut for events performed by an authenticated user."""
		self.log_event(
			tenant_id=user.tenant_id,
			user_id=user.id,
			role=user.role,
			username=user.username,
			action=action,
			category=category,
			details=details,
			severity=severity,
			resource_type=resource_type,
			resource_id=resource_id,
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
