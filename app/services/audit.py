import logging
from typing import Any, Dict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.audit import AuditLog, AuditSeverity

logger = logging.getLogger(__name__)

async def log_audit_event(
    db: AsyncSession,
    action: str,
    user_id=None,
    resource: str | None = None,
    resource_id=None,
    details: Dict[str, Any] | None = None,
    severity: str = AuditSeverity.LOW,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog | None:
    """Record an audit entry. Failures are logged, never raised to the caller."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        severity=severity,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except SQLAlchemyError as e:
        logger.error(f"Failed to write audit event {action}: {e}")
        return None
    return entry
