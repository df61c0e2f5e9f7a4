"""Audit service — append-only audit trail for all permission mutations."""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow
from permission_engine.core.exceptions import AuditWriteError
from permission_engine.models.audit_log import AuditLog, allow_audit_mutation, RETENTION_PURGE

logger = logging.getLogger("permission_engine.audit")


class AuditService:
    """Records immutable audit log entries for permission events."""

    @staticmethod
    def log(
        db: Session,
        actor_id: Optional[int],
        action: str,
        module: str = "permissions",
        description: Optional[str] = None,
        severity: str = "info",
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        target_user_id: Optional[int] = None,
        details: Optional[Any] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> AuditLog:
        """Write a single audit log record.

        Args:
            action: e.g. "temporary_permission.granted", "change_request.approved"
            module: permissions, roles, alerts, maintenance

        With commit=False the entry is flushed inside the caller's transaction
        so the mutation and its audit row commit or roll back together.

        Raises:
            AuditWriteError: If the entry could not be written.
        """
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            description=description,
            module=module,
            severity=severity,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            target_user_id=target_user_id,
            details_json=json.dumps(details, default=str) if details else None,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created_at or utcnow(),
        )
        try:
            db.add(entry)
            if commit:
                db.commit()
            else:
                db.flush()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Audit write failed for %s: %s", action, e)
            raise AuditWriteError(f"Could not write audit entry for '{action}'") from e
        return entry

    @staticmethod
    def query_logs(
        db: Session,
        actor_id: Optional[int] = None,
        action: Optional[str] = None,
        module: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ):
        """Query audit logs with filters and pagination."""
        query = db.query(AuditLog)

        if actor_id:
            query = query.filter(AuditLog.actor_id == actor_id)
        if action:
            query = query.filter(AuditLog.action.ilike(f"%{action}%"))
        if module:
            query = query.filter(AuditLog.module == module)
        if since:
            query = query.filter(AuditLog.created_at >= since)
        if until:
            query = query.filter(AuditLog.created_at <= until)

        total = query.count()
        logs = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

        return {
            "logs": logs,
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    @staticmethod
    def purge_older_than(db: Session, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete entries past retention. The only sanctioned audit delete."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        with allow_audit_mutation(db, RETENTION_PURGE):
            deleted = (
                db.query(AuditLog)
                .filter(AuditLog.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        return deleted


audit_service = AuditService()
