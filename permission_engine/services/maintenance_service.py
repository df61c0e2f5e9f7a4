"""Retention cleanup and scheduled health checks."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, Clock
from permission_engine.core.config import settings
from permission_engine.models.alert import PermissionHealthCheck
from permission_engine.services.alert_service import AlertService, alert_service
from permission_engine.services.audit_service import audit_service
from permission_engine.services.monitoring_service import MonitoringService, monitoring_service, CHECK_TYPES
from permission_engine.services.temporary_permission_service import (
    TemporaryPermissionService, temporary_permission_service,
)

logger = logging.getLogger("permission_engine.maintenance")


class MaintenanceService:

    def __init__(
        self,
        temporary: TemporaryPermissionService,
        alerts: AlertService,
        monitoring: MonitoringService,
        clock: Clock = utcnow,
    ):
        self.temporary = temporary
        self.alerts = alerts
        self.monitoring = monitoring
        self.clock = clock

    def cleanup(self, db: Session, retention_days: Optional[int] = None) -> dict:
        """Delete data past retention. Returns the count per category."""
        now = self.clock()
        retention_days = retention_days or settings.MAINTENANCE_RETENTION_DAYS
        results = {
            "expired_temporary_permissions": 0,
            "old_audit_logs": 0,
            "old_health_checks": 0,
            "old_resolved_alerts": 0,
        }

        if settings.CLEANUP_EXPIRED_TEMPORARY_PERMISSIONS:
            results["expired_temporary_permissions"] = self.temporary.delete_expired(db, now)

        if settings.CLEANUP_OLD_AUDIT_LOGS:
            results["old_audit_logs"] = audit_service.purge_older_than(db, retention_days, now)

        cutoff = now - timedelta(days=settings.MONITORING_RETENTION_DAYS)
        results["old_health_checks"] = db.query(PermissionHealthCheck).filter(
            PermissionHealthCheck.checked_at < cutoff,
        ).delete(synchronize_session=False)
        db.commit()

        results["old_resolved_alerts"] = self.alerts.cleanup_old_alerts(db, retention_days)

        audit_service.log(
            db, None, "maintenance.cleanup", module="maintenance",
            description="Permission maintenance cleanup",
            details=results,
            created_at=now,
        )
        logger.info("Permission cleanup finished: %s", results)
        return results

    def run_health_checks(self, db: Session) -> dict:
        """Run every probe; raise a critical alert for each non-healthy one."""
        results = {}
        for check_type in CHECK_TYPES:
            result = self.monitoring.perform_health_check(db, check_type)
            results[check_type] = result
            if result["status"] != "healthy":
                self.alerts.create_critical_alert(
                    db,
                    f"Permission system health check failed: {check_type}",
                    f"Health check '{check_type}' returned status '{result['status']}'",
                    data={"check_type": check_type, "details": result["details"]},
                    dedupe_key=f"health:{check_type}",
                )
        return results

    @staticmethod
    def summarize(results: dict) -> dict:
        statuses = [r["status"] for r in results.values()]
        return {
            "healthy": statuses.count("healthy"),
            "warnings": statuses.count("warning"),
            "critical": statuses.count("critical"),
        }


maintenance_service = MaintenanceService(temporary_permission_service, alert_service, monitoring_service)
