"""Alert service — persist, log, notify and manage permission alerts."""

import json
import logging
import smtplib
import ssl
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, Clock
from permission_engine.core.config import settings
from permission_engine.core.exceptions import ResourceNotFoundError
from permission_engine.models.alert import PermissionAlert, AlertType, AlertStatus
from permission_engine.services.audit_service import audit_service

logger = logging.getLogger("permission_engine.alerts")

LOG_LEVELS = {
    AlertType.critical: logging.CRITICAL,
    AlertType.high: logging.ERROR,
    AlertType.medium: logging.WARNING,
    AlertType.low: logging.INFO,
}


class AlertService:
    """Creates alerts and drives their active -> acknowledged -> resolved lifecycle."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def create_alert(
        self,
        db: Session,
        alert_type: AlertType,
        title: str,
        message: str,
        data: Optional[dict] = None,
        user_id: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[PermissionAlert]:
        """Persist and dispatch an alert.

        Returns None when an unresolved alert with the same `dedupe_key`
        already exists, so a standing condition is only reported once.
        """
        alert_type = AlertType(alert_type)
        if dedupe_key:
            existing = db.query(PermissionAlert.id).filter(
                PermissionAlert.dedupe_key == dedupe_key,
                PermissionAlert.status != AlertStatus.resolved,
            ).first()
            if existing is not None:
                logger.debug("Suppressed duplicate alert %s", dedupe_key)
                return None

        alert = PermissionAlert(
            alert_type=alert_type,
            title=title,
            message=message,
            data_json=json.dumps(data or {}, default=str),
            status=AlertStatus.active,
            user_id=user_id,
            dedupe_key=dedupe_key,
            created_at=self.clock(),
        )
        db.add(alert)
        db.commit()
        db.refresh(alert)

        self._handle(db, alert)
        return alert

    def _handle(self, db: Session, alert: PermissionAlert) -> None:
        alert_type = AlertType(alert.alert_type)
        logger.log(
            LOG_LEVELS[alert_type],
            "Permission alert [%s] %s: %s",
            alert_type.value, alert.title, alert.message,
            extra={"alert_id": alert.id, "alert_data": alert.data},
        )
        level = settings.ALERT_LEVELS.get(alert_type.value, {})
        if level.get("email_alert") and settings.ALERT_EMAIL_ENABLED:
            self._send_email(alert)
        if level.get("auto_escalate"):
            self._escalate(db, alert)

    def _send_email(self, alert: PermissionAlert) -> bool:
        """Email the configured recipients. Delivery failure never blocks the alert."""
        msg = MIMEMultipart()
        msg["From"] = settings.ALERT_EMAIL_FROM
        msg["To"] = ", ".join(settings.ALERT_EMAIL_RECIPIENTS)
        msg["Subject"] = f"[{AlertType(alert.alert_type).value.upper()}] {alert.title}"
        body = (
            f"{alert.message}\n\n"
            f"Alert ID: {alert.id}\n"
            f"Created: {alert.created_at.isoformat()}\n"
            f"Data: {json.dumps(alert.data, indent=2, default=str)}\n"
        )
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as server:
                if settings.SMTP_USE_TLS:
                    server.starttls(context=ssl.create_default_context())
                if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                server.sendmail(settings.ALERT_EMAIL_FROM, settings.ALERT_EMAIL_RECIPIENTS, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send permission alert email for alert %s: %s", alert.id, e)
            return False
        logger.info("Email notification sent for alert %s", alert.id)
        return True

    def _escalate(self, db: Session, alert: PermissionAlert) -> None:
        logger.warning("Alert escalated", extra={"alert_id": alert.id})
        audit_service.log(
            db, None, "alert.escalated", module="alerts", severity="critical",
            description=f"Escalated alert {alert.id}: {alert.title}",
            resource_type="alert", resource_id=alert.id,
            created_at=self.clock(),
        )

    # ---- Lifecycle ----

    @staticmethod
    def get(db: Session, alert_id: int) -> PermissionAlert:
        alert = db.get(PermissionAlert, alert_id)
        if not alert:
            raise ResourceNotFoundError(f"Alert {alert_id} not found")
        return alert

    def acknowledge(self, db: Session, alert_id: int, user_id: int) -> PermissionAlert:
        alert = self.get(db, alert_id)
        if alert.status == AlertStatus.active:
            alert.status = AlertStatus.acknowledged
            alert.acknowledged_by = user_id
            alert.acknowledged_at = self.clock()
            db.commit()
            db.refresh(alert)
            logger.info("Alert acknowledged", extra={"alert_id": alert_id, "user_id": user_id})
        return alert

    def resolve(self, db: Session, alert_id: int, user_id: int) -> PermissionAlert:
        alert = self.get(db, alert_id)
        if alert.status != AlertStatus.resolved:
            alert.status = AlertStatus.resolved
            alert.resolved_by = user_id
            alert.resolved_at = self.clock()
            db.commit()
            db.refresh(alert)
            logger.info("Alert resolved", extra={"alert_id": alert_id, "user_id": user_id})
        return alert

    @staticmethod
    def active_alerts(db: Session, alert_type: Optional[AlertType] = None) -> list[PermissionAlert]:
        query = db.query(PermissionAlert).filter(PermissionAlert.status == AlertStatus.active)
        if alert_type:
            query = query.filter(PermissionAlert.alert_type == AlertType(alert_type))
        return query.order_by(PermissionAlert.created_at.desc(), PermissionAlert.id.desc()).all()

    def statistics(self, db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        end = end or self.clock()
        start = start or end - timedelta(days=30)
        window = db.query(PermissionAlert).filter(
            PermissionAlert.created_at >= start, PermissionAlert.created_at <= end,
        )
        by_type = window.with_entities(PermissionAlert.alert_type, func.count(PermissionAlert.id)) \
            .group_by(PermissionAlert.alert_type).all()
        by_status = window.with_entities(PermissionAlert.status, func.count(PermissionAlert.id)) \
            .group_by(PermissionAlert.status).all()
        return {
            "total_alerts": window.count(),
            "by_type": {AlertType(t).value: c for t, c in by_type},
            "by_status": {AlertStatus(s).value: c for s, c in by_status},
            "active_alerts": db.query(PermissionAlert).filter(
                PermissionAlert.status == AlertStatus.active).count(),
            "unresolved_critical": db.query(PermissionAlert).filter(
                PermissionAlert.status != AlertStatus.resolved,
                PermissionAlert.alert_type == AlertType.critical,
            ).count(),
        }

    def cleanup_old_alerts(self, db: Session, days_old: int = 90) -> int:
        """Delete resolved alerts older than `days_old`; open alerts are kept."""
        cutoff = self.clock() - timedelta(days=days_old)
        deleted = db.query(PermissionAlert).filter(
            PermissionAlert.created_at < cutoff,
            PermissionAlert.status == AlertStatus.resolved,
        ).delete(synchronize_session=False)
        db.commit()
        return deleted

    # ---- Helpers ----

    def create_security_alert(self, db: Session, title: str, message: str,
                              context: Optional[dict] = None, **kwargs) -> Optional[PermissionAlert]:
        return self.create_alert(db, AlertType.high, title, message,
                                 {**(context or {}), "category": "security"}, **kwargs)

    def create_performance_alert(self, db: Session, title: str, message: str,
                                 metrics: Optional[dict] = None, **kwargs) -> Optional[PermissionAlert]:
        return self.create_alert(db, AlertType.medium, title, message,
                                 {**(metrics or {}), "category": "performance"}, **kwargs)

    def create_critical_alert(self, db: Session, title: str, message: str,
                              data: Optional[dict] = None, **kwargs) -> Optional[PermissionAlert]:
        return self.create_alert(db, AlertType.critical, title, message, data, **kwargs)


alert_service = AlertService()
