"""Tests for alert lifecycle, notification, health checks and retention cleanup."""

import logging
from datetime import timedelta

import pytest

from permission_engine.core.config import settings
from permission_engine.core.exceptions import ValidationError
from permission_engine.models.alert import PermissionAlert, PermissionHealthCheck, AlertType, AlertStatus
from permission_engine.models.audit_log import AuditLog
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.services import alert_service as alert_module
from permission_engine.services.audit_service import audit_service
from permission_engine.services.monitoring_service import MonitoringService


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, username, password):
        pass

    def sendmail(self, sender, recipients, message):
        FakeSMTP.sent.append((sender, recipients, message))


class TestAlertLifecycle:
    """Creation, dedupe, acknowledge and resolve"""

    def test_dedupe_until_resolved(self, db, hospital, services):
        first = services.alerts.create_alert(db, AlertType.medium, "Bulk", "six grants", dedupe_key="bulk:1")
        assert first is not None
        assert services.alerts.create_alert(db, AlertType.medium, "Bulk", "again", dedupe_key="bulk:1") is None

        services.alerts.acknowledge(db, first.id, hospital.users.admin.id)
        assert services.alerts.create_alert(db, AlertType.medium, "Bulk", "again", dedupe_key="bulk:1") is None

        services.alerts.resolve(db, first.id, hospital.users.admin.id)
        assert services.alerts.create_alert(db, AlertType.medium, "Bulk", "again", dedupe_key="bulk:1") is not None

    def test_acknowledge_and_resolve(self, db, hospital, services, clock):
        alert = services.alerts.create_alert(db, AlertType.low, "Note", "fyi")
        acked = services.alerts.acknowledge(db, alert.id, hospital.users.admin.id)
        assert acked.status == AlertStatus.acknowledged
        assert acked.acknowledged_at == clock()

        resolved = services.alerts.resolve(db, alert.id, hospital.users.other_admin.id)
        assert resolved.status == AlertStatus.resolved
        assert resolved.resolved_by == hospital.users.other_admin.id
        # acknowledging a resolved alert leaves it resolved
        assert services.alerts.acknowledge(db, alert.id, hospital.users.admin.id).status == AlertStatus.resolved

    def test_active_alerts_and_statistics(self, db, hospital, services):
        services.alerts.create_alert(db, AlertType.high, "A", "a")
        services.alerts.create_alert(db, AlertType.high, "B", "b")
        low = services.alerts.create_alert(db, AlertType.low, "C", "c")
        services.alerts.resolve(db, low.id, hospital.users.admin.id)

        assert len(services.alerts.active_alerts(db)) == 2
        assert services.alerts.active_alerts(db, AlertType.low) == []
        stats = services.alerts.statistics(db)
        assert stats["total_alerts"] == 3
        assert stats["by_type"] == {"high": 2, "low": 1}
        assert stats["by_status"] == {"active": 2, "resolved": 1}
        assert stats["unresolved_critical"] == 0

    def test_cleanup_only_removes_resolved(self, db, hospital, services, clock):
        old_open = services.alerts.create_alert(db, AlertType.low, "open", "x")
        old_done = services.alerts.create_alert(db, AlertType.low, "done", "x")
        services.alerts.resolve(db, old_done.id, hospital.users.admin.id)
        clock.advance(days=100)

        assert services.alerts.cleanup_old_alerts(db, 90) == 1
        assert [a.id for a in db.query(PermissionAlert).all()] == [old_open.id]

    def test_helpers_tag_category(self, db, hospital, services):
        security = services.alerts.create_security_alert(db, "Escalation", "x", {"user": 1})
        performance = services.alerts.create_performance_alert(db, "Slow", "y")
        assert security.alert_type == AlertType.high and security.data["category"] == "security"
        assert performance.alert_type == AlertType.medium and performance.data["category"] == "performance"


class TestAlertDispatch:
    """Logging, escalation and email"""

    def test_critical_alert_logged_and_escalated(self, db, hospital, services, caplog):
        with caplog.at_level(logging.INFO, logger="permission_engine.alerts"):
            alert = services.alerts.create_critical_alert(db, "Cache down", "no invalidation possible")
        assert any(r.levelno == logging.CRITICAL and "Cache down" in r.getMessage() for r in caplog.records)
        entry = db.query(AuditLog).filter(AuditLog.action == "alert.escalated").one()
        assert entry.resource_id == str(alert.id)
        assert entry.module == "alerts"

    def test_high_alert_not_escalated(self, db, hospital, services):
        services.alerts.create_alert(db, AlertType.high, "Rapid", "x")
        assert db.query(AuditLog).filter(AuditLog.action == "alert.escalated").count() == 0

    def test_email_sent_when_enabled(self, db, hospital, services, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(settings, "ALERT_EMAIL_ENABLED", True)
        monkeypatch.setattr(alert_module.smtplib, "SMTP", FakeSMTP)

        services.alerts.create_critical_alert(db, "Cache down", "x")
        services.alerts.create_alert(db, AlertType.high, "Rapid", "y")
        assert len(FakeSMTP.sent) == 1
        sender, recipients, message = FakeSMTP.sent[0]
        assert sender == settings.ALERT_EMAIL_FROM
        assert "[CRITICAL] Cache down" in message

    def test_email_failure_does_not_block_alert(self, db, hospital, services, monkeypatch):
        class BrokenSMTP(FakeSMTP):
            def sendmail(self, *args):
                raise alert_module.smtplib.SMTPException("relay refused")

        monkeypatch.setattr(settings, "ALERT_EMAIL_ENABLED", True)
        monkeypatch.setattr(alert_module.smtplib, "SMTP", BrokenSMTP)
        assert services.alerts.create_critical_alert(db, "Cache down", "x") is not None


class TestHealthChecks:
    """Probes and the alerts they raise"""

    def test_all_healthy(self, db, hospital, services):
        results = services.maintenance.run_health_checks(db)
        assert {k: r["status"] for k, r in results.items()} == {
            "database": "healthy", "cache": "healthy", "api_endpoints": "healthy",
        }
        assert services.maintenance.summarize(results) == {"healthy": 3, "warnings": 0, "critical": 0}
        assert db.query(PermissionHealthCheck).count() == 3
        assert db.query(PermissionAlert).count() == 0

    def test_cache_outage_raises_critical_alert(self, db, hospital, services, backend):
        backend.available = False
        results = services.maintenance.run_health_checks(db)
        assert results["cache"]["status"] == "critical"
        alert = db.query(PermissionAlert).one()
        assert alert.alert_type == AlertType.critical
        assert alert.dedupe_key == "health:cache"
        assert services.monitoring.health_status(db)["cache"] == "critical"

        # a standing failure alerts once
        services.maintenance.run_health_checks(db)
        assert db.query(PermissionAlert).count() == 1

    def test_missing_routes_reported(self, db, backend, clock):
        monitoring = MonitoringService(backend, clock, route_paths={"/health"})
        result = monitoring.perform_health_check(db, "api_endpoints")
        assert result["status"] == "critical"
        assert "/admin/permissions/grant-temporary" in result["details"]["missing"]

    def test_application_routes_present(self, db, backend, clock):
        monitoring = MonitoringService(backend, clock)
        assert monitoring.perform_health_check(db, "api_endpoints")["status"] == "healthy"

    def test_unknown_check_type(self, db, services):
        with pytest.raises(ValidationError):
            services.monitoring.perform_health_check(db, "disk")


class TestCleanup:
    """Retention cleanup"""

    def test_cleanup_counts(self, db, hospital, services, clock):
        services.temporary.grant(db, hospital.users.nobody.id, hospital.perms["view-bills"].id,
                                 hospital.users.admin.id, "cover", clock() + timedelta(hours=1))
        audit_service.log(db, None, "ancient", created_at=clock() - timedelta(days=200))
        db.add(PermissionHealthCheck(check_type="cache", status="healthy", checked_at=clock() - timedelta(days=40)))
        db.commit()
        alert = services.alerts.create_alert(db, AlertType.low, "old", "x")
        services.alerts.resolve(db, alert.id, hospital.users.admin.id)

        clock.advance(days=95)
        results = services.maintenance.cleanup(db)
        assert results == {
            "expired_temporary_permissions": 1,
            "old_audit_logs": 2,
            "old_health_checks": 1,
            "old_resolved_alerts": 1,
        }
        assert db.query(TemporaryPermission).count() == 0
        assert db.query(AuditLog).filter(AuditLog.action == "maintenance.cleanup").count() == 1
