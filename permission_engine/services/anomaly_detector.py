"""Batch anomaly detection over recent permission activity.

Each heuristic is independent; findings are unioned and turned into
alerts, deduplicated per (type, subject, window).
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional, Iterable

from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, to_local, Clock
from permission_engine.core.config import settings
from permission_engine.models.alert import PermissionAlert, AlertType
from permission_engine.models.audit_log import AuditLog
from permission_engine.models.change_request import PermissionChangeRequest, ChangeRequestStatus
from permission_engine.models.permission import Permission, RiskLevel
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.services.alert_service import AlertService, alert_service
from permission_engine.services.approval_service import ApprovalService, approval_service
from permission_engine.services.permission_evaluator import PermissionEvaluator, permission_evaluator

logger = logging.getLogger("permission_engine.anomaly")

BULK_GRANTS = "bulk_permission_grants"
HIGH_RISK_GRANTS = "high_risk_permission_grants"
RAPID_CHANGES = "rapid_permission_changes"
UNUSUAL_HOURS = "unusual_hours_activity"
ESCALATION = "permission_escalation_attempt"

TITLES = {
    BULK_GRANTS: "Bulk permission grants",
    HIGH_RISK_GRANTS: "High-risk permission grants",
    RAPID_CHANGES: "Rapid permission changes",
    UNUSUAL_HOURS: "Permission activity at unusual hours",
    ESCALATION: "Permission escalation attempt",
}


def is_high_risk(permission: Permission) -> bool:
    high_risk_names = {n.lower() for n in settings.HIGH_RISK_PERMISSION_NAMES}
    return (
        RiskLevel(permission.risk_level) in (RiskLevel.high, RiskLevel.critical)
        or (permission.name or "").lower() in high_risk_names
    )


def _max_in_window(times: Iterable[datetime], minutes: int) -> tuple[int, Optional[datetime]]:
    """Largest number of timestamps inside any sliding window, and where it starts."""
    ordered = sorted(times)
    span = timedelta(minutes=minutes)
    best, best_start, left = 0, None, 0
    for right, current in enumerate(ordered):
        while current - ordered[left] > span:
            left += 1
        if right - left + 1 > best:
            best, best_start = right - left + 1, ordered[left]
    return best, best_start


class AnomalyDetector:
    """Finds suspicious permission activity and raises alerts for it."""

    def __init__(
        self,
        alerts: AlertService,
        evaluator: PermissionEvaluator,
        approvals: ApprovalService,
        clock: Clock = utcnow,
    ):
        self.alerts = alerts
        self.evaluator = evaluator
        self.approvals = approvals
        self.clock = clock

    def find_anomalies(
        self,
        db: Session,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> list[dict]:
        """Run every heuristic over the window without creating alerts."""
        window_end = window_end or self.clock()
        window_start = window_start or window_end - timedelta(hours=1)
        anomalies = []
        for heuristic in (
            self._bulk_grants,
            self._high_risk_grants,
            self._rapid_changes,
            self._unusual_hours,
            self._escalation_attempts,
        ):
            anomalies.extend(heuristic(db, window_start, window_end))
        return anomalies

    def detect_anomalies(
        self,
        db: Session,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> list[PermissionAlert]:
        """Create alerts for new findings. Returns only the alerts created by this run."""
        if not settings.ANOMALY_DETECTION_ENABLED:
            return []
        created = []
        for anomaly in self.find_anomalies(db, window_start, window_end):
            alert = self.alerts.create_alert(
                db,
                AlertType(anomaly["severity"]),
                TITLES[anomaly["type"]],
                anomaly["description"],
                data={"anomaly_type": anomaly["type"], **anomaly["data"]},
                user_id=anomaly["user_id"],
                dedupe_key=anomaly["dedupe_key"],
            )
            if alert is None:
                continue
            created.append(alert)
            if anomaly["type"] == ESCALATION and settings.ESCALATION_AUTO_REJECT:
                self._auto_reject(db, anomaly)
        if created:
            logger.warning("Anomaly detection raised %d new alert(s)", len(created))
        return created

    def _auto_reject(self, db: Session, anomaly: dict) -> None:
        request_id = anomaly["data"]["request_id"]
        request = self.approvals.get(db, request_id)
        if request.status != ChangeRequestStatus.pending:
            return
        self.approvals.reject(
            db, request_id, None,
            notes=f"Auto-rejected: requested high-risk permission "
                  f"'{anomaly['data']['requested_permission']}'",
            action="change_request.auto_rejected",
        )

    # ---- Heuristics ----

    @staticmethod
    def _grants_in_window(db: Session, start: datetime, end: datetime):
        return (
            db.query(TemporaryPermission, Permission)
            .join(Permission, Permission.id == TemporaryPermission.permission_id)
            .filter(
                TemporaryPermission.is_active.is_(True),
                TemporaryPermission.granted_at >= start,
                TemporaryPermission.granted_at <= end,
            )
            .all()
        )

    def _bulk_grants(self, db: Session, start: datetime, end: datetime) -> list[dict]:
        by_granter = defaultdict(list)
        for grant, _ in self._grants_in_window(db, start, end):
            if grant.granted_by is not None:
                by_granter[grant.granted_by].append(grant.granted_at)

        found = []
        for granter, times in by_granter.items():
            count, burst_start = _max_in_window(times, settings.BULK_GRANT_WINDOW_MINUTES)
            if count > settings.BULK_GRANT_THRESHOLD:
                found.append({
                    "type": BULK_GRANTS,
                    "severity": AlertType.medium.value,
                    "user_id": granter,
                    "description": f"User {granter} issued {count} temporary permission grants "
                                   f"within {settings.BULK_GRANT_WINDOW_MINUTES} minutes",
                    "data": {"grant_count": count, "burst_start": burst_start},
                    "dedupe_key": f"bulk:{granter}:{burst_start:%Y%m%d%H}",
                })
        return found

    def _high_risk_grants(self, db: Session, start: datetime, end: datetime) -> list[dict]:
        by_user = defaultdict(set)
        for grant, permission in self._grants_in_window(db, start, end):
            if is_high_risk(permission):
                by_user[grant.user_id].add(permission.name)

        found = []
        for user_id, names in by_user.items():
            if len(names) >= settings.HIGH_RISK_GRANT_THRESHOLD:
                found.append({
                    "type": HIGH_RISK_GRANTS,
                    "severity": AlertType.high.value,
                    "user_id": user_id,
                    "description": f"User {user_id} received {len(names)} high-risk temporary permissions",
                    "data": {"high_risk_permissions": len(names), "permissions": sorted(names)},
                    "dedupe_key": f"high_risk:{user_id}:{start:%Y%m%d%H}",
                })
        return found

    @staticmethod
    def _permission_activity(db: Session, start: datetime, end: datetime) -> list[AuditLog]:
        return (
            db.query(AuditLog)
            .filter(
                AuditLog.module == "permissions",
                AuditLog.actor_id.isnot(None),
                AuditLog.created_at >= start,
                AuditLog.created_at <= end,
            )
            .all()
        )

    def _rapid_changes(self, db: Session, start: datetime, end: datetime) -> list[dict]:
        by_actor = defaultdict(list)
        for entry in self._permission_activity(db, start, end):
            by_actor[entry.actor_id].append(entry.created_at)

        found = []
        for actor_id, times in by_actor.items():
            count, burst_start = _max_in_window(times, settings.RAPID_CHANGE_WINDOW_MINUTES)
            if count > settings.RAPID_CHANGE_THRESHOLD:
                found.append({
                    "type": RAPID_CHANGES,
                    "severity": AlertType.high.value,
                    "user_id": actor_id,
                    "description": f"User {actor_id} made {count} permission changes "
                                   f"within {settings.RAPID_CHANGE_WINDOW_MINUTES} minutes",
                    "data": {"change_count": count, "burst_start": burst_start},
                    "dedupe_key": f"rapid:{actor_id}:{burst_start:%Y%m%d%H}",
                })
        return found

    @staticmethod
    def _in_unusual_hours(moment: datetime) -> bool:
        local = to_local(moment, settings.HOSPITAL_TIMEZONE)
        return settings.UNUSUAL_HOURS_START <= local.hour < settings.UNUSUAL_HOURS_END

    def _unusual_hours(self, db: Session, start: datetime, end: datetime) -> list[dict]:
        by_actor = defaultdict(list)
        for entry in self._permission_activity(db, start, end):
            if self._in_unusual_hours(entry.created_at):
                by_actor[entry.actor_id].append(entry.created_at)

        found = []
        for actor_id, times in by_actor.items():
            count = len(times)
            severity = AlertType.high if count >= settings.UNUSUAL_HOURS_VOLUME_HIGH else AlertType.medium
            found.append({
                "type": UNUSUAL_HOURS,
                "severity": severity.value,
                "user_id": actor_id,
                "description": f"User {actor_id} performed {count} permission action(s) "
                               f"between {settings.UNUSUAL_HOURS_START:02d}:00 and "
                               f"{settings.UNUSUAL_HOURS_END:02d}:00 {settings.HOSPITAL_TIMEZONE}",
                "data": {
                    "activity_count": count,
                    "hours": [settings.UNUSUAL_HOURS_START, settings.UNUSUAL_HOURS_END],
                },
                "dedupe_key": f"unusual:{actor_id}:{to_local(min(times), settings.HOSPITAL_TIMEZONE):%Y%m%d}",
            })
        return found

    def _escalation_attempts(self, db: Session, start: datetime, end: datetime) -> list[dict]:
        """Pending requests that would hand a high-risk permission to someone lacking it."""
        pending = db.query(PermissionChangeRequest).filter(
            PermissionChangeRequest.status == ChangeRequestStatus.pending,
        ).all()

        found = []
        for request in pending:
            if request.expires_at is not None and request.expires_at <= end:
                continue
            ids = request.permissions_to_add
            if not ids:
                continue
            for permission in db.query(Permission).filter(Permission.id.in_(ids)).all():
                if not is_high_risk(permission):
                    continue
                if self.evaluator.explain(db, request.user_id, permission.name, now=end).allowed:
                    continue
                found.append({
                    "type": ESCALATION,
                    "severity": AlertType.high.value,
                    "user_id": request.user_id,
                    "description": f"Change request {request.id} asks for high-risk permission "
                                   f"'{permission.name}' for user {request.user_id}",
                    "data": {
                        "request_id": request.id,
                        "requested_by": request.requested_by,
                        "requested_permission": permission.name,
                        "risk_level": RiskLevel(permission.risk_level).value,
                    },
                    "dedupe_key": f"escalation:{request.id}:{permission.id}",
                })
        return found

    # ---- Statistics ----

    def anomaly_stats(self, db: Session) -> dict:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_ago = now - timedelta(hours=24)

        alerts_today = db.query(PermissionAlert).filter(PermissionAlert.created_at >= today)
        recent_grants = self._grants_in_window(db, day_ago, now)
        failed_logins = db.query(AuditLog).filter(
            AuditLog.action == "login_failed",
            AuditLog.created_at >= day_ago,
        ).count()
        unusual = [
            e for e in self._permission_activity(db, day_ago, now)
            if self._in_unusual_hours(e.created_at)
        ]
        return {
            "total_anomalies_today": alerts_today.count(),
            "high_severity_count": alerts_today.filter(
                PermissionAlert.alert_type.in_([AlertType.high, AlertType.critical])
            ).count(),
            "recent_high_risk_grants": sum(1 for _, p in recent_grants if is_high_risk(p)),
            "failed_login_attempts": failed_logins,
            "unusual_hour_activities": len(unusual),
        }


anomaly_detector = AnomalyDetector(alert_service, permission_evaluator, approval_service)
