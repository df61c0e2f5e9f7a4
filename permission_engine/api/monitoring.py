"""Permission monitoring / audit API router."""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from permission_engine.core.security import require_view_monitoring
from permission_engine.db.session import get_db
from permission_engine.models.alert import AlertType
from permission_engine.schemas.schemas import ApiResponse, AlertOut, AuditLogOut, DetectRequest
from permission_engine.services.alert_service import alert_service
from permission_engine.services.anomaly_detector import anomaly_detector
from permission_engine.services.audit_service import audit_service
from permission_engine.services.monitoring_service import monitoring_service

router = APIRouter(prefix="/admin/monitoring", tags=["monitoring"])


@router.get("/alerts", response_model=ApiResponse)
def list_active_alerts(
    alert_type: Optional[AlertType] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    alerts = alert_service.active_alerts(db, alert_type)
    return ApiResponse(message="Active alerts", data=[AlertOut.model_validate(a) for a in alerts])


@router.get("/alerts/statistics", response_model=ApiResponse)
def alert_statistics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    return ApiResponse(message="Alert statistics", data=alert_service.statistics(db, start, end))


@router.post("/alerts/{alert_id}/acknowledge", response_model=ApiResponse)
def acknowledge_alert(
    alert_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    alert = alert_service.acknowledge(db, alert_id, user_id)
    return ApiResponse(message="Alert acknowledged", data=AlertOut.model_validate(alert))


@router.post("/alerts/{alert_id}/resolve", response_model=ApiResponse)
def resolve_alert(
    alert_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    alert = alert_service.resolve(db, alert_id, user_id)
    return ApiResponse(message="Alert resolved", data=AlertOut.model_validate(alert))


@router.post("/detect", response_model=ApiResponse)
def run_detection(
    body: Optional[DetectRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    """Run anomaly detection now instead of waiting for the schedule."""
    alerts = anomaly_detector.detect_anomalies(
        db,
        body.window_start if body else None,
        body.window_end if body else None,
    )
    return ApiResponse(
        message=f"{len(alerts)} new alert(s)",
        data=[AlertOut.model_validate(a) for a in alerts],
    )


@router.get("/anomaly-stats", response_model=ApiResponse)
def anomaly_stats(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    return ApiResponse(message="Anomaly statistics", data=anomaly_detector.anomaly_stats(db))


@router.get("/health", response_model=ApiResponse)
def health_status(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    """Latest recorded result per health check type."""
    return ApiResponse(message="Health status", data=monitoring_service.health_status(db))


@router.get("/audit", response_model=ApiResponse)
def get_audit_logs(
    action: Optional[str] = Query(None),
    module: Optional[str] = Query(None),
    actor_id: Optional[int] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_view_monitoring),
):
    """Query audit logs."""
    result = audit_service.query_logs(db, actor_id, action, module, since, until, page, page_size)
    return ApiResponse(
        message="Audit logs",
        data={
            "logs": [AuditLogOut.model_validate(log) for log in result["logs"]],
            "total": result["total"],
            "page": result["page"],
        },
    )
