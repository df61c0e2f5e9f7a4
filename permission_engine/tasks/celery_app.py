"""Celery app and periodic tasks for permission maintenance."""

import logging
import threading
from datetime import timedelta

from celery import Celery
from celery.signals import worker_shutting_down

from permission_engine.core.config import settings

logger = logging.getLogger("permission_engine.tasks")

celery_app = Celery(
    "permission_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_soft_time_limit=600,  # 10 min soft limit
    task_time_limit=900,  # 15 min hard limit
)

celery_app.conf.beat_schedule = {
    "sweep-temporary-permissions": {
        "task": "sweep_temporary_permissions",
        "schedule": timedelta(seconds=settings.TEMPORARY_SWEEP_INTERVAL_SECONDS),
    },
    "expire-change-requests": {
        "task": "expire_change_requests",
        "schedule": timedelta(seconds=settings.TEMPORARY_SWEEP_INTERVAL_SECONDS),
    },
    "detect-permission-anomalies": {
        "task": "detect_permission_anomalies",
        "schedule": timedelta(seconds=settings.ANOMALY_DETECTION_INTERVAL_SECONDS),
    },
    "run-health-checks": {
        "task": "run_health_checks",
        "schedule": timedelta(seconds=settings.HEALTH_CHECK_INTERVAL_SECONDS),
    },
    "run-permission-cleanup": {
        "task": "run_permission_cleanup",
        "schedule": timedelta(days=1),
    },
}

# Set when the worker begins a warm shutdown; batch loops stop at the next boundary.
shutdown_requested = threading.Event()


@worker_shutting_down.connect
def _request_stop(**kwargs):
    logger.info("Worker shutting down; periodic permission tasks will stop after the current batch")
    shutdown_requested.set()


@celery_app.task(name="sweep_temporary_permissions")
def sweep_temporary_permissions() -> dict:
    """Deactivate expired temporary grants and invalidate their cache entries."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.temporary_permission_service import temporary_permission_service

    db = SessionLocal()
    try:
        count = temporary_permission_service.sweep(db, should_stop=shutdown_requested.is_set)
        return {"deactivated": count}
    finally:
        db.close()


@celery_app.task(name="expire_change_requests")
def expire_change_requests() -> dict:
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.approval_service import approval_service

    db = SessionLocal()
    try:
        count = approval_service.expire_stale(db, should_stop=shutdown_requested.is_set)
        return {"expired": count}
    finally:
        db.close()


@celery_app.task(name="detect_permission_anomalies")
def detect_permission_anomalies() -> dict:
    """Scan the last detection interval for suspicious permission activity."""
    from permission_engine.core.clock import utcnow
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.anomaly_detector import anomaly_detector

    if not settings.PERMISSION_MONITORING_ENABLED:
        return {"alerts": 0, "skipped": True}
    end = utcnow()
    start = end - timedelta(seconds=settings.ANOMALY_DETECTION_INTERVAL_SECONDS)
    db = SessionLocal()
    try:
        alerts = anomaly_detector.detect_anomalies(db, start, end)
        return {"alerts": len(alerts), "alert_ids": [a.id for a in alerts]}
    finally:
        db.close()


@celery_app.task(name="run_health_checks")
def run_health_checks() -> dict:
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.maintenance_service import maintenance_service

    db = SessionLocal()
    try:
        results = maintenance_service.run_health_checks(db)
        return maintenance_service.summarize(results)
    finally:
        db.close()


@celery_app.task(name="run_permission_cleanup")
def run_permission_cleanup() -> dict:
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.maintenance_service import maintenance_service

    if shutdown_requested.is_set():
        return {"skipped": True}
    db = SessionLocal()
    try:
        return maintenance_service.cleanup(db)
    finally:
        db.close()
