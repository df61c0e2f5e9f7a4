"""Health probes for the permission subsystem."""

import json
import logging
import time
import uuid
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, Clock
from permission_engine.core.config import settings
from permission_engine.core.exceptions import ValidationError
from permission_engine.models.alert import PermissionHealthCheck
from permission_engine.services.cache_service import CacheBackend, CacheBackendError, cache_backend

logger = logging.getLogger("permission_engine.monitoring")

CHECK_TYPES = ("database", "cache", "api_endpoints")

# Paths the api_endpoints probe expects on the mounted application.
REQUIRED_ROUTES = (
    "/admin/permissions/temporary-permissions",
    "/admin/permissions/grant-temporary",
    "/admin/permissions/check-temporary-permission",
    "/admin/permissions/change-requests",
)


class MonitoringService:
    """Runs and records health checks."""

    def __init__(self, backend: CacheBackend, clock: Clock = utcnow, route_paths: Optional[set[str]] = None):
        self.backend = backend
        self.clock = clock
        self.route_paths = route_paths

    def perform_health_check(self, db: Session, check_type: str) -> dict:
        """Run one probe and persist its result."""
        if check_type == "database":
            result = self._check_database(db)
        elif check_type == "cache":
            result = self._check_cache()
        elif check_type == "api_endpoints":
            result = self._check_api_endpoints()
        else:
            raise ValidationError(f"Unknown health check type '{check_type}'")

        result["check_type"] = check_type
        result["checked_at"] = self.clock()
        db.add(PermissionHealthCheck(
            check_type=check_type,
            status=result["status"],
            details_json=json.dumps(result["details"], default=str),
            checked_at=result["checked_at"],
        ))
        db.commit()
        if result["status"] != "healthy":
            logger.warning("Health check %s reported %s: %s", check_type, result["status"], result["details"])
        return result

    @staticmethod
    def _check_database(db: Session) -> dict:
        start = time.perf_counter()
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            db.rollback()
            return {"status": "critical", "details": {"error": str(e)}}
        elapsed_ms = (time.perf_counter() - start) * 1000
        return {
            "status": "warning" if elapsed_ms > settings.DB_SLOW_RESPONSE_MS else "healthy",
            "details": {"response_time_ms": round(elapsed_ms, 2)},
        }

    def _check_cache(self) -> dict:
        key = f"{settings.CACHE_KEY_PREFIX}:health:{uuid.uuid4().hex}"
        try:
            self.backend.set(key, "test", 10)
            value = self.backend.get(key)
            self.backend.delete(key)
        except CacheBackendError as e:
            return {"status": "critical", "details": {"error": str(e)}}
        working = value == "test"
        return {"status": "healthy" if working else "warning", "details": {"cache_working": working}}

    def _check_api_endpoints(self) -> dict:
        if self.route_paths is None:
            from permission_engine.main import app
            paths = {getattr(r, "path", None) for r in app.routes}
        else:
            paths = self.route_paths
        missing = [p for p in REQUIRED_ROUTES if p not in paths]
        return {
            "status": "critical" if missing else "healthy",
            "details": {"endpoints_checked": len(REQUIRED_ROUTES), "missing": missing},
        }

    @staticmethod
    def health_status(db: Session) -> dict:
        """Latest recorded status per check type."""
        status = {}
        for check_type in CHECK_TYPES:
            latest = (
                db.query(PermissionHealthCheck)
                .filter(PermissionHealthCheck.check_type == check_type)
                .order_by(PermissionHealthCheck.checked_at.desc(), PermissionHealthCheck.id.desc())
                .first()
            )
            if latest is not None:
                status[check_type] = latest.status
        return status


monitoring_service = MonitoringService(cache_backend)
