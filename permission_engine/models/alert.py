"""Permission alert and health check models."""

import enum
import json

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, func
from permission_engine.db.base import Base


class AlertType(str, enum.Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


class AlertStatus(str, enum.Enum):
    active = "active"
    acknowledged = "acknowledged"
    resolved = "resolved"


class PermissionAlert(Base):
    """Alert raised by anomaly detection or a failed health check."""
    __tablename__ = "permission_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(Enum(AlertType), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data_json = Column(Text, nullable=True)
    status = Column(Enum(AlertStatus), default=AlertStatus.active, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    dedupe_key = Column(String(255), nullable=True, index=True)
    acknowledged_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def data(self) -> dict:
        return json.loads(self.data_json) if self.data_json else {}


class PermissionHealthCheck(Base):
    """Result of one health probe (database, cache, api_endpoints)."""
    __tablename__ = "permission_health_checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    check_type = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # healthy | warning | critical
    details_json = Column(Text, nullable=True)
    checked_at = Column(DateTime, nullable=False, index=True)
