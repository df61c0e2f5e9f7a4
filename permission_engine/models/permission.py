"""Permission catalog and dependency edge models."""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum,
    UniqueConstraint, func,
)
from permission_engine.db.base import Base
import enum


class RiskLevel(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


RISK_ORDER = {
    RiskLevel.low: 0,
    RiskLevel.medium: 1,
    RiskLevel.high: 2,
    RiskLevel.critical: 3,
}


class Permission(Base):
    """A named permission on a resource/action pair."""
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)  # e.g. "view-patients"
    description = Column(String(255), nullable=True)
    resource = Column(String(100), nullable=True)
    action = Column(String(50), nullable=True)
    module = Column(String(50), nullable=True, index=True)
    risk_level = Column(Enum(RiskLevel), default=RiskLevel.low, nullable=False)
    requires_approval = Column(Boolean, default=False, nullable=False)
    is_critical = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    @property
    def is_high_risk(self) -> bool:
        return RISK_ORDER[RiskLevel(self.risk_level)] >= RISK_ORDER[RiskLevel.high]


class PermissionDependency(Base):
    """Edge `permission -> depends_on`; checked at assignment time only."""
    __tablename__ = "permission_dependencies"
    __table_args__ = (
        UniqueConstraint("permission_id", "depends_on_permission_id", name="uq_permission_dependency"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True)
    depends_on_permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
