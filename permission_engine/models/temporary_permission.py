"""Time-bound permission grant model."""

from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey, Index, func
from permission_engine.db.base import Base


class TemporaryPermission(Base):
    """Grant of one permission to one user until `expires_at`.

    Rows are never deleted on revoke; `is_active` is cleared instead.
    """
    __tablename__ = "temporary_permissions"
    __table_args__ = (
        Index("ix_temporary_permissions_lookup", "user_id", "permission_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    granted_at = Column(DateTime, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    reason = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    revoked_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def is_effective(self, now) -> bool:
        return bool(self.is_active) and (self.expires_at is None or self.expires_at > now)
