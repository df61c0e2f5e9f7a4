"""Permission change request (approval workflow) model."""

import enum
import json

from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, Enum, func
from permission_engine.db.base import Base


class ChangeRequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"


TERMINAL_STATUSES = frozenset({
    ChangeRequestStatus.approved,
    ChangeRequestStatus.rejected,
    ChangeRequestStatus.expired,
})


class PermissionChangeRequest(Base):
    """Proposed additions/removals of a user's permissions awaiting review."""
    __tablename__ = "permission_change_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    permissions_to_add_json = Column(Text, nullable=False, default="[]")
    permissions_to_remove_json = Column(Text, nullable=False, default="[]")
    reason = Column(Text, nullable=False)
    status = Column(Enum(ChangeRequestStatus), default=ChangeRequestStatus.pending, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=True)  # request expiry
    grant_expires_at = Column(DateTime, nullable=True)  # if set, adds become temporary grants
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def permissions_to_add(self) -> list[int]:
        return json.loads(self.permissions_to_add_json or "[]")

    @permissions_to_add.setter
    def permissions_to_add(self, value) -> None:
        self.permissions_to_add_json = json.dumps(sorted({int(v) for v in value or []}))

    @property
    def permissions_to_remove(self) -> list[int]:
        return json.loads(self.permissions_to_remove_json or "[]")

    @permissions_to_remove.setter
    def permissions_to_remove(self, value) -> None:
        self.permissions_to_remove_json = json.dumps(sorted({int(v) for v in value or []}))

    @property
    def is_terminal(self) -> bool:
        return ChangeRequestStatus(self.status) in TERMINAL_STATUSES
