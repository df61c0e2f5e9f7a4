"""Per-user allow/deny overrides."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, to_naive_utc, Clock
from permission_engine.core.exceptions import ValidationError, ResourceNotFoundError
from permission_engine.models.permission import Permission
from permission_engine.models.user import User
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.services.audit_service import audit_service
from permission_engine.services.cache_service import (
    PermissionCache, permission_cache, commit_and_invalidate,
)


class OverrideService:
    """Writes user overrides; a deny here outranks every role grant."""

    def __init__(self, cache: PermissionCache, clock: Clock = utcnow):
        self.cache = cache
        self.clock = clock

    def upsert(
        self,
        db: Session,
        user_id: int,
        permission_id: int,
        allowed: bool,
        granted_by: Optional[int],
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> UserPermissionOverride:
        """Create or replace the override. With commit=False the caller commits."""
        if db.get(User, user_id) is None:
            raise ResourceNotFoundError(f"User {user_id} not found")
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise ValidationError(f"Unknown permission id {permission_id}")
        if expires_at is not None:
            expires_at = to_naive_utc(expires_at)
            if expires_at <= self.clock():
                raise ValidationError("Override expiry must be in the future")

        override = db.query(UserPermissionOverride).filter(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id == permission_id,
        ).first()
        if override is None:
            override = UserPermissionOverride(user_id=user_id, permission_id=permission_id)
            db.add(override)
        override.allowed = bool(allowed)
        override.granted_by = granted_by
        override.reason = reason
        override.expires_at = expires_at
        db.flush()

        audit_service.log(
            db, granted_by,
            "user_permission.allowed" if allowed else "user_permission.denied",
            description=f"{'Allowed' if allowed else 'Denied'} '{permission.name}' for user {user_id}",
            severity="warning" if permission.is_high_risk and allowed else "info",
            resource_type="permission", resource_id=permission.id, target_user_id=user_id,
            details={"reason": reason, "expires_at": expires_at},
            created_at=self.clock(),
            commit=False,
        )
        if commit:
            commit_and_invalidate(db, self.cache, user_ids=[user_id])
            db.refresh(override)
        return override

    def remove(
        self,
        db: Session,
        user_id: int,
        permission_id: int,
        actor_id: Optional[int],
        commit: bool = True,
    ) -> bool:
        """Delete the override row if present. Returns whether one existed."""
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise ValidationError(f"Unknown permission id {permission_id}")
        override = db.query(UserPermissionOverride).filter(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.permission_id == permission_id,
        ).first()
        if override is not None:
            db.delete(override)
            db.flush()
        audit_service.log(
            db, actor_id, "user_permission.removed",
            description=f"Removed '{permission.name}' override for user {user_id}",
            resource_type="permission", resource_id=permission.id, target_user_id=user_id,
            details={"existed": override is not None},
            created_at=self.clock(),
            commit=False,
        )
        if commit:
            commit_and_invalidate(db, self.cache, user_ids=[user_id])
        return override is not None

    @staticmethod
    def allowed_permission_ids(db: Session, user_id: int, now: datetime) -> set[int]:
        rows = db.query(UserPermissionOverride).filter(
            UserPermissionOverride.user_id == user_id,
            UserPermissionOverride.allowed.is_(True),
        ).all()
        return {r.permission_id for r in rows if r.expires_at is None or r.expires_at > now}


override_service = OverrideService(permission_cache)
