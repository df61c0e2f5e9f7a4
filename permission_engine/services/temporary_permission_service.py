"""Temporary permission service — issue, revoke, and expire time-bound grants."""

import logging
from datetime import datetime
from typing import Optional, Callable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, to_naive_utc, Clock
from permission_engine.core.config import settings
from permission_engine.core.exceptions import (
    ValidationError, ResourceNotFoundError, ResourceConflictError, AuthorizationError,
)
from permission_engine.models.permission import Permission
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.models.user import User
from permission_engine.services.audit_service import audit_service
from permission_engine.services.cache_service import (
    PermissionCache, permission_cache, commit_and_invalidate,
)
from permission_engine.services.permission_evaluator import PermissionEvaluator, permission_evaluator

logger = logging.getLogger("permission_engine.temporary")


class TemporaryPermissionService:
    """Lifecycle of TemporaryPermission rows."""

    def __init__(self, cache: PermissionCache, evaluator: PermissionEvaluator, clock: Clock = utcnow):
        self.cache = cache
        self.evaluator = evaluator
        self.clock = clock

    def grant(
        self,
        db: Session,
        user_id: int,
        permission_id: int,
        granted_by: int,
        reason: str,
        expires_at: Optional[datetime],
        commit: bool = True,
    ) -> TemporaryPermission:
        """Issue a grant.

        Raises:
            ValidationError: empty reason, past expiry, unknown permission.
            ResourceConflictError: an active grant already covers the pair.
        """
        now = self.clock()
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A business reason is required for temporary permissions")
        if expires_at is not None:
            expires_at = to_naive_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("Expiry must be in the future")

        user = db.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError(f"User {user_id} not found")
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise ValidationError(f"Unknown permission id {permission_id}")

        existing = db.query(TemporaryPermission).filter(
            TemporaryPermission.user_id == user_id,
            TemporaryPermission.permission_id == permission_id,
            TemporaryPermission.is_active.is_(True),
            or_(TemporaryPermission.expires_at.is_(None), TemporaryPermission.expires_at > now),
        ).first()
        if existing is not None:
            raise ResourceConflictError("User already has an active temporary permission for this action.")

        grant = TemporaryPermission(
            user_id=user_id,
            permission_id=permission_id,
            granted_by=granted_by,
            granted_at=now,
            expires_at=expires_at,
            reason=reason,
            is_active=True,
        )
        db.add(grant)
        db.flush()
        audit_service.log(
            db, granted_by, "temporary_permission.granted",
            description=f"Granted '{permission.name}' to user {user_id} until {expires_at or 'revoked'}",
            severity="warning" if permission.is_high_risk else "info",
            resource_type="temporary_permission", resource_id=grant.id, target_user_id=user_id,
            details={"permission": permission.name, "reason": reason, "expires_at": expires_at},
            created_at=now,
            commit=False,
        )
        if commit:
            commit_and_invalidate(db, self.cache, user_ids=[user_id])
            db.refresh(grant)
        logger.info("Temporary permission %s granted to user %s by %s", permission.name, user_id, granted_by)
        return grant

    def revoke(self, db: Session, grant_id: int, revoked_by: int, enforce_owner: bool = True) -> TemporaryPermission:
        """Deactivate a grant. Only its granter or a super admin may revoke."""
        grant = self.get(db, grant_id)
        if enforce_owner and grant.granted_by != revoked_by and not self.evaluator.is_super_admin(db, revoked_by):
            raise AuthorizationError("Unauthorized to revoke this permission.")
        if not grant.is_active:
            return grant
        now = self.clock()
        self._deactivate(db, grant, revoked_by, now)
        audit_service.log(
            db, revoked_by, "temporary_permission.revoked",
            description=f"Revoked temporary permission {grant.id} of user {grant.user_id}",
            resource_type="temporary_permission", resource_id=grant.id, target_user_id=grant.user_id,
            created_at=now,
            commit=False,
        )
        commit_and_invalidate(db, self.cache, user_ids=[grant.user_id])
        db.refresh(grant)
        return grant

    def revoke_for_user(self, db: Session, user_id: int, permission_id: int, revoked_by: Optional[int]) -> int:
        """Deactivate active grants for the pair inside the caller's transaction."""
        now = self.clock()
        grants = db.query(TemporaryPermission).filter(
            TemporaryPermission.user_id == user_id,
            TemporaryPermission.permission_id == permission_id,
            TemporaryPermission.is_active.is_(True),
        ).all()
        for grant in grants:
            self._deactivate(db, grant, revoked_by, now)
        return len(grants)

    @staticmethod
    def _deactivate(db: Session, grant: TemporaryPermission, revoked_by: Optional[int], now: datetime) -> None:
        grant.is_active = False
        grant.revoked_by = revoked_by
        grant.revoked_at = now
        db.flush()

    def sweep(
        self,
        db: Session,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Deactivate every active grant whose expiry has passed.

        Works in committed batches; `should_stop` is polled between batches.
        """
        now = now or self.clock()
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        total = 0
        while True:
            if should_stop is not None and should_stop():
                logger.info("Temporary permission sweep stopped after %d rows", total)
                break
            batch = (
                db.query(TemporaryPermission)
                .filter(
                    TemporaryPermission.is_active.is_(True),
                    TemporaryPermission.expires_at.isnot(None),
                    TemporaryPermission.expires_at <= now,
                )
                .order_by(TemporaryPermission.id)
                .limit(batch_size)
                .all()
            )
            if not batch:
                break
            user_ids = set()
            for grant in batch:
                grant.is_active = False
                user_ids.add(grant.user_id)
            audit_service.log(
                db, None, "temporary_permission.expired",
                description=f"Expired {len(batch)} temporary permission(s)",
                resource_type="temporary_permission",
                details={"ids": [g.id for g in batch]},
                created_at=now,
                commit=False,
            )
            commit_and_invalidate(db, self.cache, user_ids=user_ids)
            total += len(batch)
            if len(batch) < batch_size:
                break
        if total:
            logger.info("Swept %d expired temporary permissions", total)
        return total

    @staticmethod
    def get(db: Session, grant_id: int) -> TemporaryPermission:
        grant = db.get(TemporaryPermission, grant_id)
        if not grant:
            raise ResourceNotFoundError(f"Temporary permission {grant_id} not found")
        return grant

    def list_active(self, db: Session, user_id: Optional[int] = None) -> list[TemporaryPermission]:
        now = self.clock()
        query = db.query(TemporaryPermission).filter(
            TemporaryPermission.is_active.is_(True),
            or_(TemporaryPermission.expires_at.is_(None), TemporaryPermission.expires_at > now),
        )
        if user_id:
            query = query.filter(TemporaryPermission.user_id == user_id)
        return query.order_by(TemporaryPermission.expires_at).all()

    def find_active(self, db: Session, user_id: int, permission_name: str) -> Optional[TemporaryPermission]:
        """The effective grant for (user, permission name), if any."""
        now = self.clock()
        return (
            db.query(TemporaryPermission)
            .join(Permission, Permission.id == TemporaryPermission.permission_id)
            .filter(
                TemporaryPermission.user_id == user_id,
                Permission.name == permission_name,
                TemporaryPermission.is_active.is_(True),
                or_(TemporaryPermission.expires_at.is_(None), TemporaryPermission.expires_at > now),
            )
            .first()
        )

    def delete_expired(self, db: Session, now: Optional[datetime] = None) -> int:
        """Maintenance cleanup: drop rows that expired before `now`."""
        now = now or self.clock()
        expired = db.query(TemporaryPermission).filter(
            TemporaryPermission.expires_at.isnot(None),
            TemporaryPermission.expires_at < now,
        )
        user_ids = {uid for (uid,) in expired.with_entities(TemporaryPermission.user_id).distinct().all()}
        count = expired.delete(synchronize_session=False)
        if count:
            audit_service.log(
                db, None, "temporary_permission.cleaned_up", module="maintenance",
                description=f"Deleted {count} expired temporary permission(s)",
                created_at=now,
                commit=False,
            )
        commit_and_invalidate(db, self.cache, user_ids=user_ids)
        return count


temporary_permission_service = TemporaryPermissionService(permission_cache, permission_evaluator)
