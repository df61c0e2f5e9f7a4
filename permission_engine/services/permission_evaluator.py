"""Resolves (user, permission) with fixed precedence.

Order, first match wins:
    1. super-admin bypass
    2. user override (allow or deny)
    3. role permissions, own + inherited
    4. legacy flat role-name table (additive only)
    5. active, unexpired temporary grant
    6. deny
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, Clock
from permission_engine.core.config import settings
from permission_engine.models.permission import Permission
from permission_engine.models.role import Role, LegacyRolePermission
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.models.user import User
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.services.cache_service import PermissionCache, permission_cache
from permission_engine.services.role_graph import RoleGraph

logger = logging.getLogger("permission_engine.evaluator")

SOURCE_SUPER_ADMIN = "super_admin"
SOURCE_OVERRIDE = "user_override"
SOURCE_ROLE = "role"
SOURCE_LEGACY = "legacy_role"
SOURCE_TEMPORARY = "temporary"
SOURCE_NONE = "none"
SOURCE_INACTIVE = "inactive_user"


@dataclass
class Decision:
    allowed: bool
    source: str
    valid_until: Optional[datetime] = None  # decision may flip on its own at this instant

    def to_cache(self) -> dict:
        data = asdict(self)
        data["valid_until"] = self.valid_until.isoformat() if self.valid_until else None
        return data


class PermissionEvaluator:
    """Answers HasPermission; safe to share across request threads."""

    def __init__(self, cache: PermissionCache, clock: Clock = utcnow):
        self.cache = cache
        self.clock = clock

    def has_permission(self, db: Session, user_id: int, permission_name: str) -> bool:
        """Cache-first check. Cache failures fall through to the database."""
        now = self.clock()
        key = self.cache.decision_key(user_id, permission_name)
        cached = self.cache.get_decision(key)
        if cached is not None:
            valid_until = cached.get("valid_until")
            if valid_until is None or datetime.fromisoformat(valid_until) > now:
                return bool(cached["allowed"])

        decision = self.explain(db, user_id, permission_name, now=now)
        ttl = None
        if decision.valid_until is not None:
            ttl = int((decision.valid_until - now).total_seconds())
            if ttl <= 0:
                return decision.allowed
        self.cache.set_decision(key, decision.to_cache(), ttl)
        return decision.allowed

    def explain(self, db: Session, user_id: int, permission_name: str,
                now: Optional[datetime] = None) -> Decision:
        """Resolve without touching the cache and report the deciding source."""
        now = now or self.clock()
        user = db.get(User, user_id)
        if user is None or not user.is_active:
            return Decision(False, SOURCE_INACTIVE)

        role = db.get(Role, user.role_id) if user.role_id else None

        if self._is_super_admin(user, role):
            return Decision(True, SOURCE_SUPER_ADMIN)

        override = (
            db.query(UserPermissionOverride)
            .join(Permission, Permission.id == UserPermissionOverride.permission_id)
            .filter(
                UserPermissionOverride.user_id == user.id,
                Permission.name == permission_name,
            )
            .first()
        )
        if override is not None and (override.expires_at is None or override.expires_at > now):
            return Decision(bool(override.allowed), SOURCE_OVERRIDE, override.expires_at)

        if role is not None and permission_name in self.role_permissions(db, role.id):
            return Decision(True, SOURCE_ROLE)

        legacy_names = {n for n in (user.legacy_role, role.name if role else None,
                                    role.slug if role else None) if n}
        if legacy_names:
            legacy = (
                db.query(LegacyRolePermission.id)
                .filter(
                    LegacyRolePermission.role_name.in_(legacy_names),
                    LegacyRolePermission.permission_name == permission_name,
                )
                .first()
            )
            if legacy is not None:
                return Decision(True, SOURCE_LEGACY)

        grants = (
            db.query(TemporaryPermission)
            .join(Permission, Permission.id == TemporaryPermission.permission_id)
            .filter(
                TemporaryPermission.user_id == user.id,
                Permission.name == permission_name,
                TemporaryPermission.is_active.is_(True),
                or_(TemporaryPermission.expires_at.is_(None), TemporaryPermission.expires_at > now),
            )
            .all()
        )
        if grants:
            if any(g.expires_at is None for g in grants):
                return Decision(True, SOURCE_TEMPORARY)
            return Decision(True, SOURCE_TEMPORARY, max(g.expires_at for g in grants))

        return Decision(False, SOURCE_NONE, override.expires_at if override else None)

    def role_permissions(self, db: Session, role_id: int) -> set[str]:
        """Effective permission names of a role, cached per global generation."""
        key = self.cache.role_key(role_id)
        names = self.cache.get_role_permissions(key)
        if names is None:
            names = RoleGraph.load(db).effective_permissions(role_id)
            self.cache.set_role_permissions(key, names)
        return names

    def is_super_admin(self, db: Session, user: Union[User, int, None]) -> bool:
        if isinstance(user, int):
            user = db.get(User, user)
        if user is None or not user.is_active:
            return False
        role = db.get(Role, user.role_id) if user.role_id else None
        return self._is_super_admin(user, role)

    @staticmethod
    def _is_super_admin(user: User, role: Optional[Role]) -> bool:
        return bool(user.is_super_admin) or (
            role is not None and role.slug == settings.SUPER_ADMIN_ROLE_SLUG
        )

    def legacy_divergence(self, db: Session) -> list[dict]:
        """Legacy (role, permission) pairs the role graph does not grant.

        Reported for manual cleanup; the evaluator keeps honouring them.
        """
        graph = RoleGraph.load(db)
        by_name: dict[str, int] = {}
        for node in graph.nodes.values():
            by_name[node.slug] = node.id
            by_name[node.name] = node.id

        divergent = []
        for row in db.query(LegacyRolePermission).order_by(LegacyRolePermission.role_name).all():
            role_id = by_name.get(row.role_name)
            if role_id is None:
                continue
            if row.permission_name not in graph.effective_permissions(role_id):
                divergent.append({
                    "role_name": row.role_name,
                    "role_id": role_id,
                    "permission_name": row.permission_name,
                })
        if divergent:
            logger.warning("%d legacy role permissions diverge from the role graph", len(divergent))
        return divergent


permission_evaluator = PermissionEvaluator(permission_cache)
