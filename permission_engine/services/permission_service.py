"""Permission catalog service — definitions, dependency edges, validation."""

from typing import Optional, Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from permission_engine.core.exceptions import (
    ValidationError, ResourceNotFoundError, ResourceConflictError,
)
from permission_engine.models.permission import Permission, PermissionDependency, RiskLevel
from permission_engine.models.role import Role, RolePermissionMapping
from permission_engine.models.user import User
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.services.audit_service import audit_service


class PermissionService:
    """Manages the permission catalog and its dependency DAG."""

    @staticmethod
    def create(
        db: Session,
        name: str,
        actor_id: Optional[int] = None,
        description: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
        module: Optional[str] = None,
        risk_level: RiskLevel = RiskLevel.low,
        requires_approval: bool = False,
        is_critical: bool = False,
    ) -> Permission:
        """Register a new permission."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Permission name is required")
        if db.query(Permission).filter(Permission.name == name).first():
            raise ResourceConflictError(f"Permission '{name}' already exists")

        permission = Permission(
            name=name,
            description=description,
            resource=resource,
            action=action,
            module=module,
            risk_level=RiskLevel(risk_level),
            requires_approval=requires_approval,
            is_critical=is_critical,
        )
        db.add(permission)
        db.flush()
        audit_service.log(
            db, actor_id, "permission.created",
            description=f"Created permission '{name}'",
            resource_type="permission", resource_id=permission.id,
            details={"risk_level": RiskLevel(risk_level).value, "module": module},
            commit=False,
        )
        db.commit()
        db.refresh(permission)
        return permission

    @staticmethod
    def get(db: Session, permission_id: int) -> Permission:
        permission = db.get(Permission, permission_id)
        if not permission:
            raise ResourceNotFoundError(f"Permission {permission_id} not found")
        return permission

    @staticmethod
    def list_permissions(db: Session, module: Optional[str] = None) -> list[Permission]:
        query = db.query(Permission)
        if module:
            query = query.filter(Permission.module == module)
        return query.order_by(Permission.module, Permission.name).all()

    @staticmethod
    def add_dependency(
        db: Session,
        permission_id: int,
        depends_on_permission_id: int,
        actor_id: Optional[int] = None,
    ) -> PermissionDependency:
        """Declare `permission -> depends_on`, keeping the graph acyclic."""
        permission = PermissionService.get(db, permission_id)
        required = PermissionService.get(db, depends_on_permission_id)
        if permission.id == required.id:
            raise ValidationError(f"Permission '{permission.name}' cannot depend on itself")

        existing = db.query(PermissionDependency).filter(
            PermissionDependency.permission_id == permission.id,
            PermissionDependency.depends_on_permission_id == required.id,
        ).first()
        if existing:
            return existing

        if permission.id in PermissionService._requirements_closure(db, [required.id]):
            raise ValidationError(
                f"Dependency '{permission.name}' -> '{required.name}' would create a cycle"
            )

        edge = PermissionDependency(
            permission_id=permission.id,
            depends_on_permission_id=required.id,
        )
        db.add(edge)
        db.flush()
        audit_service.log(
            db, actor_id, "permission.dependency_added",
            description=f"'{permission.name}' now requires '{required.name}'",
            resource_type="permission", resource_id=permission.id,
            commit=False,
        )
        db.commit()
        return edge

    @staticmethod
    def _requirements_closure(db: Session, start_ids: Iterable[int]) -> set[int]:
        """Every permission reachable from `start_ids` along depends-on edges."""
        edges: dict[int, list[int]] = {}
        for pid, dep in db.query(
            PermissionDependency.permission_id, PermissionDependency.depends_on_permission_id
        ).all():
            edges.setdefault(pid, []).append(dep)

        seen: set[int] = set()
        stack = list(start_ids)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edges.get(current, ()))
        return seen

    @staticmethod
    def validate_dependencies(db: Session, permission_ids: Iterable[int]) -> list[str]:
        """One message per dependency missing from the candidate set.

        Advisory for assignment forms; never consulted by HasPermission.
        """
        candidate = {int(p) for p in permission_ids}
        if not candidate:
            return []

        rows = (
            db.query(PermissionDependency)
            .filter(PermissionDependency.permission_id.in_(candidate))
            .order_by(PermissionDependency.permission_id, PermissionDependency.depends_on_permission_id)
            .all()
        )
        ids = {r.permission_id for r in rows} | {r.depends_on_permission_id for r in rows}
        names = dict(db.query(Permission.id, Permission.name).filter(Permission.id.in_(ids)).all()) if ids else {}

        errors = []
        for dep in rows:
            if dep.depends_on_permission_id not in candidate:
                errors.append(
                    f"Permission '{names.get(dep.permission_id, dep.permission_id)}' requires "
                    f"'{names.get(dep.depends_on_permission_id, dep.depends_on_permission_id)}'"
                )
        return errors

    @staticmethod
    def audit_report(db: Session) -> dict:
        """Roles with user counts, permissions with role counts, unused permissions."""
        user_counts = dict(
            db.query(User.role_id, func.count(User.id)).group_by(User.role_id).all()
        )
        role_counts = dict(
            db.query(RolePermissionMapping.permission_id, func.count(RolePermissionMapping.id))
            .group_by(RolePermissionMapping.permission_id)
            .all()
        )
        overridden = {
            pid for (pid,) in db.query(UserPermissionOverride.permission_id).distinct().all()
        }
        permissions = db.query(Permission).order_by(Permission.name).all()

        return {
            "roles": [
                {"id": r.id, "slug": r.slug, "users_count": user_counts.get(r.id, 0)}
                for r in db.query(Role).order_by(Role.priority.desc()).all()
            ],
            "permissions": [
                {"id": p.id, "name": p.name, "roles_count": role_counts.get(p.id, 0)}
                for p in permissions
            ],
            "unused_permissions": [
                p.name for p in permissions
                if p.id not in role_counts and p.id not in overridden
            ],
        }


permission_service = PermissionService()
