"""Role service — the single mutation path for roles and role permissions."""

import re
from typing import Optional, Iterable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from permission_engine.core.exceptions import (
    ValidationError, InheritanceError, DependencyError,
    ResourceNotFoundError, ResourceConflictError,
)
from permission_engine.models.permission import Permission
from permission_engine.models.role import Role, RolePermissionMapping
from permission_engine.models.user import User
from permission_engine.schemas.schemas import RoleConfiguration
from permission_engine.services.audit_service import audit_service
from permission_engine.services.cache_service import (
    PermissionCache, permission_cache, commit_and_invalidate,
)
from permission_engine.services.permission_evaluator import PermissionEvaluator, permission_evaluator
from permission_engine.services.permission_service import permission_service
from permission_engine.services.role_graph import RoleGraph, RoleNode

_UNSET = object()


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class RoleService:
    """Creates, edits and deletes roles; every write invalidates the cache."""

    def __init__(self, cache: PermissionCache, evaluator: PermissionEvaluator):
        self.cache = cache
        self.evaluator = evaluator

    @staticmethod
    def get(db: Session, role_id: int) -> Role:
        role = db.get(Role, role_id)
        if not role:
            raise ResourceNotFoundError(f"Role {role_id} not found")
        return role

    @staticmethod
    def list_roles(db: Session) -> list[Role]:
        return db.query(Role).order_by(Role.priority.desc(), Role.slug).all()

    @staticmethod
    def _check_parent(graph: RoleGraph, child: RoleNode, parent_id: Optional[int]) -> None:
        if parent_id is None:
            return
        parent = graph.get(parent_id)
        if parent is None:
            raise ResourceNotFoundError(f"Parent role {parent_id} not found")
        violation = graph.inheritance_violation(child, parent)
        if violation:
            raise InheritanceError(violation)

    @staticmethod
    def _check_children(graph: RoleGraph, node: RoleNode) -> None:
        for child_id in [n.id for n in graph.nodes.values() if n.parent_id == node.id]:
            violation = graph.inheritance_violation(graph.get(child_id), node)
            if violation:
                raise InheritanceError(violation)

    @staticmethod
    def _permission_ids_exist(db: Session, permission_ids: set[int]) -> None:
        if not permission_ids:
            return
        found = {pid for (pid,) in db.query(Permission.id).filter(Permission.id.in_(permission_ids)).all()}
        missing = sorted(permission_ids - found)
        if missing:
            raise ValidationError(f"Unknown permission ids: {missing}")

    def create_role(
        self,
        db: Session,
        name: str,
        priority: int,
        actor_id: Optional[int] = None,
        description: Optional[str] = None,
        parent_role_id: Optional[int] = None,
        is_system: bool = False,
        configuration: Optional[dict] = None,
        permission_ids: Iterable[int] = (),
    ) -> Role:
        """Create a role, validating slug, inheritance and dependencies."""
        name = (name or "").strip()
        slug = slugify(name)
        if not slug:
            raise ValidationError("Role name is required")
        if db.query(Role).filter(Role.slug == slug).first():
            raise ResourceConflictError(f"Role '{slug}' already exists")

        graph = RoleGraph.load(db)
        node = RoleNode(id=None, slug=slug, name=name, priority=priority, is_system=is_system)
        self._check_parent(graph, node, parent_role_id)

        permission_ids = {int(p) for p in permission_ids}
        self._permission_ids_exist(db, permission_ids)
        inherited = self._inherited_permission_ids(db, graph, parent_role_id)
        errors = permission_service.validate_dependencies(db, permission_ids | inherited)
        if errors:
            raise DependencyError(errors)

        role = Role(
            name=name,
            slug=slug,
            description=description,
            priority=priority,
            is_system=is_system,
            parent_role_id=parent_role_id,
            configuration_json=self._configuration_json(configuration),
        )
        db.add(role)
        db.flush()
        for pid in sorted(permission_ids):
            db.add(RolePermissionMapping(role_id=role.id, permission_id=pid))
        audit_service.log(
            db, actor_id, "role.created", module="roles",
            description=f"Created role '{slug}' (priority {priority})",
            resource_type="role", resource_id=role.id,
            details={"parent_role_id": parent_role_id, "permission_ids": sorted(permission_ids)},
            commit=False,
        )
        commit_and_invalidate(db, self.cache, everyone=True)
        db.refresh(role)
        return role

    def update_role(
        self,
        db: Session,
        role_id: int,
        actor_id: Optional[int] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[int] = None,
        parent_role_id=_UNSET,
        configuration: Optional[dict] = None,
    ) -> Role:
        """Edit a non-system role. Hierarchy rules are checked both ways."""
        role = self.get(db, role_id)
        if role.is_system:
            raise ValidationError(f"System role '{role.slug}' cannot be modified")

        changes = {}
        graph = RoleGraph.load(db)
        node = graph.get(role.id)
        if priority is not None and priority != role.priority:
            node.priority = priority
            changes["priority"] = [role.priority, priority]
        new_parent = role.parent_role_id if parent_role_id is _UNSET else parent_role_id
        if new_parent != role.parent_role_id:
            changes["parent_role_id"] = [role.parent_role_id, new_parent]
        self._check_parent(graph, node, new_parent)
        self._check_children(graph, node)

        if name is not None and name.strip() and name.strip() != role.name:
            slug = slugify(name)
            clash = db.query(Role).filter(Role.slug == slug, Role.id != role.id).first()
            if clash:
                raise ResourceConflictError(f"Role '{slug}' already exists")
            changes["name"] = [role.name, name.strip()]
            role.name = name.strip()
            role.slug = slug
        if description is not None:
            role.description = description
        if configuration is not None:
            role.configuration_json = self._configuration_json(configuration)
            changes["configuration"] = True

        role.priority = node.priority
        role.parent_role_id = new_parent
        audit_service.log(
            db, actor_id, "role.updated", module="roles",
            description=f"Updated role '{role.slug}'",
            resource_type="role", resource_id=role.id, details=changes,
            commit=False,
        )
        commit_and_invalidate(db, self.cache, everyone=True)
        db.refresh(role)
        return role

    def delete_role(self, db: Session, role_id: int, actor_id: Optional[int] = None) -> None:
        """Delete a role nobody holds; its children move up to its parent."""
        role = self.get(db, role_id)
        if role.is_system:
            raise ValidationError(f"System role '{role.slug}' cannot be deleted")
        holders = db.query(User).filter(User.role_id == role.id).count()
        if holders:
            raise ResourceConflictError(
                f"Role '{role.slug}' is assigned to {holders} user(s) and cannot be deleted"
            )

        for child in db.query(Role).filter(Role.parent_role_id == role.id).all():
            child.parent_role_id = role.parent_role_id
        db.query(RolePermissionMapping).filter(RolePermissionMapping.role_id == role.id).delete()
        audit_service.log(
            db, actor_id, "role.deleted", module="roles", severity="warning",
            description=f"Deleted role '{role.slug}'",
            resource_type="role", resource_id=role.id,
            commit=False,
        )
        db.delete(role)
        commit_and_invalidate(db, self.cache, everyone=True)

    def set_role_permissions(
        self,
        db: Session,
        role_id: int,
        permission_ids: Iterable[int],
        actor_id: Optional[int] = None,
    ) -> list[int]:
        """Replace a role's own permission set after dependency validation."""
        role = self.get(db, role_id)
        if role.is_system:
            raise ValidationError(f"System role '{role.slug}' cannot be modified")

        wanted = {int(p) for p in permission_ids}
        self._permission_ids_exist(db, wanted)
        graph = RoleGraph.load(db)
        inherited = self._inherited_permission_ids(db, graph, role.parent_role_id)
        errors = permission_service.validate_dependencies(db, wanted | inherited)
        if errors:
            raise DependencyError(errors)

        current = {
            m.permission_id: m
            for m in db.query(RolePermissionMapping).filter(RolePermissionMapping.role_id == role.id).all()
        }
        added = sorted(wanted - current.keys())
        removed = sorted(current.keys() - wanted)
        for pid in removed:
            db.delete(current[pid])
        for pid in added:
            db.add(RolePermissionMapping(role_id=role.id, permission_id=pid))

        audit_service.log(
            db, actor_id, "role.permissions_updated", module="roles",
            description=f"Role '{role.slug}': +{len(added)} / -{len(removed)} permissions",
            resource_type="role", resource_id=role.id,
            details={"added": added, "removed": removed},
            commit=False,
        )
        commit_and_invalidate(db, self.cache, everyone=True)
        return sorted(wanted)

    def assign_user_role(
        self, db: Session, user_id: int, role_id: Optional[int], actor_id: Optional[int] = None,
    ) -> User:
        user = db.get(User, user_id)
        if not user:
            raise ResourceNotFoundError(f"User {user_id} not found")
        if role_id is not None:
            self.get(db, role_id)
        previous = user.role_id
        user.role_id = role_id
        audit_service.log(
            db, actor_id, "user.role_assigned", module="roles",
            description=f"User {user_id} role {previous} -> {role_id}",
            resource_type="user", resource_id=user_id, target_user_id=user_id,
            details={"previous_role_id": previous, "role_id": role_id},
            commit=False,
        )
        commit_and_invalidate(db, self.cache, user_ids=[user_id])
        db.refresh(user)
        return user

    def can_assign_role(self, db: Session, actor_id: int, role_id: int) -> bool:
        """Super admins may assign any role; others only their subordinates."""
        if self.evaluator.is_super_admin(db, actor_id):
            return True
        actor = db.get(User, actor_id)
        if actor is None or actor.role_id is None:
            return False
        graph = RoleGraph.load(db)
        return any(n.id == role_id for n in graph.all_descendants(actor.role_id))

    @staticmethod
    def hierarchy_tree(db: Session) -> list[dict]:
        return RoleGraph.load(db).hierarchy_tree()

    @staticmethod
    def effective_permissions(db: Session, role_id: int) -> list[str]:
        RoleService.get(db, role_id)
        return sorted(RoleGraph.load(db).effective_permissions(role_id))

    @staticmethod
    def _inherited_permission_ids(db: Session, graph: RoleGraph, parent_role_id: Optional[int]) -> set[int]:
        if parent_role_id is None:
            return set()
        names = graph.effective_permissions(parent_role_id)
        if not names:
            return set()
        return {pid for (pid,) in db.query(Permission.id).filter(Permission.name.in_(names)).all()}

    @staticmethod
    def _configuration_json(configuration: Optional[dict]) -> Optional[str]:
        if configuration is None:
            return None
        try:
            return RoleConfiguration.model_validate(configuration).model_dump_json()
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid role configuration: {e.errors()}") from e


role_service = RoleService(permission_cache, permission_evaluator)
