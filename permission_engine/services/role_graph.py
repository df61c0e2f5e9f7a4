"""Explicit adjacency over roles with bounded traversal."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from permission_engine.core.config import settings
from permission_engine.models.permission import Permission
from permission_engine.models.role import Role, RolePermissionMapping


@dataclass
class RoleNode:
    id: Optional[int]
    slug: str
    priority: int
    is_system: bool = False
    parent_id: Optional[int] = None
    name: str = ""
    permissions: frozenset = field(default_factory=frozenset)


class RoleGraph:
    """Snapshot of the role hierarchy.

    Traversals track a visited set and stop at `max_depth`, so a cycle that
    slipped into the table cannot hang a caller.
    """

    def __init__(self, nodes: dict[int, RoleNode], max_depth: Optional[int] = None):
        self.nodes = nodes
        self.max_depth = max_depth or settings.ROLE_TRAVERSAL_MAX_DEPTH
        self._children: dict[int, list[int]] = {}
        for node in nodes.values():
            if node.parent_id is not None:
                self._children.setdefault(node.parent_id, []).append(node.id)

    @classmethod
    def load(cls, db: Session, max_depth: Optional[int] = None) -> "RoleGraph":
        """Build the graph with two indexed queries."""
        grants: dict[int, set[str]] = {}
        rows = (
            db.query(RolePermissionMapping.role_id, Permission.name)
            .join(Permission, Permission.id == RolePermissionMapping.permission_id)
            .all()
        )
        for role_id, name in rows:
            grants.setdefault(role_id, set()).add(name)

        nodes = {
            r.id: RoleNode(
                id=r.id,
                slug=r.slug,
                name=r.name,
                priority=r.priority,
                is_system=bool(r.is_system),
                parent_id=r.parent_role_id,
                permissions=frozenset(grants.get(r.id, ())),
            )
            for r in db.query(Role).all()
        }
        return cls(nodes, max_depth)

    def get(self, role_id: int) -> Optional[RoleNode]:
        return self.nodes.get(role_id)

    def all_ancestors(self, role_id: int) -> list[RoleNode]:
        """Parent chain from nearest to farthest, excluding the role itself."""
        ancestors: list[RoleNode] = []
        visited = {role_id}
        node = self.nodes.get(role_id)
        depth = 0
        while node is not None and node.parent_id is not None and depth < self.max_depth:
            if node.parent_id in visited:
                break
            parent = self.nodes.get(node.parent_id)
            if parent is None:
                break
            visited.add(parent.id)
            ancestors.append(parent)
            node = parent
            depth += 1
        return ancestors

    def all_descendants(self, role_id: int) -> list[RoleNode]:
        """Breadth-first subordinates of the role, excluding the role itself."""
        descendants: list[RoleNode] = []
        visited = {role_id}
        frontier = [role_id]
        depth = 0
        while frontier and depth < self.max_depth:
            next_frontier = []
            for current in frontier:
                for child_id in self._children.get(current, ()):
                    if child_id in visited:
                        continue
                    visited.add(child_id)
                    descendants.append(self.nodes[child_id])
                    next_frontier.append(child_id)
            frontier = next_frontier
            depth += 1
        return descendants

    def effective_permissions(self, role_id: int) -> set[str]:
        """Own permissions unioned with every ancestor's."""
        node = self.nodes.get(role_id)
        if node is None:
            return set()
        names = set(node.permissions)
        for ancestor in self.all_ancestors(role_id):
            names |= ancestor.permissions
        return names

    def inheritance_violation(self, child: RoleNode, parent: RoleNode) -> Optional[str]:
        """Reason `child` may not inherit from `parent`, or None if it may."""
        if child.is_system and not parent.is_system:
            return f"System role '{child.slug}' may only inherit from another system role"
        if parent.priority <= child.priority:
            return (
                f"Parent role '{parent.slug}' (priority {parent.priority}) must have a higher "
                f"priority than '{child.slug}' (priority {child.priority})"
            )
        if child.id is not None and (
            parent.id == child.id
            or any(a.id == child.id for a in self.all_ancestors(parent.id))
        ):
            return f"Making '{parent.slug}' the parent of '{child.slug}' would create a cycle"
        return None

    def can_inherit(self, child: RoleNode, parent: RoleNode) -> bool:
        return self.inheritance_violation(child, parent) is None

    def hierarchy_tree(self) -> list[dict]:
        """Roots first, children nested, each level ordered by priority desc."""
        def build(node: RoleNode, seen: set) -> dict:
            seen = seen | {node.id}
            children = sorted(
                (self.nodes[c] for c in self._children.get(node.id, ()) if c not in seen),
                key=lambda n: (-n.priority, n.slug),
            )
            return {
                "id": node.id,
                "slug": node.slug,
                "name": node.name,
                "priority": node.priority,
                "is_system": node.is_system,
                "subordinates": [build(c, seen) for c in children] if len(seen) < self.max_depth else [],
            }

        roots = [
            n for n in self.nodes.values()
            if n.parent_id is None or n.parent_id not in self.nodes
        ]
        return [build(r, set()) for r in sorted(roots, key=lambda n: (-n.priority, n.slug))]
