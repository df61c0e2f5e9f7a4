"""Role models for hierarchical RBAC."""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey,
    UniqueConstraint, func,
)
from permission_engine.db.base import Base


class Role(Base):
    """Role with priority ordering and an optional parent to inherit from.

    A parent must have a strictly higher priority than its child, and system
    roles may only inherit from other system roles.
    """
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(String(255), nullable=True)
    priority = Column(Integer, nullable=False, default=10)
    is_system = Column(Boolean, default=False, nullable=False)
    parent_role_id = Column(Integer, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    configuration_json = Column(Text, nullable=True)  # validated RoleConfiguration
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class RolePermissionMapping(Base):
    """Many-to-many join between roles and permissions."""
    __tablename__ = "role_permission_mappings"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class LegacyRolePermission(Base):
    """Flat role-name -> permission-name table from the pre-hierarchy scheme.

    Read by the evaluator as an additive source only.
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_name", "permission_name", name="uq_legacy_role_permission"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_name = Column(String(100), nullable=False, index=True)
    permission_name = Column(String(100), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
