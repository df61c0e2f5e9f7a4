"""User model."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, func
from permission_engine.db.base import Base


class User(Base):
    """Hospital staff account as seen by the permission engine."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_super_admin = Column(Boolean, default=False, nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=True, index=True)
    legacy_role = Column(String(100), nullable=True)  # role name in the flat scheme
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
