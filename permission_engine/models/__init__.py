"""Models package: import all models so metadata sees every table."""

from permission_engine.models.permission import Permission, PermissionDependency, RiskLevel
from permission_engine.models.role import Role, RolePermissionMapping, LegacyRolePermission
from permission_engine.models.user import User
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.models.change_request import PermissionChangeRequest, ChangeRequestStatus
from permission_engine.models.audit_log import AuditLog
from permission_engine.models.alert import (
    PermissionAlert, PermissionHealthCheck, AlertType, AlertStatus,
)

__all__ = [
    "Permission", "PermissionDependency", "RiskLevel",
    "Role", "RolePermissionMapping", "LegacyRolePermission",
    "User", "UserPermissionOverride", "TemporaryPermission",
    "PermissionChangeRequest", "ChangeRequestStatus", "AuditLog",
    "PermissionAlert", "PermissionHealthCheck", "AlertType", "AlertStatus",
]
