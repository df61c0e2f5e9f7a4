"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

from permission_engine.models.alert import AlertType, AlertStatus
from permission_engine.models.change_request import ChangeRequestStatus
from permission_engine.models.permission import RiskLevel


# ---- Envelope ----
class ApiResponse(BaseModel):
    success: bool = True
    message: str = ""
    data: Optional[Any] = None
    errors: Optional[Dict[str, Any]] = None


# ---- Role configuration ----
class RoleConfiguration(BaseModel):
    """Typed per-role settings, validated before they are stored."""
    module_access: List[str] = Field(default_factory=list)
    data_visibility_scope: Literal["own", "department", "all"] = "own"
    user_management_capabilities: List[str] = Field(default_factory=list)
    reporting_permissions: List[str] = Field(default_factory=list)
    system_configuration_access: bool = False

    model_config = {"extra": "forbid"}


# ---- Permission ----
class PermissionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    module: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.low
    requires_approval: bool = False
    is_critical: bool = False

class PermissionOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    module: Optional[str] = None
    risk_level: RiskLevel
    requires_approval: bool = False
    is_critical: bool = False

    class Config:
        from_attributes = True

class DependencyCreate(BaseModel):
    depends_on_permission_id: int

class ValidateDependenciesRequest(BaseModel):
    permission_ids: List[int] = Field(default_factory=list)


# ---- Role ----
class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    priority: int = Field(..., ge=0)
    parent_role_id: Optional[int] = None
    configuration: Optional[RoleConfiguration] = None
    permission_ids: List[int] = Field(default_factory=list)

class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = Field(None, ge=0)
    parent_role_id: Optional[int] = None
    configuration: Optional[RoleConfiguration] = None

class RoleOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    priority: int
    is_system: bool = False
    parent_role_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class RolePermissionsUpdate(BaseModel):
    permission_ids: List[int] = Field(default_factory=list)

class UserRoleAssign(BaseModel):
    role_id: Optional[int] = None


# ---- Overrides ----
class OverrideSet(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None

class OverrideOut(BaseModel):
    id: int
    user_id: int
    permission_id: int
    allowed: bool
    granted_by: Optional[int] = None
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---- Temporary permissions ----
class GrantTemporaryRequest(BaseModel):
    user_id: int
    permission_id: int
    reason: str = Field(..., min_length=1, max_length=500)
    expires_at: datetime

class CheckTemporaryRequest(BaseModel):
    user_id: int
    permission_name: str = Field(..., min_length=1)

class TemporaryPermissionOut(BaseModel):
    id: int
    user_id: int
    permission_id: int
    granted_by: Optional[int] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    reason: str
    is_active: bool
    revoked_by: Optional[int] = None
    revoked_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---- Change requests ----
class ChangeRequestCreate(BaseModel):
    user_id: int
    permissions_to_add: List[int] = Field(default_factory=list)
    permissions_to_remove: List[int] = Field(default_factory=list)
    reason: str = Field(..., min_length=1, max_length=1000)
    expires_at: Optional[datetime] = None
    grant_expires_at: Optional[datetime] = None

class ReviewRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)

class ChangeRequestOut(BaseModel):
    id: int
    user_id: int
    requested_by: int
    permissions_to_add: List[int] = []
    permissions_to_remove: List[int] = []
    reason: str
    status: ChangeRequestStatus
    expires_at: Optional[datetime] = None
    grant_expires_at: Optional[datetime] = None
    approved_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---- Monitoring ----
class AlertOut(BaseModel):
    id: int
    alert_type: AlertType
    title: str
    message: str
    data: Dict[str, Any] = {}
    status: AlertStatus
    user_id: Optional[int] = None
    acknowledged_by: Optional[int] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class DetectRequest(BaseModel):
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

class AuditLogOut(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    description: Optional[str] = None
    module: str
    severity: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    target_user_id: Optional[int] = None
    ip_address: Optional[str] = None
    details_json: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
