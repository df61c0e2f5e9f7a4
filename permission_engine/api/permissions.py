"""Permission administration API router."""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from permission_engine.core.security import get_current_user_id, require_manage_permissions, require_manage_roles
from permission_engine.db.session import get_db
from permission_engine.models.change_request import ChangeRequestStatus
from permission_engine.schemas.schemas import (
    ApiResponse, PermissionCreate, PermissionOut, DependencyCreate, ValidateDependenciesRequest,
    GrantTemporaryRequest, CheckTemporaryRequest, TemporaryPermissionOut,
    ChangeRequestCreate, ChangeRequestOut, ReviewRequest, OverrideSet, OverrideOut,
)
from permission_engine.services.approval_service import approval_service
from permission_engine.services.override_service import override_service
from permission_engine.services.permission_evaluator import permission_evaluator
from permission_engine.services.permission_service import permission_service
from permission_engine.services.temporary_permission_service import temporary_permission_service

router = APIRouter(prefix="/admin/permissions", tags=["permissions"])


# ---- Catalog ----

@router.get("", response_model=ApiResponse)
def list_permissions(
    module: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    permissions = permission_service.list_permissions(db, module)
    return ApiResponse(message="Permissions retrieved", data=[PermissionOut.model_validate(p) for p in permissions])


@router.post("", response_model=ApiResponse, status_code=201)
def create_permission(
    body: PermissionCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    permission = permission_service.create(db, actor_id=user_id, **body.model_dump())
    return ApiResponse(message="Permission created", data=PermissionOut.model_validate(permission))


@router.post("/{permission_id}/dependencies", response_model=ApiResponse, status_code=201)
def add_permission_dependency(
    permission_id: int,
    body: DependencyCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    edge = permission_service.add_dependency(db, permission_id, body.depends_on_permission_id, actor_id=user_id)
    return ApiResponse(
        message="Dependency recorded",
        data={"permission_id": edge.permission_id, "depends_on_permission_id": edge.depends_on_permission_id},
    )


@router.get("/audit-report", response_model=ApiResponse)
def permission_audit_report(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    return ApiResponse(message="Permission audit report", data=permission_service.audit_report(db))


@router.post("/validate-dependencies", response_model=ApiResponse)
def validate_dependencies(
    body: ValidateDependenciesRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    errors = permission_service.validate_dependencies(db, body.permission_ids)
    return ApiResponse(
        success=not errors,
        message="Dependencies satisfied" if not errors else "Permission dependencies not satisfied",
        data={"valid": not errors},
        errors={"dependencies": errors} if errors else None,
    )


@router.get("/check/{target_user_id}/{permission_name}", response_model=ApiResponse)
def check_user_permission(
    target_user_id: int,
    permission_name: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    """Evaluator decision plus the step that produced it."""
    decision = permission_evaluator.explain(db, target_user_id, permission_name)
    return ApiResponse(
        message="Permission evaluated",
        data={
            "user_id": target_user_id,
            "permission": permission_name,
            "allowed": decision.allowed,
            "source": decision.source,
            "valid_until": decision.valid_until,
        },
    )


# ---- User overrides ----

@router.put("/users/{target_user_id}/overrides/{permission_id}", response_model=ApiResponse)
def set_user_override(
    target_user_id: int,
    permission_id: int,
    body: OverrideSet,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    override = override_service.upsert(
        db, target_user_id, permission_id, body.allowed, user_id,
        reason=body.reason, expires_at=body.expires_at,
    )
    return ApiResponse(message="User permission override saved", data=OverrideOut.model_validate(override))


@router.delete("/users/{target_user_id}/overrides/{permission_id}", response_model=ApiResponse)
def clear_user_override(
    target_user_id: int,
    permission_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    existed = override_service.remove(db, target_user_id, permission_id, user_id)
    return ApiResponse(message="User permission override removed", data={"removed": existed})


# ---- Temporary permissions ----

@router.get("/temporary-permissions", response_model=ApiResponse)
def list_temporary_permissions(
    target_user_id: Optional[int] = Query(None, alias="user_id"),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    grants = temporary_permission_service.list_active(db, target_user_id)
    return ApiResponse(
        message="Active temporary permissions",
        data=[TemporaryPermissionOut.model_validate(g) for g in grants],
    )


@router.post("/grant-temporary", response_model=ApiResponse, status_code=201)
def grant_temporary_permission(
    body: GrantTemporaryRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    grant = temporary_permission_service.grant(
        db, body.user_id, body.permission_id, user_id, body.reason, body.expires_at,
    )
    return ApiResponse(message="Temporary permission granted", data=TemporaryPermissionOut.model_validate(grant))


@router.delete("/revoke-temporary/{grant_id}", response_model=ApiResponse)
def revoke_temporary_permission(
    grant_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    grant = temporary_permission_service.revoke(db, grant_id, user_id)
    return ApiResponse(message="Temporary permission revoked", data=TemporaryPermissionOut.model_validate(grant))


@router.post("/check-temporary-permission", response_model=ApiResponse)
def check_temporary_permission(
    body: CheckTemporaryRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    grant = temporary_permission_service.find_active(db, body.user_id, body.permission_name)
    return ApiResponse(
        message="Temporary permission checked",
        data={
            "active": grant is not None,
            "has_permission": grant is not None,
            "temporary_permission": TemporaryPermissionOut.model_validate(grant) if grant else None,
        },
    )


# ---- Change requests ----

@router.get("/change-requests", response_model=ApiResponse)
def list_change_requests(
    status: Optional[ChangeRequestStatus] = Query(None),
    target_user_id: Optional[int] = Query(None, alias="user_id"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    items, total = approval_service.list_requests(
        db, status, target_user_id, skip=(page - 1) * page_size, limit=page_size,
    )
    return ApiResponse(
        message="Permission change requests",
        data={
            "permission_change_requests": [ChangeRequestOut.model_validate(r) for r in items],
            "total": total,
            "page": page,
            "page_size": page_size,
        },
    )


@router.post("/change-requests", response_model=ApiResponse, status_code=201)
def create_change_request(
    body: ChangeRequestCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    request = approval_service.create(
        db,
        user_id=body.user_id,
        requested_by=user_id,
        reason=body.reason,
        permissions_to_add=body.permissions_to_add,
        permissions_to_remove=body.permissions_to_remove,
        expires_at=body.expires_at,
        grant_expires_at=body.grant_expires_at,
    )
    return ApiResponse(message="Permission change request created", data=ChangeRequestOut.model_validate(request))


@router.get("/change-requests/{request_id}", response_model=ApiResponse)
def get_change_request(
    request_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    request = approval_service.get(db, request_id)
    return ApiResponse(message="Permission change request", data=ChangeRequestOut.model_validate(request))


@router.post("/change-requests/{request_id}/approve", response_model=ApiResponse)
def approve_change_request(
    request_id: int,
    body: Optional[ReviewRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    request = approval_service.approve(db, request_id, user_id, notes=body.notes if body else None)
    return ApiResponse(
        message="Permission change request approved successfully.",
        data=ChangeRequestOut.model_validate(request),
    )


@router.post("/change-requests/{request_id}/reject", response_model=ApiResponse)
def reject_change_request(
    request_id: int,
    body: Optional[ReviewRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_permissions),
):
    request = approval_service.reject(db, request_id, user_id, notes=body.notes if body else None)
    return ApiResponse(
        message="Permission change request rejected successfully.",
        data=ChangeRequestOut.model_validate(request),
    )


@router.delete("/change-requests/{request_id}/cancel", response_model=ApiResponse)
def cancel_change_request(
    request_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    request = approval_service.cancel(db, request_id, user_id)
    return ApiResponse(
        message="Permission change request cancelled successfully.",
        data=ChangeRequestOut.model_validate(request),
    )
