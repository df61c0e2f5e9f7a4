"""Role administration API router."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from permission_engine.core.exceptions import AuthorizationError
from permission_engine.core.security import require_manage_roles
from permission_engine.db.session import get_db
from permission_engine.schemas.schemas import (
    ApiResponse, RoleCreate, RoleUpdate, RoleOut, RolePermissionsUpdate, UserRoleAssign,
)
from permission_engine.services.role_service import role_service

router = APIRouter(prefix="/admin", tags=["roles"])


@router.get("/roles", response_model=ApiResponse)
def list_roles(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    return ApiResponse(message="Roles", data=[RoleOut.model_validate(r) for r in role_service.list_roles(db)])


@router.post("/roles", response_model=ApiResponse, status_code=201)
def create_role(
    body: RoleCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    role = role_service.create_role(
        db,
        name=body.name,
        priority=body.priority,
        actor_id=user_id,
        description=body.description,
        parent_role_id=body.parent_role_id,
        configuration=body.configuration.model_dump() if body.configuration else None,
        permission_ids=body.permission_ids,
    )
    return ApiResponse(message="Role created", data=RoleOut.model_validate(role))


@router.get("/roles/hierarchy", response_model=ApiResponse)
def role_hierarchy(
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    return ApiResponse(message="Role hierarchy", data=role_service.hierarchy_tree(db))


@router.get("/roles/{role_id}", response_model=ApiResponse)
def get_role(
    role_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    return ApiResponse(message="Role", data=RoleOut.model_validate(role_service.get(db, role_id)))


@router.put("/roles/{role_id}", response_model=ApiResponse)
def update_role(
    role_id: int,
    body: RoleUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    changes = body.model_dump(exclude_unset=True)
    if "configuration" in changes:
        changes["configuration"] = body.configuration.model_dump() if body.configuration else None
    role = role_service.update_role(db, role_id, actor_id=user_id, **changes)
    return ApiResponse(message="Role updated", data=RoleOut.model_validate(role))


@router.delete("/roles/{role_id}", response_model=ApiResponse)
def delete_role(
    role_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    role_service.delete_role(db, role_id, actor_id=user_id)
    return ApiResponse(message="Role deleted")


@router.put("/roles/{role_id}/permissions", response_model=ApiResponse)
def set_role_permissions(
    role_id: int,
    body: RolePermissionsUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    ids = role_service.set_role_permissions(db, role_id, body.permission_ids, actor_id=user_id)
    return ApiResponse(message="Role permissions updated", data={"permission_ids": ids})


@router.get("/roles/{role_id}/effective-permissions", response_model=ApiResponse)
def role_effective_permissions(
    role_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    return ApiResponse(
        message="Effective permissions",
        data={"role_id": role_id, "permissions": role_service.effective_permissions(db, role_id)},
    )


@router.put("/users/{target_user_id}/role", response_model=ApiResponse)
def assign_user_role(
    target_user_id: int,
    body: UserRoleAssign,
    db: Session = Depends(get_db),
    user_id: int = Depends(require_manage_roles),
):
    if body.role_id is not None and not role_service.can_assign_role(db, user_id, body.role_id):
        raise AuthorizationError("You cannot assign a role at or above your own level")
    user = role_service.assign_user_role(db, target_user_id, body.role_id, actor_id=user_id)
    return ApiResponse(message="Role assigned", data={"user_id": user.id, "role_id": user.role_id})
