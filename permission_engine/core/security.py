"""JWT caller identity and permission-based authorization helpers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from permission_engine.core.config import settings
from permission_engine.core.exceptions import forbidden, unauthorized
from permission_engine.db.session import get_db
from permission_engine.services.permission_evaluator import permission_evaluator

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by tooling and tests; login lives elsewhere)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> int:
    """Extract user_id from the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if user_id is None:
        raise unauthorized("Invalid token payload")
    return int(user_id)


class RequirePermission:
    """Dependency that asks the evaluator whether the caller holds a permission."""

    def __init__(self, permission_name: str):
        self.permission_name = permission_name

    def __call__(
        self,
        user_id: int = Depends(get_current_user_id),
        db: Session = Depends(get_db),
    ) -> int:
        if not permission_evaluator.has_permission(db, user_id, self.permission_name):
            raise forbidden(f"Permission '{self.permission_name}' required")
        return user_id


# Convenience dependency factories
require_manage_permissions = RequirePermission("manage-permissions")
require_manage_roles = RequirePermission("manage-roles")
require_view_monitoring = RequirePermission("view-permission-monitoring")
