"""PermissionChangeRequest state machine.

pending -> approved | rejected | expired; all three are terminal.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Iterable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow, to_naive_utc, Clock
from permission_engine.core.config import settings
from permission_engine.core.exceptions import (
    PermissionEngineError, ValidationError, DependencyError,
    ResourceNotFoundError, AuthorizationError, StateTransitionError,
)
from permission_engine.models.change_request import PermissionChangeRequest, ChangeRequestStatus
from permission_engine.models.permission import Permission
from permission_engine.models.user import User
from permission_engine.services.audit_service import audit_service
from permission_engine.services.cache_service import (
    PermissionCache, permission_cache, commit_and_invalidate,
)
from permission_engine.services.override_service import OverrideService, override_service
from permission_engine.services.permission_evaluator import PermissionEvaluator, permission_evaluator
from permission_engine.services.permission_service import permission_service
from permission_engine.services.temporary_permission_service import (
    TemporaryPermissionService, temporary_permission_service,
)

logger = logging.getLogger("permission_engine.approval")

NO_LONGER_VALID = "Request is no longer valid."


class ApprovalService:
    """Creates and transitions permission change requests."""

    def __init__(
        self,
        cache: PermissionCache,
        evaluator: PermissionEvaluator,
        overrides: OverrideService,
        temporary: TemporaryPermissionService,
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.evaluator = evaluator
        self.overrides = overrides
        self.temporary = temporary
        self.clock = clock

    # ---- Queries ----

    @staticmethod
    def get(db: Session, request_id: int) -> PermissionChangeRequest:
        request = db.get(PermissionChangeRequest, request_id)
        if not request:
            raise ResourceNotFoundError(f"Change request {request_id} not found")
        return request

    @staticmethod
    def get_for_update(db: Session, request_id: int) -> PermissionChangeRequest:
        """Row-locked, freshly read request; transitions decide on this copy only."""
        request = (
            db.query(PermissionChangeRequest)
            .filter(PermissionChangeRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not request:
            raise ResourceNotFoundError(f"Change request {request_id} not found")
        return request

    @staticmethod
    def list_requests(
        db: Session,
        status: Optional[ChangeRequestStatus] = None,
        user_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[PermissionChangeRequest], int]:
        query = db.query(PermissionChangeRequest)
        if status:
            query = query.filter(PermissionChangeRequest.status == ChangeRequestStatus(status))
        if user_id:
            query = query.filter(PermissionChangeRequest.user_id == user_id)
        total = query.count()
        items = query.order_by(PermissionChangeRequest.created_at.desc(), PermissionChangeRequest.id.desc()) \
            .offset(skip).limit(limit).all()
        return items, total

    # ---- Creation ----

    def create(
        self,
        db: Session,
        user_id: int,
        requested_by: int,
        reason: str,
        permissions_to_add: Iterable[int] = (),
        permissions_to_remove: Iterable[int] = (),
        expires_at: Optional[datetime] = None,
        grant_expires_at: Optional[datetime] = None,
    ) -> PermissionChangeRequest:
        """Open a pending request after dependency validation."""
        now = self.clock()
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required for permission change requests")
        to_add = {int(p) for p in permissions_to_add}
        to_remove = {int(p) for p in permissions_to_remove}
        if not to_add and not to_remove:
            raise ValidationError("At least one permission must be added or removed")
        if to_add & to_remove:
            raise ValidationError(f"Permissions cannot be both added and removed: {sorted(to_add & to_remove)}")

        if expires_at is None:
            expires_at = now + timedelta(days=settings.CHANGE_REQUEST_EXPIRY_DAYS)
        expires_at = to_naive_utc(expires_at)
        if expires_at <= now:
            raise ValidationError("Request expiry must be in the future")
        if grant_expires_at is not None:
            grant_expires_at = to_naive_utc(grant_expires_at)
            if grant_expires_at <= now:
                raise ValidationError("Grant expiry must be in the future")

        if db.get(User, user_id) is None:
            raise ResourceNotFoundError(f"User {user_id} not found")

        resulting = (self._current_permission_ids(db, user_id, now) | to_add) - to_remove
        errors = permission_service.validate_dependencies(db, resulting)
        if errors:
            raise DependencyError(errors)

        request = PermissionChangeRequest(
            user_id=user_id,
            requested_by=requested_by,
            reason=reason,
            status=ChangeRequestStatus.pending,
            expires_at=expires_at,
            grant_expires_at=grant_expires_at,
            created_at=now,
        )
        request.permissions_to_add = to_add
        request.permissions_to_remove = to_remove
        db.add(request)
        db.flush()
        audit_service.log(
            db, requested_by, "change_request.created",
            description=f"Change request {request.id} for user {user_id}: "
                        f"+{len(to_add)} / -{len(to_remove)} permissions",
            resource_type="change_request", resource_id=request.id, target_user_id=user_id,
            details={"add": sorted(to_add), "remove": sorted(to_remove), "reason": reason},
            created_at=now,
            commit=False,
        )
        db.commit()
        db.refresh(request)
        return request

    def _current_permission_ids(self, db: Session, user_id: int, now: datetime) -> set[int]:
        user = db.get(User, user_id)
        ids = self.overrides.allowed_permission_ids(db, user_id, now)
        if user is not None and user.role_id:
            names = self.evaluator.role_permissions(db, user.role_id)
            if names:
                ids |= {pid for (pid,) in db.query(Permission.id).filter(Permission.name.in_(names)).all()}
        return ids

    # ---- Transitions ----

    def approve(
        self, db: Session, request_id: int, approver_id: int, notes: Optional[str] = None,
    ) -> PermissionChangeRequest:
        """Apply every add and remove in one transaction, or none of them.

        On failure the request stays pending with `error_message` set and
        a ValidationError carrying the cause is raised.
        """
        request = self.get_for_update(db, request_id)
        now = self.clock()
        if request.is_terminal or (
            request.expires_at is not None and request.expires_at <= now
        ):
            raise StateTransitionError(NO_LONGER_VALID)

        user_id = request.user_id
        to_add = request.permissions_to_add
        to_remove = request.permissions_to_remove
        try:
            for pid in to_add:
                if request.grant_expires_at is not None:
                    self.temporary.grant(
                        db, user_id, pid, approver_id,
                        reason=f"Change request #{request.id}: {request.reason}",
                        expires_at=request.grant_expires_at,
                        commit=False,
                    )
                else:
                    self.overrides.upsert(
                        db, user_id, pid, True, approver_id,
                        reason=f"Change request #{request.id}: {request.reason}",
                        commit=False,
                    )
            for pid in to_remove:
                self.overrides.remove(db, user_id, pid, approver_id, commit=False)
                self.temporary.revoke_for_user(db, user_id, pid, approver_id)

            request.status = ChangeRequestStatus.approved
            request.approved_by = approver_id
            request.reviewed_at = now
            request.review_notes = notes
            request.error_message = None
            audit_service.log(
                db, approver_id, "change_request.approved",
                description=f"Approved change request {request.id} for user {user_id}",
                severity="warning",
                resource_type="change_request", resource_id=request.id, target_user_id=user_id,
                details={"added": to_add, "removed": to_remove,
                         "temporary_until": request.grant_expires_at, "notes": notes},
                created_at=now,
                commit=False,
            )
            commit_and_invalidate(db, self.cache, user_ids=[user_id])
        except (PermissionEngineError, SQLAlchemyError) as e:
            db.rollback()
            message = e.message if isinstance(e, PermissionEngineError) else str(e)
            self._record_failure(db, request_id, approver_id, message)
            raise ValidationError(f"Approval failed: {message}", errors={"request_id": request_id}) from e

        db.refresh(request)
        logger.info("Change request %s approved by %s", request.id, approver_id)
        return request

    def _record_failure(self, db: Session, request_id: int, approver_id: int, message: str) -> None:
        request = self.get_for_update(db, request_id)
        if request.is_terminal:
            db.rollback()
            return
        request.error_message = message
        audit_service.log(
            db, approver_id, "change_request.approval_failed",
            description=f"Approval of change request {request_id} failed: {message}",
            severity="error",
            resource_type="change_request", resource_id=request_id, target_user_id=request.user_id,
            details={"error": message},
            created_at=self.clock(),
            commit=False,
        )
        db.commit()
        logger.warning("Change request %s left pending: %s", request_id, message)

    def reject(
        self,
        db: Session,
        request_id: int,
        approver_id: Optional[int],
        notes: Optional[str] = None,
        action: str = "change_request.rejected",
    ) -> PermissionChangeRequest:
        """Terminal rejection; no permission change is recorded."""
        request = self.get_for_update(db, request_id)
        if request.is_terminal:
            raise StateTransitionError(NO_LONGER_VALID)
        now = self.clock()
        request.status = ChangeRequestStatus.rejected
        request.approved_by = approver_id
        request.reviewed_at = now
        request.review_notes = notes
        audit_service.log(
            db, approver_id, action,
            description=f"Rejected change request {request.id}",
            resource_type="change_request", resource_id=request.id, target_user_id=request.user_id,
            details={"notes": notes},
            created_at=now,
            commit=False,
        )
        db.commit()
        db.refresh(request)
        return request

    def cancel(self, db: Session, request_id: int, actor_id: int) -> PermissionChangeRequest:
        """Requester (or a super admin) withdraws a pending request."""
        request = self.get(db, request_id)
        if request.requested_by != actor_id and not self.evaluator.is_super_admin(db, actor_id):
            raise AuthorizationError("Unauthorized to cancel this request.")
        if request.status != ChangeRequestStatus.pending:
            raise StateTransitionError("Only pending requests can be cancelled.")
        return self.reject(
            db, request_id, actor_id,
            notes=f"Cancelled by user {actor_id}",
            action="change_request.cancelled",
        )

    def expire_stale(
        self,
        db: Session,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Move pending requests past their expiry to `expired`, batch by batch."""
        now = now or self.clock()
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        total = 0
        while not (should_stop is not None and should_stop()):
            batch = (
                db.query(PermissionChangeRequest)
                .filter(
                    PermissionChangeRequest.status == ChangeRequestStatus.pending,
                    PermissionChangeRequest.expires_at.isnot(None),
                    PermissionChangeRequest.expires_at <= now,
                )
                .order_by(PermissionChangeRequest.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
                .populate_existing()
                .all()
            )
            if not batch:
                break
            for request in batch:
                request.status = ChangeRequestStatus.expired
                request.reviewed_at = now
            audit_service.log(
                db, None, "change_request.expired",
                description=f"Expired {len(batch)} change request(s)",
                resource_type="change_request",
                details={"ids": [r.id for r in batch]},
                created_at=now,
                commit=False,
            )
            db.commit()
            total += len(batch)
            if len(batch) < batch_size:
                break
        if total:
            logger.info("Expired %d stale change requests", total)
        return total


approval_service = ApprovalService(
    permission_cache, permission_evaluator, override_service, temporary_permission_service,
)
