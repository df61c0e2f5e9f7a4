"""Tests for permission change requests and their state machine."""

from datetime import timedelta

import pytest

from permission_engine.core.exceptions import (
    ValidationError, DependencyError, AuthorizationError, StateTransitionError,
)
from permission_engine.models.audit_log import AuditLog
from permission_engine.models.change_request import PermissionChangeRequest, ChangeRequestStatus
from permission_engine.models.temporary_permission import TemporaryPermission
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.services.approval_service import NO_LONGER_VALID


def _ids(hospital, *names):
    return [hospital.perms[n].id for n in names]


class TestCreateRequest:
    """Opening change requests"""

    def test_create_pending_request(self, db, hospital, services, clock):
        request = services.approvals.create(
            db, hospital.users.reception.id, hospital.users.admin.id, "needs billing",
            permissions_to_add=_ids(hospital, "create-bills"),
        )
        assert request.status == ChangeRequestStatus.pending
        assert request.permissions_to_add == _ids(hospital, "create-bills")
        assert request.expires_at == clock() + timedelta(days=7)
        assert db.query(AuditLog).filter(AuditLog.action == "change_request.created").count() == 1

    def test_missing_dependency_rejected(self, db, hospital, services):
        with pytest.raises(DependencyError) as exc:
            services.approvals.create(
                db, hospital.users.nobody.id, hospital.users.admin.id, "billing",
                permissions_to_add=_ids(hospital, "create-bills"),
            )
        assert exc.value.messages == ["Permission 'create-bills' requires 'view-bills'"]

    def test_removing_a_required_permission_rejected(self, db, hospital, services):
        # doctor keeps edit-patients, which needs view-patients
        with pytest.raises(DependencyError):
            services.approvals.create(
                db, hospital.users.doctor.id, hospital.users.admin.id, "trim",
                permissions_to_remove=_ids(hospital, "view-patients"),
            )

    @pytest.mark.parametrize("kwargs", [
        {"reason": "  ", "permissions_to_add": None},
        {"reason": "nothing to do", "permissions_to_add": ()},
    ])
    def test_invalid_requests(self, db, hospital, services, kwargs):
        add = kwargs["permissions_to_add"]
        with pytest.raises(ValidationError):
            services.approvals.create(
                db, hospital.users.nobody.id, hospital.users.admin.id, kwargs["reason"],
                permissions_to_add=_ids(hospital, "view-users") if add is None else add,
            )

    def test_add_and_remove_overlap_rejected(self, db, hospital, services):
        ids = _ids(hospital, "view-users")
        with pytest.raises(ValidationError):
            services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "both",
                                      permissions_to_add=ids, permissions_to_remove=ids)

    def test_past_expiry_rejected(self, db, hospital, services, clock):
        with pytest.raises(ValidationError):
            services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "late",
                                      permissions_to_add=_ids(hospital, "view-users"),
                                      expires_at=clock() - timedelta(seconds=1))


class TestApprove:
    """Applying approved changes"""

    def test_approve_adds_overrides(self, db, hospital, services):
        nobody = hospital.users.nobody
        request = services.approvals.create(db, nobody.id, hospital.users.admin.id, "front desk",
                                            permissions_to_add=_ids(hospital, "view-bills", "view-users"))
        assert services.evaluator.has_permission(db, nobody.id, "view-bills") is False

        approved = services.approvals.approve(db, request.id, hospital.users.other_admin.id, notes="ok")
        assert approved.status == ChangeRequestStatus.approved
        assert approved.approved_by == hospital.users.other_admin.id
        assert approved.review_notes == "ok"
        assert services.evaluator.has_permission(db, nobody.id, "view-bills") is True
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is True

    def test_self_approval_allowed(self, db, hospital, services):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"))
        assert services.approvals.approve(db, request.id, hospital.users.admin.id).status == ChangeRequestStatus.approved

    def test_approve_with_grant_expiry_creates_temporary_grants(self, db, hospital, services, clock):
        nobody = hospital.users.nobody
        until = clock() + timedelta(hours=8)
        request = services.approvals.create(db, nobody.id, hospital.users.admin.id, "night shift",
                                            permissions_to_add=_ids(hospital, "view-users"),
                                            grant_expires_at=until)
        services.approvals.approve(db, request.id, hospital.users.admin.id)

        grant = db.query(TemporaryPermission).filter(TemporaryPermission.user_id == nobody.id).one()
        assert grant.expires_at == until
        assert db.query(UserPermissionOverride).count() == 0
        assert services.evaluator.explain(db, nobody.id, "view-users").source == "temporary"

    def test_approve_removes_overrides_and_grants(self, db, hospital, services, clock):
        nobody = hospital.users.nobody
        admin_id = hospital.users.admin.id
        services.overrides.upsert(db, nobody.id, hospital.perms["view-users"].id, True, admin_id)
        services.temporary.grant(db, nobody.id, hospital.perms["view-bills"].id, admin_id,
                                 "cover", clock() + timedelta(hours=1))

        request = services.approvals.create(db, nobody.id, admin_id, "offboarding",
                                            permissions_to_remove=_ids(hospital, "view-users", "view-bills"))
        services.approvals.approve(db, request.id, admin_id)
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False
        assert services.evaluator.has_permission(db, nobody.id, "view-bills") is False

    def test_approval_is_all_or_nothing(self, db, hospital, services):
        nobody = hospital.users.nobody
        request = services.approvals.create(db, nobody.id, hospital.users.admin.id, "mixed",
                                            permissions_to_add=_ids(hospital, "view-users") + [9999])

        with pytest.raises(ValidationError, match="Approval failed"):
            services.approvals.approve(db, request.id, hospital.users.admin.id)

        db.expire_all()
        stored = services.approvals.get(db, request.id)
        assert stored.status == ChangeRequestStatus.pending
        assert "9999" in stored.error_message
        assert db.query(UserPermissionOverride).count() == 0
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False
        assert db.query(AuditLog).filter(AuditLog.action == "change_request.approval_failed").count() == 1

    def test_terminal_states_are_final(self, db, hospital, services):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"))
        services.approvals.approve(db, request.id, hospital.users.admin.id)
        with pytest.raises(StateTransitionError, match=NO_LONGER_VALID):
            services.approvals.approve(db, request.id, hospital.users.admin.id)
        with pytest.raises(StateTransitionError, match=NO_LONGER_VALID):
            services.approvals.reject(db, request.id, hospital.users.admin.id)

    def test_expired_request_cannot_be_approved(self, db, hospital, services, clock):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"),
                                            expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(StateTransitionError, match=NO_LONGER_VALID):
            services.approvals.approve(db, request.id, hospital.users.admin.id)
        assert services.evaluator.has_permission(db, hospital.users.nobody.id, "view-users") is False

    def test_stale_approver_loses_to_committed_rejection(self, db, hospital, services, session_factory):
        """The approver's copy is re-read under lock, so a rejection from another session wins"""
        nobody = hospital.users.nobody
        request = services.approvals.create(
            db, nobody.id, hospital.users.admin.id, "late shift", permissions_to_add=_ids(hospital, "view-users"),
        )
        assert services.approvals.get(db, request.id).status == ChangeRequestStatus.pending

        other = session_factory()
        try:
            services.approvals.reject(other, request.id, hospital.users.other_admin.id, notes="no")
        finally:
            other.close()

        with pytest.raises(StateTransitionError, match=NO_LONGER_VALID):
            services.approvals.approve(db, request.id, hospital.users.admin.id)
        assert db.get(PermissionChangeRequest, request.id).status == ChangeRequestStatus.rejected
        assert db.query(UserPermissionOverride).filter(UserPermissionOverride.user_id == nobody.id).count() == 0
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False

    def test_stale_rejecter_loses_to_committed_approval(self, db, hospital, services, session_factory):
        nobody = hospital.users.nobody
        request = services.approvals.create(
            db, nobody.id, hospital.users.admin.id, "late shift", permissions_to_add=_ids(hospital, "view-users"),
        )
        assert services.approvals.get(db, request.id).status == ChangeRequestStatus.pending

        other = session_factory()
        try:
            services.approvals.approve(other, request.id, hospital.users.other_admin.id)
        finally:
            other.close()

        with pytest.raises(StateTransitionError, match=NO_LONGER_VALID):
            services.approvals.reject(db, request.id, hospital.users.admin.id)
        assert db.get(PermissionChangeRequest, request.id).status == ChangeRequestStatus.approved
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is True


class TestRejectAndCancel:
    """Rejection, cancellation and expiry"""

    def test_reject_changes_nothing(self, db, hospital, services):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"))
        rejected = services.approvals.reject(db, request.id, hospital.users.other_admin.id, notes="no")
        assert rejected.status == ChangeRequestStatus.rejected
        assert db.query(UserPermissionOverride).count() == 0

    def test_only_requester_or_super_admin_can_cancel(self, db, hospital, services):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"))
        with pytest.raises(AuthorizationError, match="Unauthorized to cancel this request."):
            services.approvals.cancel(db, request.id, hospital.users.other_admin.id)

        cancelled = services.approvals.cancel(db, request.id, hospital.users.admin.id)
        assert cancelled.status == ChangeRequestStatus.rejected
        assert db.query(AuditLog).filter(AuditLog.action == "change_request.cancelled").count() == 1

        with pytest.raises(StateTransitionError, match="Only pending requests can be cancelled."):
            services.approvals.cancel(db, request.id, hospital.users.admin.id)

    def test_super_admin_can_cancel(self, db, hospital, services):
        request = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "x",
                                            permissions_to_add=_ids(hospital, "view-users"))
        assert services.approvals.cancel(db, request.id, hospital.users.root.id).status == ChangeRequestStatus.rejected

    def test_expire_stale(self, db, hospital, services, clock):
        short = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "short",
                                          permissions_to_add=_ids(hospital, "view-users"),
                                          expires_at=clock() + timedelta(hours=1))
        long = services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "long",
                                         permissions_to_add=_ids(hospital, "view-bills"))
        clock.advance(hours=2)
        assert services.approvals.expire_stale(db) == 1
        assert services.approvals.get(db, short.id).status == ChangeRequestStatus.expired
        assert services.approvals.get(db, long.id).status == ChangeRequestStatus.pending

    def test_list_requests_filters(self, db, hospital, services):
        services.approvals.create(db, hospital.users.nobody.id, hospital.users.admin.id, "a",
                                  permissions_to_add=_ids(hospital, "view-users"))
        other = services.approvals.create(db, hospital.users.reception.id, hospital.users.admin.id, "b",
                                          permissions_to_add=_ids(hospital, "view-users"))
        services.approvals.reject(db, other.id, hospital.users.admin.id)

        items, total = services.approvals.list_requests(db, status="pending")
        assert total == 1 and items[0].user_id == hospital.users.nobody.id
        _, total = services.approvals.list_requests(db, user_id=hospital.users.reception.id)
        assert total == 1
