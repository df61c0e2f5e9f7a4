"""Tests for permission evaluation order, caching and diagnostics."""

from datetime import timedelta

import pytest

from permission_engine.core.exceptions import CacheUnavailableError
from permission_engine.models.role import LegacyRolePermission
from permission_engine.models.user import User
from permission_engine.models.user_permission import UserPermissionOverride
from permission_engine.services.permission_evaluator import (
    SOURCE_SUPER_ADMIN, SOURCE_OVERRIDE, SOURCE_ROLE, SOURCE_LEGACY,
    SOURCE_TEMPORARY, SOURCE_NONE, SOURCE_INACTIVE,
)
from permission_engine.services.role_graph import RoleGraph


class TestEvaluationOrder:
    """Super admin > override > role > legacy > temporary > deny"""

    def test_role_grant_and_default_deny(self, db, hospital, services):
        """Doctor holds view-patients through the role and nothing else"""
        doctor = hospital.users.doctor
        assert services.evaluator.has_permission(db, doctor.id, "view-patients") is True
        assert services.evaluator.has_permission(db, doctor.id, "delete-users") is False
        assert services.evaluator.explain(db, doctor.id, "view-patients").source == SOURCE_ROLE
        assert services.evaluator.explain(db, doctor.id, "delete-users").source == SOURCE_NONE

    def test_deny_override_beats_role(self, db, hospital, services):
        reception = hospital.users.reception
        assert services.evaluator.has_permission(db, reception.id, "view-bills") is True

        services.overrides.upsert(db, reception.id, hospital.perms["view-bills"].id, False,
                                  hospital.users.admin.id, reason="billing audit")
        assert services.evaluator.has_permission(db, reception.id, "view-bills") is False
        assert services.evaluator.explain(db, reception.id, "view-bills").source == SOURCE_OVERRIDE

    def test_deny_override_beats_temporary_grant(self, db, hospital, services, clock):
        reception = hospital.users.reception
        perm = hospital.perms["delete-bills"]
        services.temporary.grant(db, reception.id, perm.id, hospital.users.admin.id,
                                 "month end", clock() + timedelta(hours=2))
        assert services.evaluator.has_permission(db, reception.id, "delete-bills") is True

        services.overrides.upsert(db, reception.id, perm.id, False, hospital.users.admin.id)
        assert services.evaluator.has_permission(db, reception.id, "delete-bills") is False

    def test_allow_override_grants(self, db, hospital, services):
        nobody = hospital.users.nobody
        services.overrides.upsert(db, nobody.id, hospital.perms["view-users"].id, True, hospital.users.admin.id)
        decision = services.evaluator.explain(db, nobody.id, "view-users")
        assert decision.allowed and decision.source == SOURCE_OVERRIDE

    def test_expired_override_is_ignored(self, db, hospital, services, clock):
        reception = hospital.users.reception
        services.overrides.upsert(db, reception.id, hospital.perms["view-bills"].id, False,
                                  hospital.users.admin.id, expires_at=clock() + timedelta(minutes=30))
        assert services.evaluator.has_permission(db, reception.id, "view-bills") is False
        clock.advance(minutes=31)
        assert services.evaluator.has_permission(db, reception.id, "view-bills") is True

    def test_super_admin_bypass(self, db, hospital, services):
        root = hospital.users.root
        assert services.evaluator.has_permission(db, root.id, "system-admin") is True
        assert services.evaluator.explain(db, root.id, "anything-at-all").source == SOURCE_SUPER_ADMIN

    def test_super_admin_flag_without_role(self, db, hospital, services):
        nobody = db.get(User, hospital.users.nobody.id)
        nobody.is_super_admin = True
        db.commit()
        assert services.evaluator.explain(db, nobody.id, "delete-users").allowed is True

    def test_inactive_and_unknown_users_denied(self, db, hospital, services):
        doctor = db.get(User, hospital.users.doctor.id)
        doctor.is_active = False
        db.commit()
        assert services.evaluator.explain(db, doctor.id, "view-patients").source == SOURCE_INACTIVE
        assert services.evaluator.has_permission(db, 9999, "view-patients") is False

    def test_temporary_grant_source(self, db, hospital, services, clock):
        nobody = hospital.users.nobody
        services.temporary.grant(db, nobody.id, hospital.perms["view-bills"].id,
                                 hospital.users.admin.id, "cover shift", clock() + timedelta(hours=1))
        decision = services.evaluator.explain(db, nobody.id, "view-bills")
        assert decision.allowed and decision.source == SOURCE_TEMPORARY
        assert decision.valid_until == clock() + timedelta(hours=1)


class TestLegacyTable:
    """Flat role-name table is additive only"""

    def test_legacy_grant_is_additive(self, db, hospital, services):
        db.add(LegacyRolePermission(role_name="reception", permission_name="view-users"))
        db.commit()
        reception = hospital.users.reception
        assert services.evaluator.explain(db, reception.id, "view-users").source == SOURCE_LEGACY

    def test_legacy_never_overrides_a_denial(self, db, hospital, services):
        db.add(LegacyRolePermission(role_name="reception", permission_name="view-users"))
        db.commit()
        reception = hospital.users.reception
        services.overrides.upsert(db, reception.id, hospital.perms["view-users"].id, False, hospital.users.admin.id)
        assert services.evaluator.has_permission(db, reception.id, "view-users") is False

    def test_legacy_role_column_on_user(self, db, hospital, services):
        nobody = db.get(User, hospital.users.nobody.id)
        nobody.legacy_role = "Pharmacy Admin"
        db.add(LegacyRolePermission(role_name="Pharmacy Admin", permission_name="view-patients"))
        db.commit()
        assert services.evaluator.has_permission(db, nobody.id, "view-patients") is True

    def test_divergence_report(self, db, hospital, services):
        db.add(LegacyRolePermission(role_name="reception", permission_name="view-users"))
        db.add(LegacyRolePermission(role_name="reception", permission_name="view-bills"))
        db.commit()
        rows = services.evaluator.legacy_divergence(db)
        assert rows == [{
            "role_name": "reception",
            "role_id": hospital.roles.reception.id,
            "permission_name": "view-users",
        }]


class TestDecisionCache:
    """Read-your-writes and fail-open behaviour"""

    def test_decisions_are_cached(self, db, hospital, services):
        nobody = hospital.users.nobody
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False

        # written behind the service's back: no invalidation happens
        db.add(UserPermissionOverride(user_id=nobody.id, permission_id=hospital.perms["view-users"].id, allowed=True))
        db.commit()
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False
        assert services.evaluator.explain(db, nobody.id, "view-users").allowed is True

    def test_mutation_invalidates_before_returning(self, db, hospital, services):
        nobody = hospital.users.nobody
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False
        services.overrides.upsert(db, nobody.id, hospital.perms["view-users"].id, True, hospital.users.admin.id)
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is True

    def test_cache_outage_fails_open_to_database(self, db, hospital, services, backend):
        backend.available = False
        assert services.evaluator.has_permission(db, hospital.users.doctor.id, "view-patients") is True
        assert services.evaluator.has_permission(db, hospital.users.doctor.id, "delete-users") is False

    def test_mutation_rolled_back_when_invalidation_impossible(self, db, hospital, services, backend):
        nobody = hospital.users.nobody
        backend.available = False
        with pytest.raises(CacheUnavailableError):
            services.overrides.upsert(db, nobody.id, hospital.perms["view-users"].id, True, hospital.users.admin.id)
        assert db.query(UserPermissionOverride).filter(UserPermissionOverride.user_id == nobody.id).count() == 0

    def test_degraded_cache_recovers_by_retiring_entries(self, db, hospital, services, cache):
        nobody = hospital.users.nobody
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is False
        cache.mark_degraded()
        db.add(UserPermissionOverride(user_id=nobody.id, permission_id=hospital.perms["view-users"].id, allowed=True))
        db.commit()
        assert services.evaluator.has_permission(db, nobody.id, "view-users") is True
        assert cache.degraded is False

    def test_decision_computed_before_a_commit_is_not_served_after_it(self, db, hospital, services, monkeypatch):
        """A deny committed while a decision is being resolved is visible to the next read"""
        reception = hospital.users.reception
        evaluator = services.evaluator
        resolve = evaluator.explain

        def resolve_then_deny(*args, **kwargs):
            decision = resolve(*args, **kwargs)
            services.overrides.upsert(db, reception.id, hospital.perms["view-bills"].id, False, hospital.users.admin.id)
            return decision

        monkeypatch.setattr(evaluator, "explain", resolve_then_deny)
        assert evaluator.has_permission(db, reception.id, "view-bills") is True
        monkeypatch.setattr(evaluator, "explain", resolve)

        assert evaluator.has_permission(db, reception.id, "view-bills") is False
        assert evaluator.explain(db, reception.id, "view-bills").source == SOURCE_OVERRIDE

    def test_role_set_computed_before_a_commit_is_not_served_after_it(self, db, hospital, services, monkeypatch):
        reception = hospital.users.reception
        load = RoleGraph.load
        mutated = []

        def load_then_trim(session, *args, **kwargs):
            graph = load(session, *args, **kwargs)
            if not mutated:
                mutated.append(True)
                services.roles.set_role_permissions(
                    db, hospital.roles.reception.id, [hospital.perms["view-patients"].id],
                )
            return graph

        monkeypatch.setattr(RoleGraph, "load", staticmethod(load_then_trim))
        assert "view-bills" in services.evaluator.role_permissions(db, hospital.roles.reception.id)
        monkeypatch.undo()

        assert services.evaluator.role_permissions(db, hospital.roles.reception.id) == {"view-patients"}
        assert services.evaluator.has_permission(db, reception.id, "view-bills") is False
