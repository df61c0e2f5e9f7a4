"""Shared fixtures: in-memory SQLite, fake clock, in-memory cache, seeded hospital roles."""

import os

os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PERMISSION_CACHE_BACKEND"] = "memory"

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import permission_engine.models  # noqa: F401
from permission_engine.core.security import create_access_token
from permission_engine.db.base import Base
from permission_engine.db.session import get_db
from permission_engine.models.permission import Permission, PermissionDependency, RiskLevel
from permission_engine.models.role import Role, RolePermissionMapping
from permission_engine.models.user import User
from permission_engine.services.alert_service import AlertService
from permission_engine.services.anomaly_detector import AnomalyDetector
from permission_engine.services.approval_service import ApprovalService
from permission_engine.services.cache_service import InMemoryCacheBackend, PermissionCache, cache_backend
from permission_engine.services.maintenance_service import MaintenanceService
from permission_engine.services.monitoring_service import MonitoringService, REQUIRED_ROUTES
from permission_engine.services.override_service import OverrideService
from permission_engine.services.permission_evaluator import PermissionEvaluator
from permission_engine.services.role_service import RoleService
from permission_engine.services.temporary_permission_service import TemporaryPermissionService


class FakeClock:
    """Mutable clock injected into services."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 3, 12, 10, 0, 0))


@pytest.fixture
def backend():
    return InMemoryCacheBackend()


@pytest.fixture
def cache(backend):
    return PermissionCache(backend)


@pytest.fixture
def services(cache, backend, clock):
    evaluator = PermissionEvaluator(cache, clock)
    overrides = OverrideService(cache, clock)
    temporary = TemporaryPermissionService(cache, evaluator, clock)
    approvals = ApprovalService(cache, evaluator, overrides, temporary, clock)
    alerts = AlertService(clock)
    monitoring = MonitoringService(backend, clock, route_paths=set(REQUIRED_ROUTES))
    return SimpleNamespace(
        evaluator=evaluator,
        overrides=overrides,
        temporary=temporary,
        approvals=approvals,
        alerts=alerts,
        detector=AnomalyDetector(alerts, evaluator, approvals, clock),
        roles=RoleService(cache, evaluator),
        monitoring=monitoring,
        maintenance=MaintenanceService(temporary, alerts, monitoring, clock),
    )


HOSPITAL_PERMISSIONS = [
    ("view-patients", RiskLevel.low),
    ("edit-patients", RiskLevel.medium),
    ("view-bills", RiskLevel.low),
    ("create-bills", RiskLevel.medium),
    ("delete-bills", RiskLevel.high),
    ("view-users", RiskLevel.low),
    ("delete-users", RiskLevel.high),
    ("manage-roles", RiskLevel.high),
    ("manage-permissions", RiskLevel.high),
    ("view-permission-monitoring", RiskLevel.medium),
    ("system-admin", RiskLevel.critical),
]


@pytest.fixture
def hospital(db):
    """Catalog, a few roles and users, inserted directly so no audit rows exist."""
    perms = {}
    for name, risk in HOSPITAL_PERMISSIONS:
        p = Permission(name=name, module=name.split("-", 1)[-1], risk_level=risk)
        db.add(p)
        perms[name] = p
    db.flush()
    db.add(PermissionDependency(permission_id=perms["edit-patients"].id,
                                depends_on_permission_id=perms["view-patients"].id))
    db.add(PermissionDependency(permission_id=perms["create-bills"].id,
                                depends_on_permission_id=perms["view-bills"].id))

    def role(slug, priority, names, is_system=False, parent=None):
        r = Role(name=slug.replace("-", " ").title(), slug=slug, priority=priority,
                 is_system=is_system, parent_role_id=parent.id if parent else None)
        db.add(r)
        db.flush()
        for n in names:
            db.add(RolePermissionMapping(role_id=r.id, permission_id=perms[n].id))
        return r

    roles = SimpleNamespace(
        super_admin=role("super-admin", 100, [], is_system=True),
        admin=role("hospital-admin", 90, ["manage-permissions", "manage-roles",
                                          "view-permission-monitoring", "view-users"], is_system=True),
        doctor=role("doctor", 50, ["view-patients", "edit-patients"]),
        reception=role("reception", 20, ["view-patients", "view-bills"]),
    )

    def user(email, role_obj=None, **kwargs):
        u = User(email=email, full_name=email.split("@")[0], role_id=role_obj.id if role_obj else None, **kwargs)
        db.add(u)
        db.flush()
        return u

    users = SimpleNamespace(
        root=user("root@hospital.test", roles.super_admin),
        admin=user("admin@hospital.test", roles.admin),
        other_admin=user("admin2@hospital.test", roles.admin),
        doctor=user("doctor@hospital.test", roles.doctor),
        reception=user("reception@hospital.test", roles.reception),
        nobody=user("nobody@hospital.test"),
    )
    db.commit()
    return SimpleNamespace(perms=perms, roles=roles, users=users)


@pytest.fixture
def client(session_factory):
    from permission_engine.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    cache_backend.clear()
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    cache_backend.clear()


@pytest.fixture
def auth():
    def headers(user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}
    return headers
