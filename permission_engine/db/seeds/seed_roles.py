"""Seed the hospital permission catalog and default roles."""

from sqlalchemy.orm import Session

from permission_engine.models.permission import Permission, PermissionDependency, RiskLevel
from permission_engine.models.role import Role, RolePermissionMapping

# name, module, risk level
PERMISSIONS = [
    ("view-patients", "patients", RiskLevel.low),
    ("create-patients", "patients", RiskLevel.medium),
    ("edit-patients", "patients", RiskLevel.medium),
    ("delete-patients", "patients", RiskLevel.high),
    ("view-appointments", "appointments", RiskLevel.low),
    ("manage-appointments", "appointments", RiskLevel.medium),
    ("view-prescriptions", "pharmacy", RiskLevel.low),
    ("dispense-medicine", "pharmacy", RiskLevel.medium),
    ("view-bills", "billing", RiskLevel.low),
    ("create-bills", "billing", RiskLevel.medium),
    ("delete-bills", "billing", RiskLevel.high),
    ("process-refunds", "billing", RiskLevel.high),
    ("view-users", "users", RiskLevel.low),
    ("edit-users", "users", RiskLevel.medium),
    ("delete-users", "users", RiskLevel.high),
    ("manage-roles", "permissions", RiskLevel.high),
    ("manage-permissions", "permissions", RiskLevel.high),
    ("view-permission-monitoring", "permissions", RiskLevel.medium),
    ("system-admin", "system", RiskLevel.critical),
]

# permission -> depends on
DEPENDENCIES = [
    ("create-patients", "view-patients"),
    ("edit-patients", "view-patients"),
    ("delete-patients", "edit-patients"),
    ("manage-appointments", "view-appointments"),
    ("dispense-medicine", "view-prescriptions"),
    ("create-bills", "view-bills"),
    ("delete-bills", "view-bills"),
    ("process-refunds", "view-bills"),
    ("edit-users", "view-users"),
    ("delete-users", "edit-users"),
]

# slug, display name, priority, is_system, permissions
ROLES = [
    ("super-admin", "Super Admin", 100, True, []),
    ("hospital-admin", "Hospital Admin", 90, True, [
        "view-users", "edit-users", "manage-roles", "manage-permissions",
        "view-permission-monitoring", "view-patients", "view-bills",
    ]),
    ("doctor", "Doctor", 50, False, [
        "view-patients", "create-patients", "edit-patients",
        "view-appointments", "manage-appointments", "view-prescriptions",
    ]),
    ("nurse", "Nurse", 40, False, ["view-patients", "view-appointments", "view-prescriptions"]),
    ("pharmacist", "Pharmacist", 40, False, ["view-prescriptions", "dispense-medicine"]),
    ("billing", "Billing Clerk", 30, False, ["view-bills", "create-bills"]),
    ("reception", "Reception", 20, False, [
        "view-patients", "create-patients", "view-appointments", "manage-appointments", "view-bills",
    ]),
]


def seed_permissions(db: Session) -> None:
    """Insert catalog permissions and dependency edges if missing."""
    for name, module, risk in PERMISSIONS:
        if not db.query(Permission).filter(Permission.name == name).first():
            action, _, resource = name.partition("-")
            db.add(Permission(
                name=name,
                module=module,
                resource=resource,
                action=action,
                risk_level=risk,
                requires_approval=risk in (RiskLevel.high, RiskLevel.critical),
                is_critical=risk == RiskLevel.critical,
            ))
    db.flush()

    ids = dict(db.query(Permission.name, Permission.id).all())
    for name, depends_on in DEPENDENCIES:
        exists = db.query(PermissionDependency).filter(
            PermissionDependency.permission_id == ids[name],
            PermissionDependency.depends_on_permission_id == ids[depends_on],
        ).first()
        if not exists:
            db.add(PermissionDependency(permission_id=ids[name], depends_on_permission_id=ids[depends_on]))
    db.commit()
    print(f"✅ Seeded {len(PERMISSIONS)} permissions")


def seed_roles(db: Session) -> None:
    """Insert default roles and their permission mappings if they don't already exist."""
    ids = dict(db.query(Permission.name, Permission.id).all())
    for slug, name, priority, is_system, permissions in ROLES:
        role = db.query(Role).filter(Role.slug == slug).first()
        if role:
            continue
        role = Role(name=name, slug=slug, priority=priority, is_system=is_system)
        db.add(role)
        db.flush()
        for permission in permissions:
            db.add(RolePermissionMapping(role_id=role.id, permission_id=ids[permission]))

    db.commit()
    print(f"✅ Seeded {len(ROLES)} roles")
