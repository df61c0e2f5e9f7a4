"""Bootstrap the first super admin so the admin API is reachable."""

from typing import Optional

from sqlalchemy.orm import Session

from permission_engine.core.clock import utcnow
from permission_engine.core.config import settings
from permission_engine.models.role import Role
from permission_engine.models.user import User
from permission_engine.services.audit_service import audit_service


def seed_super_admin(db: Session, email: Optional[str] = None) -> Optional[User]:
    email = email or settings.SUPER_ADMIN_EMAIL
    role = db.query(Role).filter(Role.slug == settings.SUPER_ADMIN_ROLE_SLUG).first()
    if role is None:
        print(f"⚠️  Role '{settings.SUPER_ADMIN_ROLE_SLUG}' missing; seed roles before the super admin.")
        return None

    user = db.query(User).filter(User.email == email).first()
    if user is not None:
        if user.role_id != role.id or not user.is_super_admin:
            user.role_id = role.id
            user.is_super_admin = True
            db.commit()
            print(f"🔁 Promoted existing user {email} to super admin")
        else:
            print(f"ℹ️  {email} is already super admin")
        return user

    user = User(email=email, full_name="Super Admin", is_active=True, is_super_admin=True, role_id=role.id)
    db.add(user)
    db.flush()
    audit_service.log(
        db, None, "user.super_admin_seeded", module="roles", severity="warning",
        description=f"Bootstrapped super admin {email}",
        resource_type="user", resource_id=user.id, target_user_id=user.id,
        created_at=utcnow(),
        commit=False,
    )
    db.commit()
    print(f"✅ Created super admin: {email}")
    return user
