"""Permission engine maintenance CLI (permctl)."""

import typer
from datetime import timedelta


app = typer.Typer(name="permctl", help="Hospital permission engine CLI")
db_app = typer.Typer(help="Database management commands")
app.add_typer(db_app, name="db")


@db_app.command("create")
def db_create():
    """Create the MySQL database if it doesn't exist."""
    import pymysql
    from sqlalchemy.engine import make_url
    from permission_engine.core.config import settings

    url = make_url(settings.DATABASE_URL)
    if not url.drivername.startswith("mysql"):
        typer.echo(f"ℹ️  {url.drivername} needs no database creation step")
        return

    conn = pymysql.connect(host=url.host, port=url.port or 3306, user=url.username, password=url.password or "")
    try:
        cursor = conn.cursor()
        cursor.execute(f"CREATE DATABASE IF NOT EXISTS `{url.database}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci")
        conn.commit()
        typer.echo(f"✅ Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("create-tables")
def db_create_tables():
    """Create all permission tables from the ORM metadata."""
    from permission_engine.db.base import Base
    from permission_engine.db.session import engine
    import permission_engine.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    typer.echo("✅ Tables created")


@db_app.command("seed")
def db_seed():
    """Seed the permission catalog, default roles and super-admin."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.db.seeds.seed_roles import seed_permissions, seed_roles
    from permission_engine.db.seeds.seed_super_admin import seed_super_admin

    db = SessionLocal()
    try:
        seed_permissions(db)
        seed_roles(db)
        seed_super_admin(db)
    finally:
        db.close()
    typer.echo("✅ All seeds applied")


@app.command("maintenance")
def maintenance(
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete data past retention"),
    health_check: bool = typer.Option(False, "--health-check", help="Run health checks"),
    run_all: bool = typer.Option(False, "--all", help="Run every maintenance task"),
    retention_days: int = typer.Option(None, help="Override MAINTENANCE_RETENTION_DAYS"),
):
    """Permission system maintenance."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.maintenance_service import maintenance_service

    if not (cleanup or health_check or run_all):
        typer.echo("Nothing to do. Pass --cleanup, --health-check or --all.")
        raise typer.Exit(code=1)

    exit_code = 0
    db = SessionLocal()
    try:
        if cleanup or run_all:
            typer.echo("🧹 Running permission cleanup...")
            results = maintenance_service.cleanup(db, retention_days)
            for category, count in results.items():
                typer.echo(f"  {category}: {count}")

        if health_check or run_all:
            typer.echo("🩺 Running health checks...")
            results = maintenance_service.run_health_checks(db)
            for check_type, result in results.items():
                typer.echo(f"  {check_type}: {result['status']}")
            summary = maintenance_service.summarize(results)
            typer.echo(
                f"Summary: {summary['healthy']} healthy, "
                f"{summary['warnings']} warning(s), {summary['critical']} critical"
            )
            if summary["critical"]:
                exit_code = 2
    finally:
        db.close()
    raise typer.Exit(code=exit_code)


@app.command("sweep")
def sweep():
    """Deactivate expired temporary permissions and expire stale change requests."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.approval_service import approval_service
    from permission_engine.services.temporary_permission_service import temporary_permission_service

    db = SessionLocal()
    try:
        grants = temporary_permission_service.sweep(db)
        requests = approval_service.expire_stale(db)
    finally:
        db.close()
    typer.echo(f"✅ {grants} temporary permission(s) deactivated, {requests} change request(s) expired")


@app.command("detect-anomalies")
def detect_anomalies(
    hours: int = typer.Option(1, help="Look-back window in hours"),
):
    """Run anomaly detection over the last N hours."""
    from permission_engine.core.clock import utcnow
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.anomaly_detector import anomaly_detector

    end = utcnow()
    db = SessionLocal()
    try:
        alerts = anomaly_detector.detect_anomalies(db, end - timedelta(hours=hours), end)
        for alert in alerts:
            typer.echo(f"  [{alert.alert_type.value}] {alert.title}: {alert.message}")
    finally:
        db.close()
    typer.echo(f"✅ {len(alerts)} new alert(s)")


@app.command("check-permission")
def check_permission(
    user: str = typer.Argument(..., help="User id or email"),
    permission: str = typer.Argument(..., help="Permission name"),
):
    """Explain how a user's permission check is decided."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.models.role import Role
    from permission_engine.models.user import User
    from permission_engine.services.permission_evaluator import permission_evaluator

    db = SessionLocal()
    try:
        query = db.query(User)
        record = query.filter(User.id == int(user)).first() if user.isdigit() else \
            query.filter(User.email == user).first()
        if record is None:
            typer.echo(f"❌ User '{user}' not found")
            raise typer.Exit(code=1)

        role = db.get(Role, record.role_id) if record.role_id else None
        decision = permission_evaluator.explain(db, record.id, permission)
        typer.echo(f"User:       {record.email} (id {record.id}, active={record.is_active})")
        typer.echo(f"Role:       {role.slug if role else '-'}")
        typer.echo(f"Legacy:     {record.legacy_role or '-'}")
        typer.echo(f"Permission: {permission}")
        typer.echo(f"Decision:   {'ALLOW' if decision.allowed else 'DENY'} via {decision.source}")
        if decision.valid_until:
            typer.echo(f"Valid until: {decision.valid_until.isoformat()}")
    finally:
        db.close()


@app.command("legacy-divergence")
def legacy_divergence():
    """List legacy role permissions the role hierarchy does not grant."""
    from permission_engine.db.session import SessionLocal
    from permission_engine.services.permission_evaluator import permission_evaluator

    db = SessionLocal()
    try:
        rows = permission_evaluator.legacy_divergence(db)
    finally:
        db.close()
    for row in rows:
        typer.echo(f"  {row['role_name']}: {row['permission_name']}")
    typer.echo(f"{len(rows)} divergent legacy grant(s)")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(True, help="Auto-reload"),
):
    """Start the FastAPI development server."""
    import uvicorn
    uvicorn.run("permission_engine.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
