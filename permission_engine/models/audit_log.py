"""Audit log model — append-only."""

from contextlib import contextmanager

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, event
from sqlalchemy.orm import Session

from permission_engine.core.config import settings
from permission_engine.core.exceptions import ImmutableRecordError
from permission_engine.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for every permission-relevant action.

    This table is APPEND-ONLY: UPDATE and DELETE are rejected by the session
    guards below unless the session is inside `allow_audit_mutation`.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # NULL for system
    action = Column(String(100), nullable=False, index=True)  # e.g. "temporary_permission.granted"
    description = Column(Text, nullable=True)
    module = Column(String(50), nullable=False, index=True)  # permissions, roles, alerts, auth
    severity = Column(String(20), nullable=False, default="info")
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(100), nullable=True)
    target_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    details_json = Column(Text, nullable=True)  # structured detail, including errors
    created_at = Column(DateTime, nullable=False, index=True)


AUDIT_MUTATION_KEY = "audit_mutation_purpose"
RETENTION_PURGE = "retention_purge"
TEST_FIXTURE = "test_fixture"


@contextmanager
def allow_audit_mutation(session: Session, purpose: str):
    """Permit deletes/updates of audit rows for the duration of the block.

    Only the retention purge may delete in production; fixture edits are
    accepted only when APP_ENV is "testing".
    """
    if purpose not in (RETENTION_PURGE, TEST_FIXTURE):
        raise ValueError(f"Unknown audit mutation purpose: {purpose}")
    if purpose == TEST_FIXTURE and not settings.is_testing:
        raise ImmutableRecordError("Audit fixtures may only be edited in the testing environment")

    previous = session.info.get(AUDIT_MUTATION_KEY)
    session.info[AUDIT_MUTATION_KEY] = purpose
    try:
        yield session
    finally:
        if previous is None:
            session.info.pop(AUDIT_MUTATION_KEY, None)
        else:
            session.info[AUDIT_MUTATION_KEY] = previous


def _mutation_purpose(session: Session):
    return session.info.get(AUDIT_MUTATION_KEY)


@event.listens_for(Session, "before_flush")
def _reject_audit_unit_of_work_changes(session, flush_context, instances):
    purpose = _mutation_purpose(session)
    for obj in session.dirty:
        if isinstance(obj, AuditLog) and session.is_modified(obj) and purpose != TEST_FIXTURE:
            raise ImmutableRecordError(f"Audit log entry {obj.id} is immutable")
    for obj in session.deleted:
        if isinstance(obj, AuditLog) and purpose is None:
            raise ImmutableRecordError(f"Audit log entry {obj.id} cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_audit_bulk_statements(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if not any(m.class_ is AuditLog for m in orm_execute_state.all_mappers):
        return
    purpose = _mutation_purpose(orm_execute_state.session)
    if orm_execute_state.is_delete and purpose is not None:
        return
    if orm_execute_state.is_update and purpose == TEST_FIXTURE:
        return
    raise ImmutableRecordError("Bulk update/delete of audit logs is not allowed")
