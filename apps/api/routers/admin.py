"""
Admin API Router

User management for studio staff: role changes, unlocks, session
revocation, program grants and the in-process log buffer.
Admin role only. Every mutation is written to the admin audit log.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
import logging

from core.database import get_db
from core.auth import require_admin
from core.exceptions import ForbiddenError, NotFoundError
from core.logging import log_buffer
from core.request_guards import valid_user_id
from models import User
from schemas import AdminGrantProgramRequest, AdminRoleRequest, UserOut, envelope
from services import entitlements, identity_store
from services.admin_audit import record_admin_audit_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def _load_target(db: Session, user_id: UUID) -> User:
    target = identity_store.find_by_id(db, user_id)
    if target is None:
        raise NotFoundError("User")
    return target


@router.get("/users")
def list_users(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """
    List all users with pagination.
    """
    users = identity_store.list_users(db, offset=offset, limit=limit)
    return envelope({
        "total": identity_store.count_users(db),
        "users": [UserOut.from_user(u) for u in users],
        "offset": offset,
        "limit": limit,
    })


@router.put("/users/{user_id}/role")
def change_role(
    body: AdminRoleRequest,
    http_request: Request,
    target_id: UUID = Depends(valid_user_id),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    The only path that writes ``role``. Any change also bumps the token
    version, so the member signs in again under the new role.
    """
    target = _load_target(db, target_id)
    if target.id == current_user.id:
        raise ForbiddenError("Admins cannot change their own role")

    old_role = target.role
    if old_role != body.new_role:
        target = identity_store.set_role(db, target.id, body.new_role)
        record_admin_audit_event(
            db,
            request=http_request,
            actor=current_user,
            action="user.role_change",
            target_user_id=target.id,
            payload={"before": {"role": old_role}, "after": {"role": target.role}},
        )
        db.commit()
        logger.info(
            f"Role of {target.id} changed {old_role} -> {target.role}",
            extra={"extra_fields": {"event": "role_changed", "user_id": str(target.id), "by": str(current_user.id)}},
        )

    return envelope(UserOut.from_user(target))


@router.post("/users/{user_id}/unlock")
def unlock_user(
    http_request: Request,
    target_id: UUID = Depends(valid_user_id),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = _load_target(db, target_id)
    identity_store.reset_failed_attempts(db, target.id)
    record_admin_audit_event(
        db,
        request=http_request,
        actor=current_user,
        action="user.unlock",
        target_user_id=target.id,
        payload={"before": {"lockout_until": target.lockout_until.isoformat() if target.lockout_until else None}},
    )
    db.commit()
    return envelope({"userId": str(target.id), "unlocked": True})


@router.post("/users/{user_id}/revoke-sessions")
def revoke_sessions(
    http_request: Request,
    target_id: UUID = Depends(valid_user_id),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = _load_target(db, target_id)
    target = identity_store.bump_token_version(db, target.id)
    record_admin_audit_event(
        db,
        request=http_request,
        actor=current_user,
        action="user.revoke_sessions",
        target_user_id=target.id,
    )
    db.commit()
    logger.info(
        f"Sessions revoked for {target.id}",
        extra={"extra_fields": {"event": "sessions_revoked", "user_id": str(target.id), "by": str(current_user.id)}},
    )
    return envelope({"userId": str(target.id), "revoked": True})


@router.post("/users/{user_id}/programs")
def grant_program(
    body: AdminGrantProgramRequest,
    http_request: Request,
    target_id: UUID = Depends(valid_user_id),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    target = _load_target(db, target_id)
    added = entitlements.grant_program(db, target.id, body.program_slug, source="admin_grant")
    if added:
        record_admin_audit_event(
            db,
            request=http_request,
            actor=current_user,
            action="user.program_grant",
            target_user_id=target.id,
            payload={"program": body.program_slug},
        )
    db.commit()
    db.refresh(target)
    return envelope({"granted": added, "user": UserOut.from_user(target)})


@router.get("/logs")
def query_logs(
    current_user: User = Depends(require_admin),
    level: Optional[str] = Query(None, description="Minimum level, e.g. WARNING"),
    logger_name: Optional[str] = Query(None, alias="logger", description="Logger name prefix"),
    contains: Optional[str] = Query(None, max_length=200),
    limit: int = Query(100, ge=1, le=1000),
):
    """Newest-first view of the in-process log ring buffer."""
    records = log_buffer.query(level=level, logger=logger_name, contains=contains, limit=limit)
    return envelope({"records": records, "capacity": log_buffer.capacity, "size": len(log_buffer)})
