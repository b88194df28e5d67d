"""
Append-only audit trail for admin user operations.

Rows are written in the same transaction as the change they describe, inside
a savepoint, so a failed audit insert never undoes the admin action.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session

from models import AdminAuditEvent, User

logger = logging.getLogger(__name__)

ADMIN_ACTIONS = frozenset({
    "user.role_change",
    "user.unlock",
    "user.revoke_sessions",
    "user.program_grant",
})

MAX_PAYLOAD_CHARS = 2000
MAX_USER_AGENT_CHARS = 300


def _bounded_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not payload:
        return {}
    encoded = json.dumps(payload, default=str)
    if len(encoded) <= MAX_PAYLOAD_CHARS:
        return payload
    return {"truncated": True, "preview": encoded[:MAX_PAYLOAD_CHARS]}


def record_admin_audit_event(
    db: Session,
    *,
    request: Optional[Request],
    actor: User,
    action: str,
    target_user_id: Optional[UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record one admin action. Store failures are logged, not raised.

    ``payload`` holds before/after values only, never secrets or hashes.
    """
    if action not in ADMIN_ACTIONS:
        raise ValueError(f"Unknown admin action: {action}")

    client_host = request.client.host if request is not None and request.client else None
    user_agent = request.headers.get("user-agent") if request is not None else None

    savepoint = db.begin_nested()
    try:
        db.add(AdminAuditEvent(
            actor_user_id=actor.id,
            action=action,
            target_user_id=target_user_id,
            ip_address=client_host,
            user_agent=user_agent[:MAX_USER_AGENT_CHARS] if user_agent else None,
            payload=_bounded_payload(payload),
        ))
        savepoint.commit()
    except Exception as e:
        savepoint.rollback()
        logger.error(
            f"Admin audit write failed for {action}: {type(e).__name__}",
            extra={"extra_fields": {"action": action, "actor": str(actor.id)}},
        )
