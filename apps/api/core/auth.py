"""
Authentication and authorization dependencies.

Provides FastAPI dependencies for:
- Getting the current authenticated user (bearer verification + token version)
- Role-based access control (admin satisfies every role)
- Subscription-gated features
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import ForbiddenError, TokenError, UnauthenticatedError
from core.security import decode_access_token, ensure_token_version
from models import User
from services.entitlements import Target, has_access

logger = logging.getLogger(__name__)

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)

ROLE_RANK = {"user": 0, "trainer": 1, "admin": 2}


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Get the current authenticated user from the session bearer.

    Every verification failure (expired, bad signature, malformed, stale
    token version, unknown user) is reported as ``unauthenticated`` so the
    client drops its token and re-authenticates.
    """
    # Check if credentials are missing (return 401, not 403)
    if not credentials:
        raise UnauthenticatedError("Not authenticated")

    try:
        claims = decode_access_token(credentials.credentials)
        try:
            user_id = UUID(claims.user_id)
        except ValueError:
            raise TokenError("malformed")

        user = db.get(User, user_id)
        if user is None:
            raise TokenError("malformed")
        ensure_token_version(claims, user.token_version)
    except TokenError as e:
        logger.info(f"Bearer rejected: {e.reason}")
        raise UnauthenticatedError("Invalid or expired session, please log in again")

    return user


def role_satisfies(actual: str, required: str) -> bool:
    return ROLE_RANK.get(actual, -1) >= ROLE_RANK[required]


def require_role(required_role: str):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin-only")
        def admin_endpoint(user: User = Depends(require_role("admin"))):
            ...
    """
    if required_role not in ROLE_RANK:
        raise ValueError(f"Unknown role: {required_role}")

    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if not role_satisfies(current_user.role, required_role):
            raise ForbiddenError(f"Access denied. Required role: {required_role}")
        return current_user

    return role_checker


def require_admin(current_user: User = Depends(require_role("admin"))) -> User:
    return current_user


def require_active_subscription(current_user: User = Depends(get_current_user)) -> User:
    """Gate for subscription features. Admins always pass."""
    if has_access(current_user, Target.admin_feature()) or has_access(current_user, Target.subscription_feature()):
        return current_user

    record = current_user.active_subscription
    raise ForbiddenError(
        "An active subscription is required to access this feature",
        error_code="subscription_required",
        extra={
            "subscriptionStatus": record.status if record else None,
            "currentPeriodEnd": record.current_period_end.isoformat()
            if record and record.current_period_end else None,
        },
    )
