"""
Identity store: CRUD over user records.

Every write to a mutable counter is a single UPDATE statement evaluated by the
database (``col = col + 1`` or a guarded WHERE clause) so concurrent requests
cannot lose increments. Functions here never commit; the calling service owns
the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import EmailTakenError
from models import ROLES, SubscriptionRecord, User, UserProgram, utcnow

logger = logging.getLogger(__name__)

# Attribute names that a profile patch may touch. Anything else is a bug upstream.
PROFILE_COLUMNS = frozenset({
    "first_name", "last_name", "phone", "dob", "gender", "activity_status", "goals", "reason",
})


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _reload(db: Session, user_id: UUID) -> Optional[User]:
    return db.get(User, user_id, populate_existing=True)


def create(
    db: Session,
    *,
    email: str,
    password_hash: str,
    first_name: str,
    last_name: str,
    **profile: Any,
) -> User:
    """Insert a new unverified user. Raises EmailTakenError on the unique index."""
    unknown = set(profile) - PROFILE_COLUMNS
    if unknown:
        raise ValueError(f"Not profile fields: {sorted(unknown)}")

    user = User(
        email=normalize_email(email),
        password_hash=password_hash,
        first_name=first_name,
        last_name=last_name,
        role="user",
        is_email_verified=False,
        failed_login_attempts=0,
        token_version=0,
        **profile,
    )
    savepoint = db.begin_nested()
    db.add(user)
    try:
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        raise EmailTakenError()
    return user


def find_by_email(db: Session, email: str) -> Optional[User]:
    return db.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()


def find_by_id(db: Session, user_id: UUID) -> Optional[User]:
    return db.get(User, user_id)


def find_by_payment_customer_id(db: Session, customer_id: str) -> Optional[User]:
    if not customer_id:
        return None
    return db.execute(select(User).where(User.payment_customer_id == customer_id)).scalar_one_or_none()


def find_by_external_subscription_id(db: Session, subscription_id: str) -> Optional[User]:
    if not subscription_id:
        return None
    return db.execute(
        select(User).where(User.subscription_external_id == subscription_id)
    ).scalars().first()


def list_users(db: Session, *, offset: int = 0, limit: int = 50) -> List[User]:
    return list(
        db.execute(select(User).order_by(User.created_at).offset(offset).limit(limit)).scalars()
    )


def count_users(db: Session) -> int:
    return int(db.execute(select(func.count()).select_from(User)).scalar_one())


def update_profile_fields(db: Session, user_id: UUID, patch: Dict[str, Any]) -> Optional[User]:
    """Apply an already-filtered profile patch."""
    unknown = set(patch) - PROFILE_COLUMNS
    if unknown:
        raise ValueError(f"Not profile fields: {sorted(unknown)}")
    if patch:
        db.execute(update(User).where(User.id == user_id).values(**patch, updated_at=utcnow()))
    return _reload(db, user_id)


# --- Login attempt bookkeeping ---

def increment_failed_attempts(db: Session, user_id: UUID) -> int:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(failed_login_attempts=User.failed_login_attempts + 1, updated_at=utcnow())
    )
    return int(db.execute(select(User.failed_login_attempts).where(User.id == user_id)).scalar_one())


def reset_failed_attempts(db: Session, user_id: UUID) -> None:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(failed_login_attempts=0, lockout_until=None, updated_at=utcnow())
    )


def set_lockout(db: Session, user_id: UUID, until: datetime, *, threshold: int) -> bool:
    """
    Lock the account until ``until`` if the counter reached ``threshold``.

    Compare-and-set on (failed_login_attempts, lockout_until): only the request
    that observes the threshold while no lockout is active writes it. The
    counter restarts at zero for the next window.
    """
    now = utcnow()
    result = db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.failed_login_attempts >= threshold,
            or_(User.lockout_until.is_(None), User.lockout_until <= now),
        )
        .values(lockout_until=until, failed_login_attempts=0, updated_at=now)
    )
    return result.rowcount == 1


# --- Email verification ---

def set_email_otp(db: Session, user_id: UUID, otp: str, expires_at: datetime) -> None:
    db.execute(
        update(User)
        .where(User.id == user_id, User.is_email_verified.is_(False))
        .values(email_verification_otp=otp, email_verification_expires_at=expires_at, updated_at=utcnow())
    )


def set_email_verified(db: Session, user_id: UUID) -> Optional[User]:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            is_email_verified=True,
            email_verification_otp=None,
            email_verification_expires_at=None,
            failed_login_attempts=0,
            lockout_until=None,
            updated_at=utcnow(),
        )
    )
    return _reload(db, user_id)


# --- Passwords and sessions ---

def set_password_reset(db: Session, user_id: UUID, token_hash: str, expires_at: datetime) -> None:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(password_reset_token_hash=token_hash, password_reset_expires_at=expires_at, updated_at=utcnow())
    )


def find_by_reset_token_hash(db: Session, token_hash: str) -> Optional[User]:
    return db.execute(
        select(User).where(User.password_reset_token_hash == token_hash)
    ).scalar_one_or_none()


def set_password_hash(db: Session, user_id: UUID, password_hash: str) -> Optional[User]:
    """Replace the password hash and bump tokenVersion in the same statement."""
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            password_hash=password_hash,
            token_version=User.token_version + 1,
            password_reset_token_hash=None,
            password_reset_expires_at=None,
            failed_login_attempts=0,
            lockout_until=None,
            updated_at=utcnow(),
        )
    )
    return _reload(db, user_id)


def consume_password_reset(db: Session, token_hash: str, password_hash: str) -> Optional[User]:
    """
    Single-use reset: the token hash must still be present and unexpired.

    Returns the updated user, or None when another request already consumed
    the token or it expired in the meantime.
    """
    now = utcnow()
    user = find_by_reset_token_hash(db, token_hash)
    if user is None:
        return None
    result = db.execute(
        update(User)
        .where(
            User.id == user.id,
            User.password_reset_token_hash == token_hash,
            User.password_reset_expires_at > now,
        )
        .values(
            password_hash=password_hash,
            token_version=User.token_version + 1,
            password_reset_token_hash=None,
            password_reset_expires_at=None,
            failed_login_attempts=0,
            lockout_until=None,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        return None
    return _reload(db, user.id)


def bump_token_version(db: Session, user_id: UUID) -> Optional[User]:
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(token_version=User.token_version + 1, updated_at=utcnow())
    )
    return _reload(db, user_id)


def set_role(db: Session, user_id: UUID, role: str) -> Optional[User]:
    """Admin-only path. A role change also revokes outstanding sessions."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    db.execute(
        update(User)
        .where(User.id == user_id)
        .values(role=role, token_version=User.token_version + 1, updated_at=utcnow())
    )
    return _reload(db, user_id)


# --- Payments and entitlements ---

def set_payment_customer_id(db: Session, user_id: UUID, customer_id: str) -> None:
    """Assign the external customer id once; an existing id is never overwritten."""
    db.execute(
        update(User)
        .where(User.id == user_id, User.payment_customer_id.is_(None))
        .values(payment_customer_id=customer_id, updated_at=utcnow())
    )


def set_subscription(
    db: Session,
    user_id: UUID,
    record: Optional[SubscriptionRecord],
    *,
    only_if_not_older: bool = True,
) -> bool:
    """
    Write the embedded subscription record.

    With ``only_if_not_older`` the write is conditional on the stored period
    start being null or not after the record's period start, so an older
    provider event can never overwrite a newer period.
    """
    if record is None:
        values: Dict[str, Any] = dict(
            subscription_plan_id=None,
            subscription_status=None,
            subscription_period_start=None,
            subscription_period_end=None,
            subscription_cancel_at_period_end=False,
            subscription_external_id=None,
        )
    else:
        if (
            record.current_period_start is not None
            and record.current_period_end is not None
            and record.current_period_end < record.current_period_start
        ):
            raise ValueError("current_period_end must not precede current_period_start")
        values = dict(
            subscription_plan_id=record.plan_id,
            subscription_status=record.status,
            subscription_period_start=record.current_period_start,
            subscription_period_end=record.current_period_end,
            subscription_cancel_at_period_end=record.cancel_at_period_end,
            subscription_external_id=record.external_subscription_id,
        )

    stmt = update(User).where(User.id == user_id)
    if only_if_not_older and record is not None and record.current_period_start is not None:
        stmt = stmt.where(
            or_(
                User.subscription_period_start.is_(None),
                User.subscription_period_start <= record.current_period_start,
            )
        )
    result = db.execute(stmt.values(**values, updated_at=utcnow()))
    updated = result.rowcount == 1
    if updated:
        _reload(db, user_id)
    return updated


def add_purchased_program(db: Session, user_id: UUID, slug: str, *, source: str = "purchase") -> bool:
    """Append a program slug to the user's set. Returns False if it was already there."""
    savepoint = db.begin_nested()
    db.add(UserProgram(user_id=user_id, program_slug=slug, source=source))
    try:
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        return False
    _reload(db, user_id)
    return True
