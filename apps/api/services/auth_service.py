"""
Auth pipeline: signup, email verification, login, password reset, logout.

Every operation owns its transaction. Writes that must survive a failed
request (failed-attempt counter, lockout) are committed before the error is
raised, because ``get_db`` rolls back on exceptions.
"""
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    AccountLockedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    MailDeliveryError,
    NotFoundError,
    OtpExpiredError,
    OtpMismatchError,
    ValidationFailedError,
)
from core.password_policy import validate_password
from core.rate_limit import limiter
from core.security import (
    dummy_password_hash,
    generate_otp,
    generate_reset_token,
    get_password_hash,
    hash_reset_token,
    issue_session_token,
    otp_matches,
    verify_password,
)
from models import User, utcnow
from services import identity_store
from services.identity_store import normalize_email
from services.mail_service import mail_service

logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    """A freshly issued bearer and the user it belongs to."""
    token: str
    user: User


def _enforce_policy(password: str) -> None:
    is_valid, errors = validate_password(password)
    if not is_valid:
        raise ValidationFailedError("Password does not meet requirements", errors=errors)


def _log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, event, extra={"extra_fields": {"event": event, **fields}})


# --- Signup / verification ---

def signup(
    db: Session,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    profile: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create an unverified account and mail it a verification code.

    The account survives a mail failure; the acknowledgement says so and the
    member can ask for a new code through resend-verification.
    """
    _enforce_policy(password)

    user = identity_store.create(
        db,
        email=email,
        password_hash=get_password_hash(password),
        first_name=first_name,
        last_name=last_name,
        **(profile or {}),
    )
    otp = generate_otp()
    identity_store.set_email_otp(
        db, user.id, otp, utcnow() + timedelta(minutes=settings.EMAIL_OTP_EXPIRE_MINUTES)
    )
    db.commit()
    _log_event("signup", user_id=str(user.id))

    ack: Dict[str, Any] = {
        "userId": str(user.id),
        "email": user.email,
        "verificationEmailSent": True,
    }
    try:
        mail_service.send_verification_code(user.email, user.first_name, otp)
    except MailDeliveryError:
        _log_event("verification_mail_failed", logging.WARNING, user_id=str(user.id))
        ack["verificationEmailSent"] = False
        ack["warning"] = "mail_delivery_failed"
    return ack


def resend_verification(db: Session, *, email: str) -> None:
    """Issue a fresh code for an unverified account. Silent when there is nothing to do."""
    normalized = normalize_email(email)
    limiter.hit("resend-verification", normalized)

    user = identity_store.find_by_email(db, normalized)
    if user is None or user.is_email_verified:
        return

    otp = generate_otp()
    identity_store.set_email_otp(
        db, user.id, otp, utcnow() + timedelta(minutes=settings.EMAIL_OTP_EXPIRE_MINUTES)
    )
    db.commit()
    try:
        mail_service.send_verification_code(user.email, user.first_name, otp)
    except MailDeliveryError:
        _log_event("verification_mail_failed", logging.WARNING, user_id=str(user.id))


def verify_email(db: Session, *, email: str, otp: str) -> IssuedSession:
    normalized = normalize_email(email)
    limiter.hit("verify-email", normalized)

    user = identity_store.find_by_email(db, normalized)
    if user is None:
        raise NotFoundError("User")

    # A verified account has no live code; never mint a bearer from this path again.
    if user.is_email_verified or user.email_verification_expires_at is None:
        raise OtpMismatchError()
    if user.email_verification_expires_at < utcnow():
        raise OtpExpiredError()
    if not otp_matches(user.email_verification_otp, otp):
        _log_event("otp_mismatch", logging.WARNING, user_id=str(user.id))
        raise OtpMismatchError()

    user = identity_store.set_email_verified(db, user.id)
    db.commit()
    _log_event("email_verified", user_id=str(user.id))
    return IssuedSession(token=issue_session_token(user), user=user)


# --- Login ---

def _register_failed_login(db: Session, user: User) -> None:
    count = identity_store.increment_failed_attempts(db, user.id)
    if count >= settings.LOCKOUT_THRESHOLD:
        until = utcnow() + timedelta(minutes=settings.LOCKOUT_WINDOW_MINUTES)
        if identity_store.set_lockout(db, user.id, until, threshold=settings.LOCKOUT_THRESHOLD):
            _log_event("account_locked", logging.WARNING, user_id=str(user.id), until=until.isoformat())
    db.commit()


def login(db: Session, *, email: str, password: str, source_ip: str) -> IssuedSession:
    """
    Exchange credentials for a session bearer.

    Unknown email and wrong password are indistinguishable: both run one
    bcrypt verification and both fail with ``invalid_credentials``.
    """
    normalized = normalize_email(email)
    limiter.hit("login", normalized, source_ip)

    user = identity_store.find_by_email(db, normalized)
    if user is None:
        verify_password(password, dummy_password_hash())
        _log_event("login_failed", logging.INFO, reason="unknown_email")
        raise InvalidCredentialsError()

    password_ok = verify_password(password, user.password_hash)

    now = utcnow()
    if user.lockout_until is not None and user.lockout_until > now:
        retry_after = int(math.ceil((user.lockout_until - now).total_seconds()))
        raise AccountLockedError(retry_after=retry_after)

    if not password_ok:
        _register_failed_login(db, user)
        _log_event("login_failed", logging.INFO, user_id=str(user.id), reason="bad_password")
        raise InvalidCredentialsError()

    if not user.is_email_verified:
        raise EmailNotVerifiedError()

    if user.failed_login_attempts or user.lockout_until is not None:
        identity_store.reset_failed_attempts(db, user.id)
        db.commit()
        db.refresh(user)

    _log_event("login", user_id=str(user.id))
    return IssuedSession(token=issue_session_token(user), user=user)


# --- Password reset ---

def forgot_password(db: Session, *, email: str) -> None:
    """Mint a reset token for a verified account. The caller always sees the same answer."""
    normalized = normalize_email(email)
    limiter.hit("forgot-password", normalized)

    user = identity_store.find_by_email(db, normalized)
    if user is None or not user.is_email_verified:
        return

    token = generate_reset_token()
    identity_store.set_password_reset(
        db,
        user.id,
        hash_reset_token(token),
        utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
    )
    db.commit()
    _log_event("password_reset_requested", user_id=str(user.id))

    try:
        mail_service.send_password_reset(user.email, user.first_name, token)
    except MailDeliveryError:
        _log_event("reset_mail_failed", logging.WARNING, user_id=str(user.id))


def reset_password(db: Session, *, token: str, new_password: str) -> None:
    token_hash = hash_reset_token(token)
    user = identity_store.find_by_reset_token_hash(db, token_hash)
    if (
        user is None
        or user.password_reset_expires_at is None
        or user.password_reset_expires_at < utcnow()
    ):
        raise InvalidResetTokenError()

    _enforce_policy(new_password)

    updated = identity_store.consume_password_reset(db, token_hash, get_password_hash(new_password))
    if updated is None:
        raise InvalidResetTokenError()
    db.commit()
    _log_event("password_reset", user_id=str(updated.id))


# --- Authenticated self-service ---

def logout(db: Session, user: User, *, everywhere: bool = False) -> None:
    if everywhere:
        identity_store.bump_token_version(db, user.id)
        db.commit()
        _log_event("sessions_revoked", user_id=str(user.id), by="self")


def update_profile(db: Session, user: User, patch: Dict[str, Any]) -> User:
    updated = identity_store.update_profile_fields(db, user.id, patch)
    db.commit()
    return updated


def change_password(db: Session, user: User, *, current_password: str, new_password: str) -> IssuedSession:
    """Rotate the password and return a bearer for the new token version."""
    if not verify_password(current_password, user.password_hash):
        raise InvalidCredentialsError()
    _enforce_policy(new_password)

    updated = identity_store.set_password_hash(db, user.id, get_password_hash(new_password))
    db.commit()
    _log_event("password_changed", user_id=str(user.id))
    return IssuedSession(token=issue_session_token(updated), user=updated)
