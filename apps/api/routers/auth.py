"""
Authentication API endpoints.

Provides:
- Signup with email verification (6-digit code)
- Login (session bearer) with account lockout
- Password reset (self-service via email) and password change
- Logout, optionally from every device
- Profile read and update
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
import logging

from core.auth import get_current_user
from core.database import get_db
from core.rate_limit import client_ip, limit_by_ip
from core.request_guards import body_whitelist
from core.security import ACCESS_TOKEN_EXPIRE_MINUTES
from models import User
from schemas import (
    ChangePasswordRequest,
    EmailOnlyRequest,
    LoginRequest,
    LogoutRequest,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    SignupRequest,
    UserOut,
    VerifyEmailRequest,
    body_fields,
    envelope,
)
from services import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

PROFILE_FIELDS = body_fields(ProfileUpdateRequest)


def _session_payload(issued: auth_service.IssuedSession) -> dict:
    return {
        "token": issued.token,
        "tokenType": "bearer",
        "expiresIn": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "user": UserOut.from_user(issued.user),
    }


@router.post(
    "/signup",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(limit_by_ip("signup"))],
)
def signup(body: SignupRequest, db: Session = Depends(get_db)):
    """
    Register a new account. No session is issued until the email is verified.
    """
    profile = body.model_dump(
        include={"phone", "dob", "gender", "activity_status", "goals", "reason"},
        exclude_none=True,
    )
    ack = auth_service.signup(
        db,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        profile=profile,
    )
    return envelope(ack)


@router.post("/verify-email")
def verify_email(body: VerifyEmailRequest, db: Session = Depends(get_db)):
    issued = auth_service.verify_email(db, email=body.email, otp=body.otp)
    return envelope(_session_payload(issued))


@router.post("/resend-verification")
def resend_verification(body: EmailOnlyRequest, db: Session = Depends(get_db)):
    auth_service.resend_verification(db, email=body.email)
    return envelope({"message": "If the account exists and is unverified, a new code has been sent."})


@router.post("/login")
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    issued = auth_service.login(db, email=body.email, password=body.password, source_ip=client_ip(request))
    return envelope(_session_payload(issued))


@router.post("/forgot-password")
def forgot_password(body: EmailOnlyRequest, db: Session = Depends(get_db)):
    """
    Always returns the same response so the endpoint cannot be used to probe
    which addresses have accounts.
    """
    auth_service.forgot_password(db, email=body.email)
    return envelope({"message": "If that email is registered, a reset link has been sent."})


@router.post("/reset-password", dependencies=[Depends(limit_by_ip("reset-password"))])
def reset_password(body: ResetPasswordRequest, db: Session = Depends(get_db)):
    auth_service.reset_password(db, token=body.token, new_password=body.new_password)
    return envelope({"message": "Password has been reset. Please log in again."})


@router.post("/logout")
def logout(
    body: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Bearers are stateless; the client drops its token. ``everywhere`` also
    invalidates every other bearer issued to this account.
    """
    everywhere = bool(body and body.everywhere)
    auth_service.logout(db, current_user, everywhere=everywhere)
    return envelope({"loggedOut": True, "everywhere": everywhere})


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return envelope(UserOut.from_user(current_user))


@router.put("/profile", dependencies=[Depends(body_whitelist(PROFILE_FIELDS, strict=True))])
def update_profile(
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = auth_service.update_profile(db, current_user, body.to_patch())
    return envelope(UserOut.from_user(user))


@router.post("/change-password")
def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    issued = auth_service.change_password(
        db, current_user, current_password=body.current_password, new_password=body.new_password
    )
    return envelope(_session_payload(issued))
