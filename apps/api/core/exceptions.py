"""
Custom exception classes and error handling.

Every error that crosses the HTTP boundary is an ``APIException`` carrying an
error code (the error kind), a safe message, and an HTTP status. Responses are
rendered by the handlers in ``main.py`` as::

    {"success": false, "error": {"code": ..., "message": ...}}
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str = "internal",
        headers: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        if retry_after is not None:
            headers = dict(headers or {})
            headers["Retry-After"] = str(retry_after)
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.retry_after = retry_after
        self.extra = extra or {}

    def to_error(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.error_code, "message": self.detail}
        if self.retry_after is not None:
            error["retryAfter"] = self.retry_after
        error.update(self.extra)
        return error


class ValidationFailedError(APIException):
    """Input failed validation (including password policy)."""

    def __init__(self, detail: str = "Validation failed", errors: Optional[list] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="validation_failed",
            extra={"details": errors} if errors else None,
        )


class InvalidCredentialsError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid email or password",
            error_code="invalid_credentials",
        )


class EmailNotVerifiedError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Please verify your email address before logging in",
            error_code="email_not_verified",
        )


class EmailTakenError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with that email already exists",
            error_code="email_taken",
        )


class OtpMismatchError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Verification code is incorrect",
            error_code="otp_mismatch",
        )


class OtpExpiredError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Verification code has expired. Request a new one.",
            error_code="otp_expired",
        )


class InvalidResetTokenError(APIException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired reset token. Please request a new password reset.",
            error_code="invalid_or_expired",
        )


class AccountLockedError(APIException):
    def __init__(self, retry_after: int):
        minutes = retry_after // 60 + 1
        super().__init__(
            status_code=status.HTTP_423_LOCKED,
            detail=f"Account temporarily locked. Try again in {minutes} minutes.",
            error_code="account_locked",
            retry_after=retry_after,
        )


class RateLimitedError(APIException):
    def __init__(self, retry_after: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, please try again later.",
            error_code="rate_limited",
            retry_after=retry_after,
        )


class UnauthenticatedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="unauthenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )


class ForbiddenError(APIException):
    """Access denied."""

    def __init__(self, detail: str = "Access denied", error_code: str = "forbidden", extra: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code=error_code,
            extra=extra,
        )


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
            error_code="not_found"
        )


class InvalidIdError(APIException):
    def __init__(self, field: str = "id"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field} format",
            error_code="invalid_id",
        )


class DisallowedFieldError(APIException):
    def __init__(self, fields: list):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Fields not allowed: {', '.join(sorted(fields))}",
            error_code="disallowed_field",
        )


class InvalidRequestError(APIException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="invalid_request",
        )


class ConflictError(APIException):
    """Resource conflict (e.g., duplicate purchase)."""

    def __init__(self, detail: str, error_code: str = "conflict"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code=error_code
        )


class UpstreamUnavailableError(APIException):
    """Payment provider, mail server or store did not answer in time."""

    def __init__(self, detail: str = "Upstream service unavailable, please retry"):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code="upstream_unavailable",
        )


class WebhookSignatureError(APIException):
    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="invalid_signature",
        )


class MailDeliveryError(Exception):
    """Raised by the mail collaborator when a message could not be handed off."""


class TokenError(Exception):
    """
    Bearer verification failure.

    ``reason`` is one of: expired, invalid_signature, stale_version, malformed.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
