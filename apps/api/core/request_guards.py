"""
Request guards applied before any route runs.

- Operator guard: request bodies and query strings are walked to a bounded
  depth; any key starting with ``$`` (store operator syntax) or nesting past
  the limit is rejected as ``invalid_request`` before the handler runs.
- Privileged-field stripping: fields that only the server may write (role,
  verification state, counters, entitlements, ids, timestamps) are removed
  from every JSON body and query string.
- Per-route body whitelists (``body_whitelist``) and id-shape checks
  (``valid_user_id`` etc.) are FastAPI dependencies declared on the route.
"""
import json
import logging
import re
from typing import Any, Iterable, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlencode
from uuid import UUID

from fastapi import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.exceptions import (
    DisallowedFieldError,
    InvalidIdError,
    InvalidRequestError,
)

logger = logging.getLogger(__name__)

MAX_DEPTH = 10
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Never accepted from client input, in either wire casing.
BLACKLISTED_FIELDS = frozenset({
    "role",
    "isEmailVerified", "is_email_verified",
    "emailVerificationOtp", "email_verification_otp",
    "emailVerificationExpiresAt", "email_verification_expires_at",
    "passwordHash", "password_hash",
    "passwordResetTokenHash", "password_reset_token_hash",
    "passwordResetExpiresAt", "password_reset_expires_at",
    "tokenVersion", "token_version",
    "failedLoginAttempts", "failed_login_attempts",
    "lockoutUntil", "lockout_until",
    "paymentCustomerId", "payment_customer_id",
    "activeSubscription", "active_subscription",
    "purchasedProgramSlugs", "purchased_program_slugs",
    "id", "_id",
    "createdAt", "created_at",
    "updatedAt", "updated_at",
})

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
EXTERNAL_ID_RE = re.compile(r"^[A-Za-z0-9_]{1,255}$")
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class OperatorInjection(Exception):
    pass


def find_operator_keys(value: Any, depth: int = 0) -> None:
    """Raise OperatorInjection if ``value`` has a ``$`` key or nests past MAX_DEPTH."""
    if depth > MAX_DEPTH:
        raise OperatorInjection("Request nesting is too deep")
    if isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str) and key.startswith("$"):
                raise OperatorInjection(f"Operator key not allowed: {key}")
            find_operator_keys(item, depth + 1)
    elif isinstance(value, list):
        for item in value:
            find_operator_keys(item, depth + 1)
    elif isinstance(value, re.Pattern):
        raise OperatorInjection("Pattern values are not allowed")


def check_query_keys(pairs: Iterable[Tuple[str, str]]) -> None:
    """
    Query keys in bracket notation (``email[$ne]=``) are the query-string
    spelling of operator objects.
    """
    for key, _ in pairs:
        segments = re.split(r"[\[\].]", key)
        if any(seg.startswith("$") for seg in segments if seg):
            raise OperatorInjection(f"Operator key not allowed: {key}")
        if key.count("[") > MAX_DEPTH:
            raise OperatorInjection("Query nesting is too deep")


def strip_blacklisted(body: dict) -> List[str]:
    removed = [key for key in body if key in BLACKLISTED_FIELDS]
    for key in removed:
        del body[key]
    return removed


def _query_base_key(key: str) -> str:
    return re.split(r"[\[.]", key, maxsplit=1)[0]


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {"code": "invalid_request", "message": message}},
    )


class RequestGuardMiddleware:
    """
    Pure ASGI middleware: buffers the body once, inspects it and hands the
    (possibly rewritten) body to the application.
    """

    def __init__(self, app: ASGIApp, exempt_paths: Iterable[str] = ()):
        self.app = app
        self.exempt_paths = set(exempt_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        # --- query string ---
        raw_query = scope.get("query_string", b"").decode("latin-1")
        pairs = parse_qsl(raw_query, keep_blank_values=True)
        try:
            check_query_keys(pairs)
        except OperatorInjection as e:
            logger.warning(
                "Rejected operator in query string",
                extra={"extra_fields": {"path": scope["path"], "reason": str(e)}},
            )
            await _error_response(str(e))(scope, receive, send)
            return

        kept = [(k, v) for k, v in pairs if _query_base_key(k) not in BLACKLISTED_FIELDS]
        if len(kept) != len(pairs):
            scope = dict(scope)
            scope["query_string"] = urlencode(kept).encode("latin-1")
            logger.warning(
                "Stripped privileged query fields",
                extra={"extra_fields": {"path": scope["path"]}},
            )

        if scope["method"] not in MUTATING_METHODS:
            await self.app(scope, receive, send)
            return

        # --- body ---
        body, disconnected = await self._read_body(receive)
        if disconnected:
            return

        media_type = _media_type(_header(scope, b"content-type"))
        if body and media_type == "application/x-www-form-urlencoded":
            try:
                check_query_keys(parse_qsl(body.decode("latin-1"), keep_blank_values=True))
            except OperatorInjection as e:
                await _error_response(str(e))(scope, receive, send)
                return

        # Request parsing treats a missing content type as JSON too.
        if body and (not media_type or media_type.endswith("json")):
            try:
                parsed = json.loads(body)
            except ValueError:
                # Malformed JSON is reported by request validation downstream.
                parsed = None

            if parsed is not None:
                try:
                    find_operator_keys(parsed)
                except OperatorInjection as e:
                    logger.warning(
                        "Rejected operator in request body",
                        extra={"extra_fields": {"path": scope["path"], "reason": str(e)}},
                    )
                    await _error_response(str(e))(scope, receive, send)
                    return

                if isinstance(parsed, dict):
                    removed = strip_blacklisted(parsed)
                    if removed:
                        logger.warning(
                            "Stripped privileged body fields",
                            extra={"extra_fields": {"path": scope["path"], "fields": sorted(removed)}},
                        )
                        body = json.dumps(parsed).encode("utf-8")
                        scope = dict(scope)
                        scope["headers"] = [
                            (k, v) for k, v in scope["headers"] if k.lower() != b"content-length"
                        ] + [(b"content-length", str(len(body)).encode("latin-1"))]

        await self.app(scope, _replay(body, receive), send)

    @staticmethod
    async def _read_body(receive: Receive) -> Tuple[bytes, bool]:
        chunks = []
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return b"", True
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                return b"".join(chunks), False


def _header(scope: Scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _media_type(content_type: Optional[str]) -> str:
    """Lower-cased media type without parameters, e.g. ``application/json``."""
    return (content_type or "").split(";", 1)[0].strip().lower()


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay_receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


# --- Route-level dependencies ---

def body_whitelist(allowed: Set[str], strict: bool = False):
    """
    Dependency factory declaring the body fields a route accepts.

    Non-strict routes rely on their schema dropping unknown fields. Strict
    routes reject any field outside ``allowed`` with ``disallowed_field``.
    Privileged fields were already stripped by the middleware, so they never
    trigger the strict error.
    """
    async def checker(request: Request) -> None:
        if not strict:
            return
        try:
            body = await request.json()
        except ValueError:
            return
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        extra = set(body) - set(allowed)
        if extra:
            raise DisallowedFieldError(sorted(extra))

    return checker


def parse_id(value: str, field: str = "id") -> UUID:
    if not isinstance(value, str) or not UUID_RE.match(value):
        raise InvalidIdError(field)
    return UUID(value)


def valid_user_id(user_id: str) -> UUID:
    return parse_id(user_id, "user_id")


def valid_program_id(program_id: str) -> UUID:
    return parse_id(program_id, "program_id")


def valid_subscription_id(ext_id: str) -> str:
    if not EXTERNAL_ID_RE.match(ext_id):
        raise InvalidIdError("subscription id")
    return ext_id


def valid_slug(slug: str) -> str:
    if len(slug) > 100 or not SLUG_RE.match(slug):
        raise InvalidIdError("program slug")
    return slug
