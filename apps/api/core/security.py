"""
Security utilities for authentication and authorization.

Provides:
- Password hashing (bcrypt, work factor from settings)
- Session bearer (JWT) issuing and verification with token versions
- Single-use email OTP and password-reset tokens

SECURITY REQUIREMENTS:
- SECRET_KEY must be set via environment variable
- SECRET_KEY must be cryptographically secure (32+ characters)
- SECRET_KEY must be different for each environment (dev/staging/prod)
- SECRET_KEY must NEVER be committed to source control
"""
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import bcrypt
from jose import JWTError, ExpiredSignatureError, jwt
from jose.exceptions import JWTClaimsError

from core.config import settings
from core.exceptions import TokenError

# JWT settings - SECRET_KEY is required by config.py, will fail at startup if not set
SECRET_KEY = settings.SECRET_KEY

# Validate SECRET_KEY strength at module load
if len(SECRET_KEY) < 32:
    raise ValueError(
        "SECRET_KEY must be at least 32 characters. "
        "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES
CLOCK_SKEW_SECONDS = settings.TOKEN_CLOCK_SKEW_S

OTP_LENGTH = 6
RESET_TOKEN_BYTES = 32  # 256 bits


# --- Password hashing ---

def get_password_hash(password: str) -> str:
    """Hash a password. The cost factor is embedded in the hash string."""
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a password against a hash in constant time.

    Malformed or missing hashes verify as False instead of raising.
    """
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    """Hash used to equalize login timing when the account does not exist."""
    return get_password_hash(secrets.token_urlsafe(16))


# --- Session bearer ---

@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    role: str
    token_version: int
    issued_at: datetime
    expires_at: datetime


def create_access_token(
    *,
    user_id: str,
    role: str,
    token_version: int,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed session bearer. Carries identity, role and token version only."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "role": role,
        "ver": int(token_version),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def issue_session_token(user) -> str:
    return create_access_token(user_id=str(user.id), role=user.role, token_version=user.token_version)


def decode_access_token(token: str) -> SessionClaims:
    """
    Decode and validate a session bearer.

    Raises TokenError with reason expired, invalid_signature or malformed.
    The token version is checked separately against the stored user.
    """
    try:
        jwt.get_unverified_header(token)
    except JWTError:
        raise TokenError("malformed")

    try:
        payload = jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"leeway": CLOCK_SKEW_SECONDS},
        )
    except ExpiredSignatureError:
        raise TokenError("expired")
    except JWTClaimsError:
        raise TokenError("malformed")
    except JWTError:
        raise TokenError("invalid_signature")

    sub = payload.get("sub")
    role = payload.get("role")
    ver = payload.get("ver")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not sub or not isinstance(role, str) or not isinstance(ver, int) or isinstance(ver, bool):
        raise TokenError("malformed")
    if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        raise TokenError("malformed")

    return SessionClaims(
        user_id=str(sub),
        role=role,
        token_version=ver,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )


def ensure_token_version(claims: SessionClaims, current_version: int) -> None:
    if claims.token_version != current_version:
        raise TokenError("stale_version")


# --- Single-use tokens ---

def generate_otp() -> str:
    """Six-digit numeric email verification code."""
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def otp_matches(expected: Optional[str], provided: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def generate_reset_token() -> str:
    """Opaque URL-safe password reset token."""
    return secrets.token_urlsafe(RESET_TOKEN_BYTES)


def hash_reset_token(token: str) -> str:
    """Reset tokens are stored only as their SHA-256 digest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
