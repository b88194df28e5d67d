"""
Password Policy Validation

Implements strong password requirements to prevent weak credentials.
Reference: OWASP A07:2021 – Identification and Authentication Failures

Requirements:
- Minimum 8 characters (configurable upwards)
- Maximum 72 bytes (bcrypt limit)
- At least 1 uppercase letter (A-Z)
- At least 1 lowercase letter (a-z)
- At least 1 ASCII digit (0-9)
- At least 1 character that is neither a letter nor a digit in any script
- Accented and other non-ASCII letters are allowed but satisfy no class
- Not in common password blocklist
"""
import re
from typing import Tuple, List

from core.config import settings

MIN_LENGTH = settings.PASSWORD_MIN_LENGTH
MAX_BYTES = 72
REQUIRE_UPPER = settings.PASSWORD_REQUIRE_UPPER
REQUIRE_LOWER = settings.PASSWORD_REQUIRE_LOWER
REQUIRE_DIGIT = settings.PASSWORD_REQUIRE_DIGIT
REQUIRE_SPECIAL = settings.PASSWORD_REQUIRE_SPECIAL

# Common weak passwords to block (compared case-insensitively)
COMMON_PASSWORDS = {
    "password", "password1", "password123", "password1!", "12345678", "1234567890",
    "qwerty123", "abc12345", "letmein1", "welcome1", "welcome1!", "p@ssw0rd",
    "passw0rd!", "p@ssword1", "trustno1!", "iloveyou1", "admin123!", "fitness1!",
    "fitness123", "workout1!", "jefitness1", "gym12345!",
}


def validate_password(password: str) -> Tuple[bool, List[str]]:
    """
    Validate password against security policy.

    Args:
        password: The password to validate

    Returns:
        Tuple of (is_valid, list_of_error_messages)
    """
    errors = []

    # Length checks
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters")

    if len(password.encode("utf-8")) > MAX_BYTES:
        errors.append(f"Password must not exceed {MAX_BYTES} bytes")

    # Complexity checks
    if REQUIRE_UPPER and not re.search(r'[A-Z]', password):
        errors.append("Password must contain at least one uppercase letter")

    if REQUIRE_LOWER and not re.search(r'[a-z]', password):
        errors.append("Password must contain at least one lowercase letter")

    if REQUIRE_DIGIT and not re.search(r'[0-9]', password):
        errors.append("Password must contain at least one digit")

    # Letters and digits of any script are not special; underscore is.
    if REQUIRE_SPECIAL and not re.search(r'[\W_]', password):
        errors.append("Password must contain at least one special character (!@#$%^&*...)")

    # Common password check (case-insensitive)
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common, please choose a stronger password")

    is_valid = len(errors) == 0
    return is_valid, errors


def get_password_requirements_text() -> str:
    """Return human-readable password requirements."""
    return f"""Password requirements:
• {MIN_LENGTH}-{MAX_BYTES} characters
• At least one uppercase letter (A-Z)
• At least one lowercase letter (a-z)
• At least one digit (0-9)
• At least one special character (!@#$%^&*...)
• Must not be a commonly used password"""
