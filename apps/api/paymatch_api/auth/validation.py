"""Auth form validation (names, email, password strength)."""

import re
from typing import Optional

from email_validator import EmailNotValidError, validate_email

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8

_PASSWORD_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain at least one special character"),
]


def validate_password_strength(password: str) -> Optional[str]:
    """Return the first unmet password rule, or None."""
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(password):
            return message
    return None


def validate_email_address(email: str) -> Optional[str]:
    """Return an error message for a malformed or over-long address, or None."""
    if not email or not email.strip():
        return "Email is required"
    if len(email) > EMAIL_MAX_LENGTH:
        return f"Email must be at most {EMAIL_MAX_LENGTH} characters"
    try:
        validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        return "Please enter a valid email address"
    return None


def validate_name(value: str, label: str) -> Optional[str]:
    value = (value or "").strip()
    if len(value) < NAME_MIN_LENGTH:
        return f"{label} must be at least {NAME_MIN_LENGTH} characters"
    if len(value) > NAME_MAX_LENGTH:
        return f"{label} must be at most {NAME_MAX_LENGTH} characters"
    return None


def validate_registration_form(
    first_name: str, last_name: str, email: str, password: str
) -> dict[str, str]:
    """Field errors keyed by field name; empty when the form is valid."""
    errors = {
        "first_name": validate_name(first_name, "First name"),
        "last_name": validate_name(last_name, "Last name"),
        "email": validate_email_address(email),
        "password": validate_password_strength(password),
    }
    return {field: message for field, message in errors.items() if message}
