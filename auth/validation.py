"""
auth/validation.py -- Shape checks for registration input.

Each check raises its own ValidationError subclass so the caller can report
which field was wrong. Uniqueness is not checked here; that needs the store.
"""

from __future__ import annotations

import re

from auth.errors import InvalidEmailError, InvalidUsernameError

MAX_EMAIL_LENGTH = 255
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 50

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_identifier(identifier: str) -> str:
    """Canonical form of a login identifier (email or username)."""
    return identifier.strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized email or raise InvalidEmailError."""
    normalized = normalize_email(email)
    if not normalized:
        raise InvalidEmailError("Email is required.")
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise InvalidEmailError(f"Email must be at most {MAX_EMAIL_LENGTH} characters.")
    if not _EMAIL_RE.match(normalized):
        raise InvalidEmailError("Email address is not valid.")
    return normalized


def validate_username(username: str) -> str:
    """Return the stripped username or raise InvalidUsernameError.

    Usernames may not contain "@" (the pattern excludes it), which keeps a
    login identifier unambiguous: anything with "@" can only match an email.
    """
    stripped = username.strip()
    if len(stripped) < MIN_USERNAME_LENGTH or len(stripped) > MAX_USERNAME_LENGTH:
        raise InvalidUsernameError(
            f"Username must be between {MIN_USERNAME_LENGTH} and {MAX_USERNAME_LENGTH} characters."
        )
    if not _USERNAME_RE.match(stripped):
        raise InvalidUsernameError("Username may only contain letters, digits, underscores and hyphens.")
    return stripped
