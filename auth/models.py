"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers). Stores and the session manager do
the work; the only behaviour here is the refresh-token usability predicate,
which is the ledger's central invariant and is shared by every caller.

Layer rule: no imports from cache/ or from any transport package.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLE_USER = "user"
ROLE_ADMIN = "admin"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


@dataclass
class User:
    """An identity record owned by the credential store.

    email is stored lower-cased; username keeps the casing it was registered
    with but is compared case-insensitively. deleted_at is set by soft delete
    and such users are invisible to every store lookup.

    id is None before the record is written to the database.
    """

    email: str
    username: str
    password_hash: str
    role: str = ROLE_USER  # "user" | "admin"
    is_active: bool = True
    id: int | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


@dataclass
class RefreshToken:
    """One persisted refresh token (a ledger row).

    ip_address / user_agent are empty strings when the token was issued at
    registration rather than at an interactive login.
    """

    user_id: int
    token: str
    expires_at: datetime
    revoked: bool = False
    ip_address: str = ""
    user_agent: str = ""
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def is_usable(self, now: datetime) -> bool:
        """A token is usable only while it is unrevoked and now < expires_at."""
        return not self.revoked and now < self.expires_at


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of a signed token. Never persisted."""

    user_id: int
    email: str
    username: str
    role: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    issuer: str
    subject: str
    token_type: str = TOKEN_TYPE_ACCESS
    jti: str = ""


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthResult:
    """What register() and login() hand back to the transport layer."""

    user: User
    tokens: TokenPair
