"""
auth/store.py -- SQLAlchemy Core persistence layer for users (the credential store).

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. The session manager
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Soft delete:
  Accounts are removed with soft_delete_user(), which stamps deleted_at; every
  lookup filters on deleted_at IS NULL, so a deleted user fails token
  validation on the next request.

Errors:
  IntegrityError on insert is translated into DuplicateEmailError or
  DuplicateUsernameError. Any other SQLAlchemyError (connection refused,
  timeout, locked database) becomes InfrastructureError via
  infrastructure_guard() so the transport layer answers 5xx, not 401.

Layer rule: no imports from cache/.
"""

from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.db import users as _users
from auth.errors import DuplicateEmailError, DuplicateUsernameError, InfrastructureError, infrastructure_guard
from auth.models import User
from auth.validation import normalize_identifier
from core.clock import Clock, from_iso, to_iso, utc_now

_COMPONENT = "credential store"

# Columns update_user() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = {"email", "username", "password_hash", "role", "is_active", "last_login_at"}


def _guard():
    return infrastructure_guard(_COMPONENT, SQLAlchemyError)


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_db_engine("sqlite:///authcore.db")
        store = UserStore(engine)
        user = store.create_user(User(email="a@example.com", username="a", password_hash=h))
        store.get_by_email_or_username("A@Example.com")
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises DuplicateEmailError / DuplicateUsernameError when the UNIQUE
        constraints fire, which also covers two concurrent registrations that
        both passed the session manager's pre-check.
        """
        now = to_iso(self._clock())
        with _guard():
            try:
                with self.engine.connect() as conn:
                    result = conn.execute(
                        _users.insert().values(
                            email=user.email.lower(),
                            username=user.username,
                            password_hash=user.password_hash,
                            role=user.role,
                            is_active=1 if user.is_active else 0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    conn.commit()
                    user_id = result.inserted_primary_key[0]
            except IntegrityError as exc:
                if self.exists_by_email(user.email):
                    raise DuplicateEmailError() from exc
                raise DuplicateUsernameError() from exc
        created = self.get_by_id(user_id)
        if created is None:
            raise InfrastructureError(_COMPONENT, f"user {user_id} not readable after insert")
        return created

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing, non-deleted user.

        Accepted fields: email, username, password_hash, role, is_active,
        last_login_at. is_active is passed as bool and last_login_at as a
        datetime; both are converted for storage here.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "last_login_at" in fields and fields["last_login_at"] is not None:
            fields["last_login_at"] = to_iso(fields["last_login_at"])
        if "email" in fields:
            fields["email"] = fields["email"].lower()
        fields["updated_at"] = to_iso(self._clock())
        with _guard():
            try:
                with self.engine.connect() as conn:
                    result = conn.execute(
                        _users.update()
                        .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                        .values(**fields)
                    )
                    conn.commit()
            except IntegrityError as exc:
                if "email" in fields:
                    raise DuplicateEmailError() from exc
                raise DuplicateUsernameError() from exc
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Hard-delete a user row; its refresh tokens go with it (ON DELETE CASCADE).

        Only used to undo a registration that failed after the insert. Regular
        account removal goes through soft_delete_user().
        """
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(_users.delete().where(_users.c.id == user_id))
                conn.commit()
        return result.rowcount > 0

    def soft_delete_user(self, user_id: int) -> bool:
        """Mark a user deleted. Returns False if not found or already deleted."""
        now = to_iso(self._clock())
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                    .values(deleted_at=now, updated_at=now)
                )
                conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        return self._fetch_one(_users.c.id == user_id)

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup. Returns None if not found."""
        return self._fetch_one(func.lower(_users.c.email) == email.strip().lower())

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive username lookup. Returns None if not found."""
        return self._fetch_one(func.lower(_users.c.username) == username.strip().lower())

    def get_by_email_or_username(self, identifier: str) -> User | None:
        """Look up a login identifier against both email and username.

        Usernames cannot contain "@", so at most one row can match.
        """
        needle = normalize_identifier(identifier)
        return self._fetch_one(or_(func.lower(_users.c.email) == needle, func.lower(_users.c.username) == needle))

    def exists_by_email(self, email: str) -> bool:
        return self._exists(func.lower(_users.c.email) == email.strip().lower())

    def exists_by_username(self, username: str) -> bool:
        return self._exists(func.lower(_users.c.username) == username.strip().lower())

    def _fetch_one(self, condition) -> User | None:
        with _guard():
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(condition & _users.c.deleted_at.is_(None))).fetchone()
        return _row_to_user(row) if row is not None else None

    def _exists(self, condition) -> bool:
        # Soft-deleted rows still hold their email / username: the UNIQUE
        # constraints see them, so the pre-check must too.
        with _guard():
            with self.engine.connect() as conn:
                count = conn.execute(select(func.count()).select_from(_users).where(condition)).scalar()
        return (count or 0) > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )
