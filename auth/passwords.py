"""
auth/passwords.py -- Password hashing, verification and strength policy.

Security design decisions:
  bcrypt, used directly (no passlib wrapper). passlib's internal wrap-bug
  detection builds a password longer than 72 bytes, which bcrypt 4.x rejects
  with an explicit error. The cost factor comes from Settings.bcrypt_rounds.

  Passwords longer than 72 bytes are rejected by validate_strength() rather
  than silently truncated by bcrypt, so hash() never sees them on the
  register / change-password paths.

  dummy_verify() runs bcrypt against a precomputed hash so a login for an
  unknown identifier costs the same as a wrong password. Response time then
  does not reveal whether the identifier exists.
"""

from __future__ import annotations

import bcrypt

from auth.errors import HashingError, PasswordPolicyError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """bcrypt hashing with a configurable work factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once per hasher so the first login attempt is not
        # measurably slower than subsequent ones.
        self._dummy_hash = self.hash("authcore_timing_dummy")

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash of the given plaintext password."""
        try:
            return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except (ValueError, TypeError) as exc:
            raise HashingError(f"Password hashing failed: {exc}") from exc

    def verify(self, password_hash: str, password: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash.

        Never raises: a malformed hash or undecodable input is a mismatch.
        """
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend one verification's worth of time; the result is discarded."""
        self.verify(self._dummy_hash, password)

    @staticmethod
    def validate_strength(password: str) -> None:
        """Raise PasswordPolicyError listing every unmet requirement."""
        violations: list[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            violations.append("too_short")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            violations.append("too_long")
        if not any(c.isupper() for c in password):
            violations.append("missing_uppercase")
        if not any(c.islower() for c in password):
            violations.append("missing_lowercase")
        if not any(c.isdigit() for c in password):
            violations.append("missing_digit")
        if not any(not c.isalnum() and not c.isspace() for c in password):
            violations.append("missing_symbol")
        if violations:
            raise PasswordPolicyError(violations)
