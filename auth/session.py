"""
auth/session.py -- Session manager: the credential lifecycle state machine.

Refresh token:  issued -> active -> {revoked | expired}   (terminal)
Access token:   valid  -> {expired | blacklisted}          (never persisted)

SessionManager holds no mutable state of its own. Everything lives in its
collaborators, all injected through the constructor:

  UserStore           -- users (auth/store.py)
  RefreshTokenLedger  -- refresh token rows (auth/ledger.py)
  RevocationCache     -- blacklist + login counters (cache/store.py)
  TokenCodec          -- JWT encode / verify (auth/tokens.py)
  PasswordHasher      -- bcrypt + strength policy (auth/passwords.py)
  Settings, clock     -- configuration and time source

Error policy:
  Validation errors are raised before any side effect. Failed logins bump the
  attempt counter before raising -- that side effect is the point of the rate
  limit. Inactive accounts do NOT bump the counter: the password was never
  checked, so there is nothing to brute-force. Store / cache outages propagate
  as InfrastructureError untouched; nothing here retries.

Known limitation: logout_all() and change_password() revoke
refresh tokens only. Access tokens already issued stay valid until their own
exp, which Settings.access_token_ttl_seconds keeps short. logout() is the one
path that also blacklists the presented access token.

Layer rule: no imports from any transport package. cache/ is imported for the
RevocationCache type and the backend factory.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.engine import Engine

from auth.db import create_db_engine
from auth.errors import (
    AccountInactiveError,
    AuthCoreError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RefreshTokenNotFoundError,
    RotationDisabledError,
    TokenRevokedError,
    TooManyAttemptsError,
    UserNotFoundError,
)
from auth.ledger import RefreshTokenLedger
from auth.models import (
    ROLE_ADMIN,
    ROLE_USER,
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    AccessClaims,
    AuthResult,
    RefreshToken,
    TokenPair,
    User,
)
from auth.passwords import PasswordHasher
from auth.store import UserStore
from auth.tokens import TokenCodec
from auth.validation import validate_email, validate_username
from cache.store import RevocationCache, create_revocation_cache
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("authcore.session")


class SessionManager:
    """Register / login / refresh / logout / change-password / validate."""

    def __init__(
        self,
        users: UserStore,
        ledger: RefreshTokenLedger,
        cache: RevocationCache,
        codec: TokenCodec,
        hasher: PasswordHasher,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self._users = users
        self._ledger = ledger
        self._cache = cache
        self._codec = codec
        self._hasher = hasher
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, username: str, password: str) -> AuthResult:
        """Create a `user`-role account and log it in.

        Raises InvalidEmailError / InvalidUsernameError / PasswordPolicyError
        for bad input and DuplicateEmailError / DuplicateUsernameError when
        either identifier is taken (case-insensitively). Nothing is written
        unless every check passes, and the user row is removed again if the
        token pair cannot be persisted.
        """
        user = self._create_user(email, username, password, ROLE_USER)
        try:
            tokens = self._issue_pair(user, ip_address="", user_agent="")
        except AuthCoreError:
            self._users.delete_user(user.id)
            logger.warning("Registration of %s rolled back: token issue failed", user.username)
            raise
        logger.info("Registered user %d (%s)", user.id, user.username)
        return AuthResult(user=user, tokens=tokens)

    def create_admin(self, email: str, username: str, password: str) -> User:
        """Bootstrap an admin account. Same checks as register(); no tokens issued."""
        user = self._create_user(email, username, password, ROLE_ADMIN)
        logger.info("Created admin user %d (%s)", user.id, user.username)
        return user

    def _create_user(self, email: str, username: str, password: str, role: str) -> User:
        email = validate_email(email)
        username = validate_username(username)
        self._hasher.validate_strength(password)

        if self._users.exists_by_email(email):
            raise DuplicateEmailError()
        if self._users.exists_by_username(username):
            raise DuplicateUsernameError()

        password_hash = self._hasher.hash(password)
        return self._users.create_user(
            User(email=email, username=username, password_hash=password_hash, role=role, is_active=True)
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, ip_address: str = "", user_agent: str = "") -> AuthResult:
        """Authenticate by email or username and issue a new token pair.

        Other sessions of the same user are left untouched.
        """
        max_attempts = self._settings.login_max_attempts
        if self._cache.get_attempts(identifier) >= max_attempts:
            logger.warning("Login rejected (rate_limited) for identifier %r", identifier)
            raise TooManyAttemptsError(self._settings.login_window_seconds)

        user = self._users.get_by_email_or_username(identifier)
        if user is None:
            # Equalize timing with the wrong-password path.
            self._hasher.dummy_verify(password)
            attempts = self._cache.increment_attempts(identifier)
            logger.warning("Login failed (not_found) for identifier %r, attempt %d", identifier, attempts)
            raise InvalidCredentialsError()

        if not user.is_active:
            logger.warning("Login rejected (inactive) for user %d", user.id)
            raise AccountInactiveError()

        if not self._hasher.verify(user.password_hash, password):
            attempts = self._cache.increment_attempts(identifier)
            logger.warning("Login failed (bad_password) for user %d, attempt %d", user.id, attempts)
            raise InvalidCredentialsError()

        self._cache.reset_attempts(identifier)
        now = self._clock()
        self._users.update_user(user.id, last_login_at=now)
        user.last_login_at = now

        tokens = self._issue_pair(user, ip_address=ip_address, user_agent=user_agent)
        logger.info("User %d logged in from %s", user.id, ip_address or "unknown address")
        return AuthResult(user=user, tokens=tokens)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> str:
        """Exchange a usable refresh token for a new access token.

        The refresh token itself is not rotated and the ledger row is not
        modified, so concurrent refreshes with the same token both succeed.
        """
        claims = self._verify_refresh_claims(refresh_token)
        record = self._find_record(refresh_token)
        if record.revoked:
            logger.warning("Refresh rejected (revoked) for user %d", record.user_id)
            raise InvalidRefreshTokenError("revoked")
        self._ensure_not_expired(record)
        user = self._refresh_owner(claims, record)
        return self._codec.issue_access_token(user)

    def rotate_refresh_token(self, refresh_token: str, ip_address: str = "", user_agent: str = "") -> TokenPair:
        """Exchange a refresh token for a brand-new pair, revoking the old row.

        Opt-in via Settings.rotate_refresh_tokens. Presenting a token that was
        already revoked is treated as theft: every refresh token of its owner
        is revoked, forcing a fresh login on all devices.
        """
        if not self._settings.rotate_refresh_tokens:
            raise RotationDisabledError()

        claims = self._verify_refresh_claims(refresh_token)
        record = self._find_record(refresh_token)
        if record.revoked:
            revoked = self._ledger.revoke_all_for_user(record.user_id)
            logger.warning(
                "Refresh token reuse detected for user %d; revoked %d remaining tokens", record.user_id, revoked
            )
            raise InvalidRefreshTokenError("reused")
        self._ensure_not_expired(record)
        user = self._refresh_owner(claims, record)

        # A concurrent rotation of the same token loses here and fails cleanly.
        if not self._ledger.revoke(refresh_token):
            raise InvalidRefreshTokenError("revoked")
        return self._issue_pair(user, ip_address=ip_address, user_agent=user_agent)

    def _verify_refresh_claims(self, refresh_token: str) -> AccessClaims:
        try:
            return self._codec.verify(refresh_token, expected_type=TOKEN_TYPE_REFRESH)
        except InvalidTokenError as exc:
            logger.warning("Refresh rejected (%s)%s", exc.reason, self._subject_hint(refresh_token))
            raise InvalidRefreshTokenError(exc.reason) from exc

    def _find_record(self, refresh_token: str) -> RefreshToken:
        try:
            return self._ledger.find_by_token(refresh_token)
        except RefreshTokenNotFoundError as exc:
            logger.warning("Refresh rejected (not_found)%s", self._subject_hint(refresh_token))
            raise InvalidRefreshTokenError("not_found") from exc

    def _ensure_not_expired(self, record: RefreshToken) -> None:
        # The ledger's expires_at is authoritative over the exp claim.
        if not record.is_usable(self._clock()):
            logger.warning("Refresh rejected (expired) for user %d", record.user_id)
            raise InvalidRefreshTokenError("expired")

    def _refresh_owner(self, claims: AccessClaims, record: RefreshToken) -> User:
        if claims.user_id != record.user_id:
            logger.warning("Refresh rejected (owner_mismatch) for ledger user %d", record.user_id)
            raise InvalidRefreshTokenError("owner_mismatch")
        user = self._users.get_by_id(record.user_id)
        if user is None:
            raise InvalidRefreshTokenError("user_not_found")
        if not user.is_active:
            raise AccountInactiveError()
        return user

    # ------------------------------------------------------------------
    # Logout / revocation
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str, access_token: str) -> None:
        """End one session. Always succeeds for the client.

        Unknown or already-revoked refresh tokens are ignored. The access token
        is blacklisted for exactly its remaining lifetime; if it is already
        expired or unparsable there is nothing to blacklist.
        """
        if refresh_token:
            self._ledger.revoke(refresh_token)

        if not access_token:
            return
        try:
            remaining = self._codec.remaining_validity(access_token)
        except InvalidTokenError as exc:
            logger.debug("Logout skipped blacklisting (%s)", exc.reason)
            return
        if remaining.total_seconds() > 0:
            self._cache.blacklist(access_token, remaining)
        logger.info("Session logged out%s", self._subject_hint(access_token))

    def logout_all(self, user_id: int) -> int:
        """Revoke every refresh token of a user. Returns how many were revoked.

        Already-issued access tokens remain valid until their natural expiry.
        """
        revoked = self._ledger.revoke_all_for_user(user_id)
        logger.info("Revoked %d refresh tokens for user %d", revoked, user_id)
        return revoked

    def list_sessions(self, user_id: int) -> list[RefreshToken]:
        """The user's usable refresh tokens, newest first."""
        return self._ledger.find_active_by_user(user_id)

    def purge_stale_sessions(self, revoked_retention: timedelta | None = None) -> tuple[int, int, int]:
        """Maintenance: delete unusable ledger rows and expired cache entries.

        Returns (expired rows, revoked rows, cache entries) removed. Revoked
        rows are kept for Settings.revoked_token_retention unless overridden.
        """
        retention = revoked_retention if revoked_retention is not None else self._settings.revoked_token_retention
        expired = self._ledger.purge_expired()
        revoked = self._ledger.purge_revoked_older_than(retention)
        cache_entries = self._cache.purge_expired()
        return expired, revoked, cache_entries

    def deactivate_user(self, user_id: int) -> None:
        """Disable an account and revoke its refresh tokens.

        Access tokens stop validating on the next validate_token() call,
        because validation re-reads the user.
        """
        if not self._users.update_user(user_id, is_active=False):
            raise UserNotFoundError(user_id)
        self.logout_all(user_id)
        logger.info("Deactivated user %d", user_id)

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(self, user_id: int, old_password: str, new_password: str) -> None:
        """Replace the password and force re-login everywhere.

        Revokes every refresh token of the user. Access tokens already issued
        stay valid until they expire (same limitation as logout_all).
        """
        user = self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not self._hasher.verify(user.password_hash, old_password):
            logger.warning("Password change rejected (bad_current_password) for user %d", user_id)
            raise InvalidCurrentPasswordError()
        self._hasher.validate_strength(new_password)

        self._users.update_user(user_id, password_hash=self._hasher.hash(new_password))
        revoked = self._ledger.revoke_all_for_user(user_id)
        logger.info("Password changed for user %d; revoked %d refresh tokens", user_id, revoked)

    # ------------------------------------------------------------------
    # Validation (the interface other services call)
    # ------------------------------------------------------------------

    def validate_token(self, access_token: str) -> User:
        """Return the live User behind an access token.

        Order: blacklist (cheapest), signature + timing, then a fresh read of
        the user so deletion or deactivation takes effect on the next request.
        """
        if access_token and self._cache.is_blacklisted(access_token):
            logger.warning("Token rejected (revoked)%s", self._subject_hint(access_token))
            raise TokenRevokedError()

        try:
            claims = self._codec.verify(access_token, expected_type=TOKEN_TYPE_ACCESS)
        except InvalidTokenError as exc:
            logger.warning("Token rejected (%s)%s", exc.reason, self._subject_hint(access_token))
            raise

        user = self._users.get_by_id(claims.user_id)
        if user is None:
            logger.warning("Token rejected (user_not_found) for user %d", claims.user_id)
            raise UserNotFoundError(claims.user_id)
        if not user.is_active:
            logger.warning("Token rejected (inactive) for user %d", claims.user_id)
            raise AccountInactiveError()
        return user

    def close(self) -> None:
        """Release the database pool and the cache connection."""
        self._users.close()
        self._ledger.close()
        self._cache.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_pair(self, user: User, ip_address: str, user_agent: str) -> TokenPair:
        access_token = self._codec.issue_access_token(user)
        refresh_token, expires_at = self._codec.issue_refresh_token(user)
        self._ledger.store(
            RefreshToken(
                user_id=user.id,
                token=refresh_token,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token, refresh_expires_at=expires_at)

    def _subject_hint(self, token: str) -> str:
        """' for user N' from the unverified subject, for log lines only."""
        try:
            return f" for user {self._codec.extract_unverified_subject(token)}"
        except InvalidTokenError:
            return ""


def create_session_manager(
    settings: Settings,
    clock: Clock = utc_now,
    *,
    engine: Engine | None = None,
    cache: RevocationCache | None = None,
) -> SessionManager:
    """Composition root: build every collaborator from one Settings object.

    engine / cache may be passed in to share them with other components (or
    to substitute test doubles); otherwise they are built from settings.
    """
    engine = engine or create_db_engine(settings.database_url)
    return SessionManager(
        users=UserStore(engine, clock=clock),
        ledger=RefreshTokenLedger(engine, clock=clock),
        cache=cache or create_revocation_cache(settings, clock=clock),
        codec=TokenCodec(settings, clock=clock),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        settings=settings,
        clock=clock,
    )
