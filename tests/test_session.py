"""Integration tests for auth/session.py -- the session manager.

Covers:
- register(): validation order, case-insensitive uniqueness, tokens issued
- login(): by email or username, generic failures, inactive accounts,
  rate limiting and its window
- refresh_access_token(): happy path and every rejection reason
- rotate_refresh_token(): disabled by default, rotation, reuse detection
- logout() / logout_all(): idempotence, access-token blacklisting
- change_password(): refresh tokens revoked, old access token still valid
- validate_token(): blacklist, expiry, deleted and deactivated users
- list_sessions(), deactivate_user(), purge_stale_sessions()
- infrastructure failures propagate instead of masquerading as auth failures
- forged tokens with unconvertible claims are rejected, never crash
"""

from __future__ import annotations

import base64
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auth.errors import (
    AccountInactiveError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InfrastructureError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidEmailError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    InvalidUsernameError,
    PasswordPolicyError,
    RotationDisabledError,
    TokenExpiredError,
    TokenRevokedError,
    TooManyAttemptsError,
    UserNotFoundError,
)
from auth.models import ROLE_ADMIN, ROLE_USER
from auth.session import create_session_manager

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Passw0rd"


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_first_user_gets_id_1_and_tokens(self, manager, codec):
        result = manager.register("alice@example.com", "alice", PASSWORD)
        assert result.user.id == 1
        assert result.user.role == ROLE_USER
        assert result.user.is_active is True
        assert result.tokens.token_type == "bearer"
        assert codec.verify(result.tokens.access_token).user_id == 1
        assert manager.validate_token(result.tokens.access_token).id == 1

    def test_password_is_stored_hashed(self, manager, users):
        manager.register("alice@example.com", "alice", PASSWORD)
        stored = users.get_by_id(1)
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$2")

    def test_email_normalised(self, manager):
        result = manager.register("  Alice@Example.COM ", "alice", PASSWORD)
        assert result.user.email == "alice@example.com"

    def test_duplicate_email_case_insensitive(self, manager, registered):
        with pytest.raises(DuplicateEmailError):
            manager.register("ALICE@example.com", "alice2", PASSWORD)

    def test_duplicate_username_case_insensitive(self, manager, registered):
        with pytest.raises(DuplicateUsernameError):
            manager.register("other@example.com", "ALICE", PASSWORD)

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "a b@example.com", "x" * 250 + "@example.com"])
    def test_invalid_email(self, manager, email):
        with pytest.raises(InvalidEmailError):
            manager.register(email, "alice", PASSWORD)

    @pytest.mark.parametrize("username", ["ab", "x" * 51, "alice@home", "bad name", "semi;colon"])
    def test_invalid_username(self, manager, username):
        with pytest.raises(InvalidUsernameError):
            manager.register("alice@example.com", username, PASSWORD)

    def test_weak_password(self, manager, users):
        with pytest.raises(PasswordPolicyError):
            manager.register("alice@example.com", "alice", "short1!")
        assert users.get_by_email("alice@example.com") is None

    def test_validation_precedes_uniqueness(self, manager, registered):
        with pytest.raises(PasswordPolicyError):
            manager.register("alice@example.com", "alice", "weak")

    def test_registration_token_has_no_client_metadata(self, manager, registered, ledger):
        record = ledger.find_by_token(registered.tokens.refresh_token)
        assert record.ip_address == ""
        assert record.user_agent == ""

    def test_failed_token_persistence_leaves_no_user(self, manager, ledger, users):
        ledger.store = MagicMock(side_effect=InfrastructureError("refresh token ledger", "disk I/O error"))
        with pytest.raises(InfrastructureError):
            manager.register("alice@example.com", "alice", PASSWORD)
        assert users.exists_by_email("alice@example.com") is False
        assert users.exists_by_username("alice") is False

    def test_create_admin(self, manager):
        admin = manager.create_admin("root@example.com", "root", PASSWORD)
        assert admin.role == ROLE_ADMIN
        assert manager.list_sessions(admin.id) == []


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_by_username_and_email(self, manager, registered):
        by_name = manager.login("alice", PASSWORD, ip_address="10.0.0.1", user_agent="pytest")
        by_email = manager.login("ALICE@example.com", PASSWORD)
        assert by_name.user.id == by_email.user.id == registered.user.id
        assert by_name.tokens.refresh_token != by_email.tokens.refresh_token

    def test_login_records_client_and_last_login(self, manager, registered, ledger, users, clock):
        result = manager.login("alice", PASSWORD, ip_address="10.0.0.1", user_agent="pytest")
        record = ledger.find_by_token(result.tokens.refresh_token)
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest"
        assert users.get_by_id(registered.user.id).last_login_at == clock()

    def test_login_keeps_other_sessions(self, manager, registered):
        manager.login("alice", PASSWORD)
        assert len(manager.list_sessions(registered.user.id)) == 2

    def test_wrong_password_and_unknown_user_look_the_same(self, manager, registered):
        with pytest.raises(InvalidCredentialsError) as wrong:
            manager.login("alice", "Wrong!Pass1")
        with pytest.raises(InvalidCredentialsError) as unknown:
            manager.login("nobody", "Wrong!Pass1")
        assert wrong.value.message == unknown.value.message

    def test_failed_attempts_are_counted(self, manager, registered, cache):
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                manager.login("alice", "Wrong!Pass1")
        assert cache.get_attempts("alice") == 2

    def test_success_resets_counter(self, manager, registered, cache):
        with pytest.raises(InvalidCredentialsError):
            manager.login("alice", "Wrong!Pass1")
        manager.login("alice", PASSWORD)
        assert cache.get_attempts("alice") == 0

    def test_rate_limit_after_five_failures(self, manager, registered, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                manager.login("alice", "Wrong!Pass1")

        # Even the correct password is refused while locked out.
        with pytest.raises(TooManyAttemptsError) as exc_info:
            manager.login("alice", PASSWORD)
        assert exc_info.value.status_code == 429
        assert "15 minutes" in exc_info.value.message

        clock.advance(minutes=15)
        assert manager.login("alice", PASSWORD).user.id == registered.user.id

    def test_rate_limit_applies_to_unknown_identifiers(self, manager):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                manager.login("ghost", "Wrong!Pass1")
        with pytest.raises(TooManyAttemptsError):
            manager.login("ghost", "Wrong!Pass1")

    def test_inactive_account_rejected_without_counting(self, manager, registered, cache):
        manager.deactivate_user(registered.user.id)
        with pytest.raises(AccountInactiveError) as exc_info:
            manager.login("alice", PASSWORD)
        assert exc_info.value.status_code == 403
        assert cache.get_attempts("alice") == 0

    def test_deleted_user_cannot_log_in(self, manager, registered, users):
        users.soft_delete_user(registered.user.id)
        with pytest.raises(InvalidCredentialsError):
            manager.login("alice", PASSWORD)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_issues_new_access_token(self, manager, registered, clock):
        clock.advance(minutes=20)
        with pytest.raises(TokenExpiredError):
            manager.validate_token(registered.tokens.access_token)

        access = manager.refresh_access_token(registered.tokens.refresh_token)
        assert manager.validate_token(access).id == registered.user.id

    def test_refresh_does_not_rotate(self, manager, registered):
        manager.refresh_access_token(registered.tokens.refresh_token)
        manager.refresh_access_token(registered.tokens.refresh_token)
        assert len(manager.list_sessions(registered.user.id)) == 1

    def test_refresh_after_logout_rejected(self, manager, registered):
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(registered.tokens.refresh_token)
        assert exc_info.value.reason == "revoked"

    def test_expired_refresh_token_rejected(self, manager, registered, clock):
        clock.advance(days=7)
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(registered.tokens.refresh_token)
        assert exc_info.value.reason == "expired"

    def test_access_token_is_not_a_refresh_token(self, manager, registered):
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(registered.tokens.access_token)
        assert exc_info.value.reason == "wrong_type"

    def test_unknown_refresh_token_rejected(self, manager, registered, codec):
        token, _ = codec.issue_refresh_token(registered.user)
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(token)
        assert exc_info.value.reason == "not_found"

    def test_garbage_rejected(self, manager):
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token("garbage")
        assert exc_info.value.reason == "malformed"

    def test_deactivated_owner_rejected(self, manager, registered, users):
        users.update_user(registered.user.id, is_active=False)
        with pytest.raises(AccountInactiveError):
            manager.refresh_access_token(registered.tokens.refresh_token)

    def test_deleted_owner_rejected(self, manager, registered, users):
        users.soft_delete_user(registered.user.id)
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(registered.tokens.refresh_token)
        assert exc_info.value.reason == "user_not_found"


class TestRotate:
    def test_disabled_by_default(self, manager, registered):
        with pytest.raises(RotationDisabledError):
            manager.rotate_refresh_token(registered.tokens.refresh_token)

    def test_rotation_revokes_old_and_issues_new(self, manager_factory):
        rotating = manager_factory(rotate_refresh_tokens=True)
        result = rotating.register("alice@example.com", "alice", PASSWORD)

        pair = rotating.rotate_refresh_token(result.tokens.refresh_token, ip_address="10.0.0.2")
        assert pair.refresh_token != result.tokens.refresh_token
        assert rotating.validate_token(pair.access_token).id == result.user.id
        sessions = rotating.list_sessions(result.user.id)
        assert [s.token for s in sessions] == [pair.refresh_token]
        assert sessions[0].ip_address == "10.0.0.2"

    def test_reuse_revokes_every_session(self, manager_factory):
        rotating = manager_factory(rotate_refresh_tokens=True)
        result = rotating.register("alice@example.com", "alice", PASSWORD)
        other_device = rotating.login("alice", PASSWORD)
        rotated = rotating.rotate_refresh_token(result.tokens.refresh_token)

        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            rotating.rotate_refresh_token(result.tokens.refresh_token)
        assert exc_info.value.reason == "reused"
        assert rotating.list_sessions(result.user.id) == []
        for token in (rotated.refresh_token, other_device.tokens.refresh_token):
            with pytest.raises(InvalidRefreshTokenError):
                rotating.refresh_access_token(token)


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_blacklists_access_token(self, manager, registered):
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        with pytest.raises(TokenRevokedError):
            manager.validate_token(registered.tokens.access_token)

    def test_logout_twice_is_fine(self, manager, registered):
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)

    def test_logout_with_unknown_tokens_is_fine(self, manager):
        manager.logout("never-issued", "not-a-jwt")
        manager.logout("", "")

    def test_logout_with_expired_access_token(self, manager, registered, cache, clock):
        clock.advance(minutes=30)
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        assert cache.is_blacklisted(registered.tokens.access_token) is False
        assert manager.list_sessions(registered.user.id) == []

    def test_blacklist_entry_expires_with_token(self, manager, registered, cache, clock):
        clock.advance(minutes=5)
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        clock.advance(minutes=9, seconds=59)
        assert cache.is_blacklisted(registered.tokens.access_token) is True
        clock.advance(seconds=1)
        assert cache.is_blacklisted(registered.tokens.access_token) is False

    def test_logout_leaves_other_sessions(self, manager, registered):
        other = manager.login("alice", PASSWORD)
        manager.logout(registered.tokens.refresh_token, registered.tokens.access_token)
        assert manager.validate_token(other.tokens.access_token).id == registered.user.id
        manager.refresh_access_token(other.tokens.refresh_token)

    def test_logout_all(self, manager, registered):
        manager.login("alice", PASSWORD)
        manager.login("alice", PASSWORD)
        assert manager.logout_all(registered.user.id) == 3
        assert manager.list_sessions(registered.user.id) == []
        # Access tokens stay valid until they expire on their own.
        assert manager.validate_token(registered.tokens.access_token).id == registered.user.id


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_change_password_revokes_refresh_tokens(self, manager, registered):
        manager.change_password(registered.user.id, PASSWORD, NEW_PASSWORD)

        with pytest.raises(InvalidRefreshTokenError):
            manager.refresh_access_token(registered.tokens.refresh_token)
        # Known limitation: the access token stays valid until exp.
        assert manager.validate_token(registered.tokens.access_token).id == registered.user.id

        with pytest.raises(InvalidCredentialsError):
            manager.login("alice", PASSWORD)
        assert manager.login("alice", NEW_PASSWORD).user.id == registered.user.id

    def test_wrong_current_password(self, manager, registered):
        with pytest.raises(InvalidCurrentPasswordError):
            manager.change_password(registered.user.id, "Wrong!Pass1", NEW_PASSWORD)
        manager.refresh_access_token(registered.tokens.refresh_token)

    def test_weak_new_password(self, manager, registered):
        with pytest.raises(PasswordPolicyError):
            manager.change_password(registered.user.id, PASSWORD, "weak")
        assert manager.login("alice", PASSWORD).user.id == registered.user.id

    def test_unknown_user(self, manager):
        with pytest.raises(UserNotFoundError):
            manager.change_password(404, PASSWORD, NEW_PASSWORD)


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------


class TestValidateToken:
    def test_blacklisted_token_rejected(self, manager, registered, cache):
        cache.blacklist(registered.tokens.access_token, timedelta(minutes=15))
        with pytest.raises(TokenRevokedError):
            manager.validate_token(registered.tokens.access_token)

    def test_expired_token_rejected(self, manager, registered, clock):
        clock.advance(minutes=15)
        with pytest.raises(TokenExpiredError):
            manager.validate_token(registered.tokens.access_token)

    def test_refresh_token_rejected_as_access_token(self, manager, registered):
        with pytest.raises(InvalidTokenError) as exc_info:
            manager.validate_token(registered.tokens.refresh_token)
        assert exc_info.value.reason == "wrong_type"

    def test_deleted_user_rejected(self, manager, registered, users):
        users.soft_delete_user(registered.user.id)
        with pytest.raises(UserNotFoundError):
            manager.validate_token(registered.tokens.access_token)

    def test_deactivated_user_rejected(self, manager, registered):
        manager.deactivate_user(registered.user.id)
        with pytest.raises(AccountInactiveError):
            manager.validate_token(registered.tokens.access_token)

    def test_returns_current_user_state(self, manager, registered, users):
        users.update_user(registered.user.id, role=ROLE_ADMIN)
        assert manager.validate_token(registered.tokens.access_token).role == ROLE_ADMIN


# ---------------------------------------------------------------------------
# Sessions and maintenance
# ---------------------------------------------------------------------------


class TestSessions:
    def test_list_sessions_newest_first(self, manager, registered, clock):
        clock.advance(minutes=1)
        newer = manager.login("alice", PASSWORD, user_agent="laptop")
        tokens = [s.token for s in manager.list_sessions(registered.user.id)]
        assert tokens == [newer.tokens.refresh_token, registered.tokens.refresh_token]

    def test_deactivate_user(self, manager, registered):
        manager.deactivate_user(registered.user.id)
        assert manager.list_sessions(registered.user.id) == []
        with pytest.raises(InvalidRefreshTokenError):
            manager.refresh_access_token(registered.tokens.refresh_token)

    def test_deactivate_unknown_user(self, manager):
        with pytest.raises(UserNotFoundError):
            manager.deactivate_user(404)

    def test_purge_stale_sessions(self, manager, registered, clock):
        stale = manager.login("alice", PASSWORD)
        manager.logout(stale.tokens.refresh_token, stale.tokens.access_token)
        clock.advance(days=2)
        live = manager.login("alice", PASSWORD)

        assert manager.purge_stale_sessions(timedelta(days=1)) == (0, 1, 1)
        clock.advance(days=6)
        assert manager.purge_stale_sessions() == (1, 0, 0)
        assert [s.token for s in manager.list_sessions(registered.user.id)] == [live.tokens.refresh_token]


# ---------------------------------------------------------------------------
# Infrastructure failures
# ---------------------------------------------------------------------------


class TestInfrastructureFailures:
    def test_cache_outage_on_login_is_not_invalid_credentials(self, manager, registered, cache):
        cache.get_attempts = MagicMock(side_effect=InfrastructureError("revocation cache", "Connection refused"))
        with pytest.raises(InfrastructureError) as exc_info:
            manager.login("alice", PASSWORD)
        assert exc_info.value.status_code == 503

    def test_cache_outage_on_validate(self, manager, registered, cache):
        cache.is_blacklisted = MagicMock(side_effect=InfrastructureError("revocation cache", "timeout"))
        with pytest.raises(InfrastructureError):
            manager.validate_token(registered.tokens.access_token)


class TestForgedTokens:
    @pytest.fixture
    def forged(self) -> str:
        """HS256 header, a subject of 1e999 (JSON infinity) and a junk signature."""
        header = base64.urlsafe_b64encode(b'{"alg":"HS256","typ":"JWT"}').rstrip(b"=").decode()
        payload = base64.urlsafe_b64encode(b'{"sub":1e999,"user_id":1}').rstrip(b"=").decode()
        return f"{header}.{payload}.c2lnbmF0dXJl"

    def test_validate_token_rejects_cleanly(self, manager, forged):
        with pytest.raises(InvalidTokenError) as exc_info:
            manager.validate_token(forged)
        assert exc_info.value.reason == "bad_signature"

    def test_refresh_rejects_cleanly(self, manager, forged):
        with pytest.raises(InvalidRefreshTokenError) as exc_info:
            manager.refresh_access_token(forged)
        assert exc_info.value.reason == "bad_signature"

    def test_logout_ignores_it(self, manager, forged):
        manager.logout(forged, forged)


class TestComposition:
    def test_create_session_manager_from_settings(self, settings_factory, clock):
        custom = settings_factory(database_url="sqlite://")
        built = create_session_manager(custom, clock=clock)
        result = built.register("alice@example.com", "alice", PASSWORD)
        assert built.validate_token(result.tokens.access_token).id == 1

    def test_close_releases_collaborators(self, manager, users, ledger, cache):
        users.close = MagicMock()
        ledger.close = MagicMock()
        cache.close = MagicMock()
        manager.close()
        users.close.assert_called_once_with()
        ledger.close.assert_called_once_with()
        cache.close.assert_called_once_with()
