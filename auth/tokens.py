"""
auth/tokens.py -- JWT issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with Settings.jwt_secret and
       carry user_id, email, username, role, token_type, a random jti, and the
       registered claims iat / nbf / exp / iss / sub.

  Algorithm pinning: the header's "alg" is checked against HS256 before any
       signature work, and jwt.decode() is called with algorithms=[HS256].
       A token claiming "none" or an RSA/EC algorithm is rejected outright
       (algorithm-substitution defence).

  Clock: exp / nbf are checked here against the injected clock rather than
       by python-jose (which always reads the wall clock). The clock is read
       once per call, so issuance and verification inside one operation never
       disagree.

  jti: two logins for the same user within one second would otherwise mint
       byte-identical refresh tokens and collide on the ledger's UNIQUE index.

  Errors: every failure raises InvalidTokenError with a `reason`. Callers
       outside the session manager should treat them all as one category.

Layer rule: no imports from cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import InvalidTokenError, TokenExpiredError
from auth.models import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, AccessClaims, User
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("authcore.tokens")

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "email", "username", "role", "iat", "nbf", "exp", "iss", "sub")


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenCodec:
    """Encodes and verifies signed claims for access and refresh tokens."""

    def __init__(self, settings: Settings, clock: Clock = utc_now) -> None:
        self._secret = settings.jwt_secret
        self._issuer = settings.jwt_issuer
        self._access_ttl = settings.access_token_ttl
        self._refresh_ttl = settings.refresh_token_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User) -> str:
        token, _ = self._issue(user, TOKEN_TYPE_ACCESS, self._access_ttl)
        return token

    def issue_refresh_token(self, user: User) -> tuple[str, datetime]:
        """Return (token, expires_at) so the caller can persist a ledger row.

        expires_at is exactly the exp claim (whole seconds), so the ledger and
        the token agree on when the token dies.
        """
        return self._issue(user, TOKEN_TYPE_REFRESH, self._refresh_ttl)

    def _issue(self, user: User, token_type: str, ttl: timedelta) -> tuple[str, datetime]:
        if user.id is None:
            raise ValueError("cannot issue a token for an unsaved user")
        now = _epoch(self._clock())
        expires = now + int(ttl.total_seconds())
        payload = {
            "user_id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "token_type": token_type,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "nbf": now,
            "exp": expires,
            "iss": self._issuer,
            "sub": str(user.id),
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM), _from_epoch(expires)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str | None = None) -> AccessClaims:
        """Verify signature, algorithm, issuer and timing; return the claims.

        Raises InvalidTokenError (TokenExpiredError for expiry) on any failure.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError("malformed")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidTokenError("malformed") from exc

        if header.get("alg") != ALGORITHM:
            logger.warning("Rejected token signed with unexpected alg %r", header.get("alg"))
            raise InvalidTokenError("bad_algorithm")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "verify_nbf": False, "verify_aud": False},
            )
        except JWTClaimsError as exc:
            raise InvalidTokenError("invalid_claims") from exc
        except JWTError as exc:
            raise InvalidTokenError("bad_signature") from exc

        claims = self._to_claims(payload)

        now = self._clock()
        if now < claims.not_before:
            raise InvalidTokenError("not_yet_valid")
        if now >= claims.expires_at:
            raise TokenExpiredError()
        if expected_type is not None and claims.token_type != expected_type:
            raise InvalidTokenError("wrong_type")
        return claims

    def remaining_validity(self, token: str) -> timedelta:
        """Time left before a valid token expires. Raises like verify()."""
        claims = self.verify(token)
        return claims.expires_at - self._clock()

    def extract_unverified_subject(self, token: str) -> int:
        """Read the subject without checking the signature.

        Diagnostics only (log lines for rejected tokens). Never base an
        authorization decision on the result.
        """
        try:
            claims = jwt.get_unverified_claims(token)
            return int(claims["sub"])
        except (JWTError, KeyError, TypeError, ValueError, OverflowError) as exc:
            raise InvalidTokenError("malformed") from exc

    @staticmethod
    def _to_claims(payload: dict) -> AccessClaims:
        missing = [name for name in _REQUIRED_CLAIMS if name not in payload]
        if missing:
            raise InvalidTokenError("invalid_claims")
        try:
            user_id = int(payload["user_id"])
            if payload["sub"] != str(user_id):
                raise InvalidTokenError("invalid_claims")
            return AccessClaims(
                user_id=user_id,
                email=str(payload["email"]),
                username=str(payload["username"]),
                role=str(payload["role"]),
                issued_at=_from_epoch(payload["iat"]),
                not_before=_from_epoch(payload["nbf"]),
                expires_at=_from_epoch(payload["exp"]),
                issuer=str(payload["iss"]),
                subject=str(payload["sub"]),
                token_type=str(payload.get("token_type", TOKEN_TYPE_ACCESS)),
                jti=str(payload.get("jti", "")),
            )
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidTokenError("invalid_claims") from exc
