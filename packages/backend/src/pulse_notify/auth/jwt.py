"""JWT verification for WebSocket upgrades and the notification API.

Learn: tokens are minted by the auth service; this side only verifies them.
Verification is purely local: signature + expiry against the shared secret
(or the issuer's public key), with a configurable clock-skew leeway. There
is no network round trip per call, so re-validating a long-lived socket
every minute is cheap.

The recipient identity is read from `userId` (what the Pulse auth service
issues), falling back to `id` and finally the standard `sub` claim.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from pulse_notify.config import settings
from pulse_notify.errors import ExpiredTokenError, InvalidTokenError

RECIPIENT_CLAIMS = ("userId", "id", "sub")


@dataclass(frozen=True)
class TokenClaims:
    """Identity extracted from a verified token."""
    recipient_id: str
    expires_at: datetime


class TokenValidator:
    """Stateless bearer-token verifier."""

    def __init__(
        self,
        key: str,
        algorithm: str = "HS256",
        leeway_seconds: int = 30,
    ):
        self.key = key
        self.algorithm = algorithm
        self.leeway = timedelta(seconds=leeway_seconds)

    @classmethod
    def from_settings(cls) -> "TokenValidator":
        return cls(
            key=settings.jwt_verification_key,
            algorithm=settings.jwt_algorithm,
            leeway_seconds=settings.clock_skew_seconds,
        )

    def validate(self, token: Optional[str]) -> TokenClaims:
        """Verify a token and return its claims.

        Raises InvalidTokenError (malformed / bad signature / no identity)
        or ExpiredTokenError.
        """
        if not token:
            raise InvalidTokenError("Token is missing")
        try:
            payload = jwt.decode(
                token,
                self.key,
                algorithms=[self.algorithm],
                leeway=self.leeway,
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredTokenError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        if payload.get("type", "access") != "access":
            raise InvalidTokenError("Not an access token")

        recipient_id = next(
            (str(payload[c]) for c in RECIPIENT_CLAIMS if payload.get(c)),
            None,
        )
        if recipient_id is None:
            raise InvalidTokenError("Token carries no user identity")

        return TokenClaims(
            recipient_id=recipient_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


def create_access_token(
    user_id: str,
    expires_minutes: int = 60,
    secret: Optional[str] = None,
) -> str:
    """Mint an HS256 access token.

    Development and test helper only. Production tokens come from the
    auth service.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "userId": user_id,
        "type": "access",
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm="HS256")
