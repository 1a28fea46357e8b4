"""Error taxonomy for the delivery core.

Learn: each error maps to one recovery policy:
- AuthError            → connection refused or force-closed (4001 / 4002)
- TransientStoreError  → message left unacked, retried via redelivery
- PoisonMessage        → dead-lettered, never silently dropped
- TransportError       → connection closes, notification stays in backlog
- RegistryUnavailable  → degrade to local-only delivery, log and continue
"""

CLOSE_NORMAL = 1000
CLOSE_INVALID_TOKEN = 4001
CLOSE_EXPIRED_TOKEN = 4002


class NotifyError(Exception):
    """Base class for delivery-core errors."""


class AuthError(NotifyError):
    """Raised when a bearer credential cannot be accepted."""

    close_code = CLOSE_INVALID_TOKEN


class InvalidTokenError(AuthError):
    """Malformed token, bad signature or missing claims."""

    close_code = CLOSE_INVALID_TOKEN


class ExpiredTokenError(AuthError):
    """Token signature is fine but it has expired."""

    close_code = CLOSE_EXPIRED_TOKEN


class TransientStoreError(NotifyError):
    """Notification Store call failed or timed out; safe to retry."""


class PoisonMessage(NotifyError):
    """Queue message that can never be processed successfully."""


class TransportError(NotifyError):
    """Writing to a client socket failed."""


class RegistryUnavailable(NotifyError):
    """Presence Registry (Redis) call failed or timed out."""
