"""
auth/errors.py -- Exception taxonomy for the auth core.

Routine misses (unknown session, expired token, absent admin) are NOT
exceptions -- they come back as None or False. Only the outcomes a caller must
branch on explicitly are raised. The HTTP layer maps each class to a status
code and a generic, non-enumerating message.

Layer rule: no imports at all. Every other auth module may import from here.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth-core errors."""


class DuplicateIdentityError(AuthError):
    """Username or email collision on admin creation.

    `field` is "username" or "email". Raised both by the pre-check and when the
    UNIQUE constraint catches a concurrent insert that slipped past it.
    """

    def __init__(self, field: str) -> None:
        super().__init__(f"An admin with that {field} already exists.")
        self.field = field


class PrimaryAdminExistsError(AuthError):
    """A second primary admin was requested while one already exists."""

    def __init__(self) -> None:
        super().__init__("A primary admin already exists.")


class PrimaryAdminProtectedError(AuthError):
    """Attempt to delete the primary admin."""

    def __init__(self) -> None:
        super().__init__("The primary admin cannot be deleted.")


class InvalidOrExpiredTokenError(AuthError):
    """Invite or setup token is unknown, expired, or already used.

    The message is deliberately identical for all three cases so callers
    cannot enumerate which tokens ever existed.
    """

    def __init__(self) -> None:
        super().__init__("Invalid or expired token.")


class UnknownProviderError(AuthError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Identity provider not found: {provider_id}")
        self.provider_id = provider_id


class ProviderDisabledError(AuthError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Identity provider disabled: {provider_id}")
        self.provider_id = provider_id


class NotAdminGroupError(AuthError):
    """A federated user with no cached record is not in any admin group."""

    def __init__(self) -> None:
        super().__init__("User is not in any admin group.")


class MalformedCredentialError(AuthError):
    """An encoded password hash could not be parsed.

    Internal to auth/passwords.py: verify_password() converts it to False.
    """
