"""
Error taxonomy for the credential / OAuth2 subsystem.

Token-exchange failures have no class here: ``handle_callback``
reports them as a ``CallbackResult`` value instead of raising.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for every error raised by this subsystem."""


class ConfigurationError(CredentialError):
    """Client id/secret or refresh credentials are missing.  No network call was made."""


class BadRequestError(CredentialError):
    """The request cannot be served, e.g. an unsupported provider."""


class CredentialNotFoundError(ConfigurationError):
    """The credential does not exist or belongs to another user."""


class AuthorizationExpiredError(CredentialError):
    """The OAuth state token is unknown, already used, or past its TTL."""


class ReauthenticationRequiredError(CredentialError):
    """Refreshing failed; the credential was marked invalid and the user must re-authorize."""


class MissingAccessTokenError(CredentialError):
    pass
