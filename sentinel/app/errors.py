"""
Error taxonomy for the Sentinel authentication service.

Three families, matching where the error is raised and how it is handled:

- CredentialSourceError: reading or watching the secret directory.
  Logged and retried on the next change event; never fatal to the process.
- ProviderError: startup diagnostics against the identity provider
  (discovery, JWKS reachability). Logged; startup continues.
- AuthenticationError: per-login failures. Surfaced to the caller of the
  current login attempt only.
"""


class SentinelError(Exception):
    """Base exception for all Sentinel errors"""
    pass


# =============================================================================
# Credential Source
# =============================================================================

class CredentialSourceError(SentinelError):
    """Base exception for secret directory errors"""
    pass


class SourceUnavailableError(CredentialSourceError):
    """The secret directory (or one of its files) could not be opened."""
    pass


class MissingFieldError(CredentialSourceError):
    """
    A required credential file is absent or empty.

    Attributes:
        fields: Names of the missing fields.
    """

    def __init__(self, fields, message=None):
        self.fields = tuple(fields)
        super().__init__(message or f"Missing credential field(s): {', '.join(self.fields)}")


class WatchSetupError(CredentialSourceError):
    """The filesystem watch on the secret directory could not be established."""
    pass


# =============================================================================
# Provider (startup diagnostics)
# =============================================================================

class ProviderError(SentinelError):
    """Base exception for identity provider infrastructure errors"""
    pass


class DiscoveryFailedError(ProviderError):
    """The OIDC discovery document could not be fetched or was invalid."""
    pass


class KeySetUnreachableError(ProviderError):
    """The provider's JWKS endpoint could not be fetched or was invalid."""
    pass


# =============================================================================
# Authentication (per request)
# =============================================================================

class AuthenticationError(SentinelError):
    """Base exception for a failed login attempt"""
    pass


class ExchangeFailedError(AuthenticationError):
    """The authorization code could not be exchanged for tokens."""
    pass


class MissingIdentityTokenError(AuthenticationError):
    """The token response did not contain an id_token."""
    pass


class VerificationFailedError(AuthenticationError):
    """The ID token signature or claims did not verify."""
    pass
