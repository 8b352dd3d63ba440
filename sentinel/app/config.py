"""
Configuration module for the Sentinel authentication service.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC provider, client credentials (static or watched), outbound HTTP
behaviour, and the login cookie.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


TOKEN_AUTH_METHODS = ("client_secret_basic", "client_secret_post")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # Identity Provider
    # =========================================================================

    OIDC_ISSUER_URL: str = Field(
        ...,
        description="Issuer URL as seen by browsers (e.g., https://sso.example.com/realms/main)",
        min_length=1,
    )

    OIDC_INTERNAL_URL: Optional[str] = Field(
        None,
        description="Back-channel base URL for token and JWKS calls when it differs from the issuer",
    )

    OIDC_DISCOVERY: bool = Field(
        default=True,
        description="Use /.well-known/openid-configuration; otherwise assemble endpoints from the issuer",
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested at login",
    )

    OIDC_TOKEN_AUTH_METHOD: str = Field(
        default="client_secret_basic",
        description="Client authentication at the token endpoint",
    )

    REDIRECT_URL: str = Field(
        ...,
        description="Callback URL registered with the provider (e.g., https://app.example.com/auth/callback)",
        min_length=1,
    )

    # =========================================================================
    # Client Credentials
    # =========================================================================

    OIDC_CLIENT_ID: Optional[str] = Field(
        None,
        description="Static client ID (overridden by SECRET_WATCH_PATH once loaded)",
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Static client secret",
    )

    SECRET_WATCH_PATH: Optional[str] = Field(
        None,
        description="Directory holding client_id and client_secret files, watched for rotation",
    )

    WATCH_DEBOUNCE_MS: int = Field(
        default=1600,
        description="Window for batching filesystem events from one rotation",
        ge=0,
        le=60000,
    )

    WATCH_FORCE_POLLING: bool = Field(
        default=False,
        description="Poll the secret directory instead of using native notifications "
        "(needed for Kubernetes Secret volumes, which rotate via a ..data symlink swap)",
    )

    # =========================================================================
    # Outbound HTTP
    # =========================================================================

    HTTP_CONNECT_TIMEOUT: float = Field(
        default=5.0,
        description="Connect / TLS handshake timeout in seconds",
        gt=0,
    )

    HTTP_TIMEOUT: float = Field(
        default=20.0,
        description="Overall timeout for provider calls in seconds",
        gt=0,
    )

    LOGIN_TIMEOUT: float = Field(
        default=30.0,
        description="Deadline for completing one callback (exchange plus verification)",
        gt=0,
    )

    HTTP_FORCE_IPV4: bool = Field(
        default=False,
        description="Bind outbound connections to IPv4 only",
    )

    # =========================================================================
    # JWKS
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache provider JWKS keys in seconds",
        ge=0,
        le=86400,
    )

    JWKS_PREFLIGHT: bool = Field(
        default=True,
        description="Probe the JWKS endpoint once at startup",
    )

    # =========================================================================
    # Login Cookie
    # =========================================================================

    STATE_COOKIE_NAME: str = Field(default="oauth_state", min_length=1)

    STATE_COOKIE_MAX_AGE: int = Field(
        default=300,
        description="Lifetime of the CSRF state cookie in seconds",
        ge=30,
        le=3600,
    )

    COOKIE_SECURE: bool = Field(
        default=False,
        description="Mark the state cookie Secure (enable behind HTTPS)",
    )

    # =========================================================================
    # Server
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8080, ge=1, le=65535)
    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def scopes_list(self) -> List[str]:
        """OIDC_SCOPES as a list, always including 'openid'."""
        scopes = [s for s in self.OIDC_SCOPES.split() if s]
        if "openid" not in scopes:
            scopes.insert(0, "openid")
        return scopes

    @property
    def has_static_credentials(self) -> bool:
        return bool(self.OIDC_CLIENT_ID) and bool(self.OIDC_CLIENT_SECRET)

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_ISSUER_URL", "OIDC_INTERNAL_URL")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Require http(s) URLs and drop trailing slashes."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: '{v}'. Expected an http:// or https:// URL")
        return v.rstrip("/")

    @field_validator("REDIRECT_URL")
    @classmethod
    def validate_redirect_url(cls, v: str) -> str:
        """Require an http(s) URL. The value is kept exactly as configured."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid REDIRECT_URL: '{v}'. Expected an http:// or https:// URL")
        return v

    @field_validator("OIDC_CLIENT_ID", "OIDC_CLIENT_SECRET", "SECRET_WATCH_PATH")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("OIDC_TOKEN_AUTH_METHOD")
    @classmethod
    def validate_auth_method(cls, v: str) -> str:
        if v not in TOKEN_AUTH_METHODS:
            raise ValueError(f"OIDC_TOKEN_AUTH_METHOD must be one of {list(TOKEN_AUTH_METHODS)}, got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {list(LOG_LEVELS)}, got: {v}")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Check settings for combinations that start but will not work as expected.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = []
    warnings = []

    if bool(settings.OIDC_CLIENT_ID) != bool(settings.OIDC_CLIENT_SECRET):
        warnings.append("Only one of OIDC_CLIENT_ID / OIDC_CLIENT_SECRET is set; static credentials ignored")

    if not settings.has_static_credentials and not settings.SECRET_WATCH_PATH:
        warnings.append(
            "No client credentials configured (static or SECRET_WATCH_PATH); "
            "logins will fail until credentials are provided"
        )

    if settings.OIDC_ISSUER_URL.startswith("http://"):
        warnings.append("OIDC_ISSUER_URL uses plain HTTP")

    if settings.REDIRECT_URL.startswith("https://") and not settings.COOKIE_SECURE:
        warnings.append("REDIRECT_URL is HTTPS but COOKIE_SECURE is disabled")

    if settings.HTTP_CONNECT_TIMEOUT > settings.HTTP_TIMEOUT:
        errors.append("HTTP_CONNECT_TIMEOUT must not exceed HTTP_TIMEOUT")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }
