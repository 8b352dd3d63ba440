"""
Data Models Module

Pydantic models shared by the credential subsystem, the OIDC client and the
HTTP layer.

Models are organized by functional area:
- Credential models (the hot-reloadable client credential pair)
- Provider models (discovered or statically assembled endpoints)
- Token models (token endpoint results and verified logins)
- Health models
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Credential Models
# ============================================================================

class CredentialPair(BaseModel):
    """OAuth2 client credentials. Immutable; replaced as a whole on rotation."""
    model_config = ConfigDict(frozen=True)

    client_id: str = Field(default="", description="OAuth2 client identifier")
    client_secret: str = Field(default="", repr=False, description="OAuth2 client secret")

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)


# ============================================================================
# Provider Models
# ============================================================================

class ProviderConfiguration(BaseModel):
    """Identity provider endpoints, fixed for the process lifetime."""
    model_config = ConfigDict(frozen=True)

    issuer: str = Field(..., description="Expected 'iss' claim of every ID token")
    authorization_endpoint: str = Field(..., description="Browser-facing authorization URL")
    token_endpoint: str = Field(..., description="Back-channel token URL")
    jwks_uri: str = Field(..., description="JSON Web Key Set URL")
    id_token_signing_alg_values_supported: List[str] = Field(
        default_factory=lambda: ["RS256"],
        description="Algorithms accepted for ID token signatures",
    )


# ============================================================================
# Token Models
# ============================================================================

class TokenResult(BaseModel):
    """Tokens returned by a successful authorization code exchange."""
    access_token: str = Field(..., description="OAuth2 access token")
    id_token: str = Field(..., description="Signed OIDC identity token (JWT)")
    refresh_token: Optional[str] = Field(None, description="Refresh token if issued")
    token_type: str = Field(default="Bearer", description="Token type")
    expiry: Optional[datetime] = Field(None, description="Access token expiry (UTC)")
    scope: Optional[str] = Field(None, description="Granted scopes")


class LoginResult(BaseModel):
    """A completed login: exchanged tokens plus verified ID token claims."""
    token: TokenResult
    claims: Dict[str, Any] = Field(default_factory=dict, description="Verified ID token claims")

    def _string_claim(self, name: str) -> Optional[str]:
        """Claim value if it is a non-empty string, else None."""
        value = self.claims.get(name)
        return value if isinstance(value, str) and value else None

    @property
    def subject(self) -> Optional[str]:
        return self._string_claim("sub")

    @property
    def email(self) -> Optional[str]:
        return self._string_claim("email")

    @property
    def display_name(self) -> str:
        name = self._string_claim("name") or self._string_claim("preferred_username")
        if name:
            return name
        if self.email:
            return self.email.split("@")[0].title()
        return "User"


class LoginRedirect(BaseModel):
    """Authorization URL together with the CSRF state embedded in it."""
    url: str
    state: str


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    credentials_configured: bool = Field(..., description="Client credentials are loaded")
    watcher: Optional[Dict[str, Any]] = Field(None, description="Credential watcher state")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Check timestamp")
