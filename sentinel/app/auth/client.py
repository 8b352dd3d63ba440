"""
OIDC authorization code flow client.

Builds authorization URLs, exchanges authorization codes at the token
endpoint and verifies ID tokens against the provider's JWKS.

Client credentials are read from the CredentialStore on every call rather
than captured at construction, so a rotation takes effect for the next
request without rebuilding the client.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Sequence
from urllib.parse import parse_qsl, quote_plus, urlencode, urlsplit, urlunsplit

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from sentinel.app.auth.jwks import JWKSCache
from sentinel.app.credentials.store import CredentialStore
from sentinel.app.errors import (
    ExchangeFailedError,
    KeySetUnreachableError,
    MissingIdentityTokenError,
    VerificationFailedError,
)
from sentinel.app.models import ProviderConfiguration, TokenResult

logger = logging.getLogger("sentinel.auth.client")

DEFAULT_SCOPES = ("openid", "profile", "email")
CLOCK_SKEW_LEEWAY_SECONDS = 10


def _provider_error_message(response: httpx.Response) -> str:
    """Best-effort error text from an OAuth2 error response."""
    try:
        error_data = response.json()
    except ValueError:
        error_data = None

    if isinstance(error_data, dict):
        message = error_data.get("error_description") or error_data.get("error")
        if message:
            return f"{message} (HTTP {response.status_code})"
    return f"HTTP {response.status_code}"


def _parse_expiry(expires_in: Any) -> Optional[datetime]:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class OIDCClient:
    """
    Protocol operations against one OIDC provider.

    The provider configuration and JWKS cache are fixed after construction;
    the only per-call input that can change is the credential pair.
    """

    def __init__(
        self,
        provider: ProviderConfiguration,
        store: CredentialStore,
        redirect_url: str,
        http_client: httpx.AsyncClient,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        token_auth_method: str = "client_secret_basic",
        jwks_cache: Optional[JWKSCache] = None,
        jwks_cache_seconds: int = 3600,
    ):
        """
        Args:
            provider: Resolved provider endpoints
            store: Source of the current client credentials
            redirect_url: Callback URL registered with the provider
            http_client: Shared provider HTTP client
            scopes: Scopes requested at login
            token_auth_method: "client_secret_basic" or "client_secret_post"
            jwks_cache: Key cache (default: one built for provider.jwks_uri)
            jwks_cache_seconds: TTL for the default key cache
        """
        self._provider = provider
        self._store = store
        self._redirect_url = redirect_url
        self._http = http_client
        self._scopes: List[str] = list(scopes)
        self._token_auth_method = token_auth_method
        self._jwks = jwks_cache or JWKSCache(http_client, provider.jwks_uri, jwks_cache_seconds)

    @property
    def provider(self) -> ProviderConfiguration:
        return self._provider

    @property
    def jwks(self) -> JWKSCache:
        return self._jwks

    # =========================================================================
    # Authorization URL
    # =========================================================================

    def authorization_url(self, state: str) -> str:
        """
        Build the provider login URL for this attempt.

        Args:
            state: CSRF state value, echoed back by the provider on callback

        Returns:
            Authorization endpoint URL with query parameters
        """
        credentials = self._store.get()
        params = [
            ("client_id", credentials.client_id),
            ("redirect_uri", self._redirect_url),
            ("response_type", "code"),
            ("scope", " ".join(self._scopes)),
            ("state", state),
        ]

        parts = urlsplit(self._provider.authorization_endpoint)
        query = parse_qsl(parts.query, keep_blank_values=True) + params
        return urlunsplit(parts._replace(query=urlencode(query)))

    # =========================================================================
    # Token Exchange
    # =========================================================================

    async def exchange_code(self, code: str, timeout: Optional[float] = None) -> TokenResult:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            timeout: Optional deadline in seconds for the whole exchange

        Returns:
            TokenResult including the raw id_token

        Raises:
            ExchangeFailedError: Network error, timeout, provider rejection or
                malformed response
            MissingIdentityTokenError: The provider returned no id_token
        """
        if timeout is None:
            return await self._exchange_code(code)

        try:
            return await asyncio.wait_for(self._exchange_code(code), timeout)
        except asyncio.TimeoutError as e:
            raise ExchangeFailedError(f"Token exchange timed out after {timeout}s") from e

    async def _exchange_code(self, code: str) -> TokenResult:
        if not code:
            raise ExchangeFailedError("Missing authorization code")

        # Per call, immediately before the request
        credentials = self._store.get()
        if not credentials.is_configured:
            raise ExchangeFailedError("Client credentials are not configured")

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_url,
        }

        auth = None
        if self._token_auth_method == "client_secret_post":
            payload["client_id"] = credentials.client_id
            payload["client_secret"] = credentials.client_secret
        else:
            auth = httpx.BasicAuth(
                quote_plus(credentials.client_id),
                quote_plus(credentials.client_secret),
            )

        try:
            response = await self._http.post(
                self._provider.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ExchangeFailedError(f"Token request failed: {e}") from e

        if not response.is_success:
            raise ExchangeFailedError(f"Token exchange failed: {_provider_error_message(response)}")

        try:
            token_data = response.json()
        except ValueError as e:
            raise ExchangeFailedError("Token response is not valid JSON") from e

        if not isinstance(token_data, dict):
            raise ExchangeFailedError("Token response is not a JSON object")

        access_token = token_data.get("access_token")
        if not access_token:
            raise ExchangeFailedError("Token response missing access_token")

        id_token = token_data.get("id_token")
        if not id_token or not isinstance(id_token, str):
            raise MissingIdentityTokenError("no id_token field in OAuth2 token")

        logger.info(
            "Authorization code exchanged",
            extra={"client_id": credentials.client_id, "token_endpoint": self._provider.token_endpoint},
        )

        return TokenResult(
            access_token=access_token,
            id_token=id_token,
            refresh_token=token_data.get("refresh_token") or None,
            token_type=token_data.get("token_type") or "Bearer",
            expiry=_parse_expiry(token_data.get("expires_in")),
            scope=token_data.get("scope"),
        )

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def verify_id_token(
        self,
        raw_token: str,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Verify an ID token's signature and standard claims.

        Checks signature against the provider JWKS, issuer, audience (the
        current client_id), expiry, and at_hash when access_token is given.

        Args:
            raw_token: Compact-serialized JWT
            access_token: Access token issued alongside, for at_hash
            timeout: Optional deadline in seconds (covers JWKS fetch)

        Returns:
            Verified claims

        Raises:
            VerificationFailedError: On any signature or claim failure,
                including an unreachable key set
        """
        if timeout is None:
            return await self._verify_id_token(raw_token, access_token)

        try:
            return await asyncio.wait_for(self._verify_id_token(raw_token, access_token), timeout)
        except asyncio.TimeoutError as e:
            raise VerificationFailedError(f"ID token verification timed out after {timeout}s") from e

    async def _verify_id_token(self, raw_token: str, access_token: Optional[str]) -> Dict[str, Any]:
        if not raw_token:
            raise VerificationFailedError("Empty ID token")

        try:
            candidates = await self._jwks.get_signing_keys(raw_token)
        except KeySetUnreachableError as e:
            raise VerificationFailedError(f"Cannot verify ID token, key set unavailable: {e}") from e

        client_id = self._store.get().client_id
        if not client_id:
            raise VerificationFailedError("Client ID is not configured; cannot check audience")

        options = {
            "verify_signature": True,
            "verify_aud": True,
            "verify_iat": True,
            "verify_exp": True,
            "verify_nbf": True,
            "verify_iss": True,
            "verify_sub": True,
            "verify_jti": False,
            "verify_at_hash": access_token is not None,
            "require_exp": True,
            "require_iss": True,
            "require_aud": True,
            "leeway": CLOCK_SKEW_LEEWAY_SECONDS,
        }

        last_error: Optional[Exception] = None
        for key in candidates:
            try:
                claims = jwt.decode(
                    raw_token,
                    key,
                    algorithms=self._provider.id_token_signing_alg_values_supported,
                    audience=client_id,
                    issuer=self._provider.issuer,
                    access_token=access_token,
                    options=options,
                )
            except ExpiredSignatureError as e:
                raise VerificationFailedError("ID token has expired") from e
            except JWTClaimsError as e:
                # Signature was valid; the claims are not
                raise VerificationFailedError(f"Invalid token claims: {e}") from e
            except JOSEError as e:
                last_error = e
                continue

            logger.debug("ID token verified", extra={"sub": claims.get("sub"), "kid": key.get("kid")})
            return claims

        raise VerificationFailedError(f"Token verification failed: {last_error}") from last_error

    # =========================================================================
    # Startup Diagnostics
    # =========================================================================

    async def preflight(self) -> bool:
        """
        Probe the JWKS endpoint once (also warms the key cache).

        Never raises; a failure is logged and per-request verification will
        retry the fetch.

        Returns:
            True if the key set was fetched.
        """
        logger.info(f"Testing JWKS URI: {self._jwks.jwks_uri}")
        try:
            keys = await self._jwks.get_keys(force_refresh=True)
        except KeySetUnreachableError as e:
            logger.warning(f"Initial JWKS fetch failed: {e}")
            return False

        logger.info("Initial JWKS fetch OK", extra={"key_count": len(keys)})
        return True
