"""
Tests for the OIDC protocol client: provider resolution, authorization URL
construction, code exchange and ID token verification.
"""

import asyncio
import base64
import hashlib
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import pytest

from conftest import CLIENT_ID, ISSUER, REDIRECT_URL, generate_private_key, public_jwk
from sentinel.app.auth.client import OIDCClient
from sentinel.app.auth.discovery import discover_provider, resolve_provider, static_provider
from sentinel.app.auth.jwks import JWKSCache
from sentinel.app.auth.state import generate_state, states_match
from sentinel.app.credentials.store import CredentialStore
from sentinel.app.credentials.watcher import CredentialWatcher
from sentinel.app.errors import (
    DiscoveryFailedError,
    ExchangeFailedError,
    KeySetUnreachableError,
    MissingIdentityTokenError,
    VerificationFailedError,
)
from sentinel.app.models import CredentialPair


def basic_auth_of(request: httpx.Request):
    scheme, _, encoded = request.headers["Authorization"].partition(" ")
    assert scheme == "Basic"
    client_id, _, secret = base64.b64decode(encoded).decode().partition(":")
    return client_id, secret


def at_hash_for(access_token: str) -> str:
    digest = hashlib.sha256(access_token.encode()).digest()
    return base64.urlsafe_b64encode(digest[:16]).decode().rstrip("=")


@pytest.fixture
def oidc_client(provider_config, store, http_client):
    return OIDCClient(
        provider=provider_config,
        store=store,
        redirect_url=REDIRECT_URL,
        http_client=http_client,
    )


# =============================================================================
# State
# =============================================================================

class TestState:
    """Tests for CSRF state helpers"""

    def test_state_has_enough_entropy(self):
        """32 random bytes, URL-safe base64 without padding"""
        state = generate_state()

        assert len(state) >= 43
        assert "=" not in state
        assert len(base64.urlsafe_b64decode(state + "=" * (-len(state) % 4))) == 32

    def test_states_do_not_collide(self):
        states = {generate_state() for _ in range(100_000)}
        assert len(states) == 100_000

    def test_states_match(self):
        state = generate_state()
        assert states_match(state, state)

    @pytest.mark.parametrize("received,expected", [
        ("abc", "abd"),
        ("abc", None),
        (None, "abc"),
        ("", ""),
        (None, None),
    ])
    def test_states_mismatch(self, received, expected):
        assert not states_match(received, expected)


# =============================================================================
# Provider Resolution
# =============================================================================

class TestProviderResolution:
    """Tests for discovery and the static endpoint layout"""

    def test_static_layout(self):
        provider = static_provider(ISSUER + "/")

        assert provider.issuer == ISSUER
        assert provider.authorization_endpoint == f"{ISSUER}/protocol/openid-connect/auth"
        assert provider.token_endpoint == f"{ISSUER}/protocol/openid-connect/token"
        assert provider.jwks_uri == f"{ISSUER}/protocol/openid-connect/certs"

    def test_static_layout_with_internal_url(self):
        """Browser-facing endpoint keeps the issuer; back-channel calls go internal"""
        internal = "http://keycloak.internal:8080/realms/main"
        provider = static_provider(ISSUER, internal)

        assert provider.issuer == ISSUER
        assert provider.authorization_endpoint.startswith(ISSUER)
        assert provider.token_endpoint == f"{internal}/protocol/openid-connect/token"
        assert provider.jwks_uri == f"{internal}/protocol/openid-connect/certs"

    @pytest.mark.asyncio
    async def test_discovery(self, http_client, provider):
        config = await discover_provider(http_client, ISSUER)

        assert config.issuer == ISSUER
        assert config.token_endpoint.endswith("/token")
        assert provider.requests[0].url.path.endswith("/.well-known/openid-configuration")

    @pytest.mark.asyncio
    async def test_discovery_drops_none_algorithm(self, http_client, provider):
        provider.discovery_overrides["id_token_signing_alg_values_supported"] = ["none", "RS256"]

        config = await discover_provider(http_client, ISSUER)

        assert config.id_token_signing_alg_values_supported == ["RS256"]

    @pytest.mark.asyncio
    async def test_discovery_issuer_mismatch(self, http_client, provider):
        provider.discovery_overrides["issuer"] = "https://evil.example.com"

        with pytest.raises(DiscoveryFailedError) as exc_info:
            await discover_provider(http_client, ISSUER)

        assert "mismatch" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_discovery_missing_metadata(self, http_client, provider):
        provider.discovery_overrides["jwks_uri"] = None

        with pytest.raises(DiscoveryFailedError):
            await discover_provider(http_client, ISSUER)

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_static(self, http_client, provider):
        provider.discovery_status = 503

        config = await resolve_provider(http_client, ISSUER)

        assert config == static_provider(ISSUER)

    @pytest.mark.asyncio
    async def test_resolve_without_discovery_makes_no_request(self, http_client, provider):
        config = await resolve_provider(http_client, ISSUER, use_discovery=False)

        assert config == static_provider(ISSUER)
        assert provider.requests == []


# =============================================================================
# Authorization URL
# =============================================================================

class TestAuthorizationURL:
    """Tests for OIDCClient.authorization_url()"""

    def test_round_trips_state(self, oidc_client):
        state = generate_state()

        url = oidc_client.authorization_url(state)
        params = parse_qs(urlsplit(url).query)

        assert params["state"] == [state]
        assert params["client_id"] == [CLIENT_ID]
        assert params["redirect_uri"] == [REDIRECT_URL]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["openid profile email"]

    def test_targets_authorization_endpoint(self, oidc_client, provider_config):
        url = oidc_client.authorization_url("xyz")
        assert url.startswith(provider_config.authorization_endpoint + "?")

    def test_uses_current_client_id(self, oidc_client, store):
        store.set(CredentialPair(client_id="rotated", client_secret="s2"))

        params = parse_qs(urlsplit(oidc_client.authorization_url("xyz")).query)

        assert params["client_id"] == ["rotated"]

    def test_preserves_existing_query(self, provider_config, store, http_client):
        config = provider_config.model_copy(
            update={"authorization_endpoint": provider_config.authorization_endpoint + "?kc_idp_hint=google"}
        )
        client = OIDCClient(config, store, REDIRECT_URL, http_client)

        params = parse_qs(urlsplit(client.authorization_url("xyz")).query)

        assert params["kc_idp_hint"] == ["google"]
        assert params["state"] == ["xyz"]


# =============================================================================
# Code Exchange
# =============================================================================

class TestExchangeCode:
    """Tests for OIDCClient.exchange_code()"""

    @pytest.mark.asyncio
    async def test_exchange_success(self, oidc_client, provider, make_id_token):
        id_token = make_id_token()
        provider.token_response = {
            "access_token": "at123",
            "id_token": id_token,
            "refresh_token": "rt456",
            "expires_in": 300,
            "token_type": "Bearer",
        }

        result = await oidc_client.exchange_code("code-1")

        assert result.access_token == "at123"
        assert result.id_token == id_token
        assert result.refresh_token == "rt456"
        assert result.expiry is not None

        request = provider.token_requests[0]
        form = dict(parse_qsl(request.content.decode()))
        assert form == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": REDIRECT_URL,
        }
        assert basic_auth_of(request) == ("abc", "s1")

    @pytest.mark.asyncio
    async def test_client_secret_post(self, provider_config, store, http_client, provider, make_id_token):
        provider.token_response = {"access_token": "at123", "id_token": make_id_token()}
        client = OIDCClient(
            provider_config, store, REDIRECT_URL, http_client,
            token_auth_method="client_secret_post",
        )

        await client.exchange_code("code-1")

        request = provider.token_requests[0]
        form = dict(parse_qsl(request.content.decode()))
        assert form["client_id"] == "abc"
        assert form["client_secret"] == "s1"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_missing_id_token(self, oidc_client, provider):
        provider.token_response = {"access_token": "at123", "token_type": "Bearer"}

        with pytest.raises(MissingIdentityTokenError) as exc_info:
            await oidc_client.exchange_code("code-1")

        assert "no id_token" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_provider_rejection(self, oidc_client, provider):
        provider.token_status = 400
        provider.token_response = {"error": "invalid_grant", "error_description": "Code not valid"}

        with pytest.raises(ExchangeFailedError) as exc_info:
            await oidc_client.exchange_code("used-code")

        assert "Code not valid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_client(self, oidc_client, provider):
        provider.token_status = 401
        provider.token_response = {"error": "invalid_client"}

        with pytest.raises(ExchangeFailedError):
            await oidc_client.exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_non_json_response(self, oidc_client, provider):
        provider.token_response = lambda request: httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(ExchangeFailedError):
            await oidc_client.exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_network_error(self, oidc_client, provider):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider.token_response = refuse

        with pytest.raises(ExchangeFailedError):
            await oidc_client.exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_empty_code(self, oidc_client, provider):
        with pytest.raises(ExchangeFailedError):
            await oidc_client.exchange_code("")

        assert provider.token_requests == []

    @pytest.mark.asyncio
    async def test_unconfigured_credentials(self, provider_config, http_client, provider):
        client = OIDCClient(provider_config, CredentialStore(), REDIRECT_URL, http_client)

        with pytest.raises(ExchangeFailedError) as exc_info:
            await client.exchange_code("code-1")

        assert "not configured" in str(exc_info.value)
        assert provider.token_requests == []

    @pytest.mark.asyncio
    async def test_timeout(self, provider_config, store):
        async def stall(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        async with httpx.AsyncClient(transport=httpx.MockTransport(stall)) as http_client:
            client = OIDCClient(provider_config, store, REDIRECT_URL, http_client)

            with pytest.raises(ExchangeFailedError) as exc_info:
                await client.exchange_code("code-1", timeout=0.1)

        assert "timed out" in str(exc_info.value)


class TestCredentialRotation:
    """The exchange must use whatever credentials are current when it runs"""

    @pytest.mark.asyncio
    async def test_rotation_applies_to_next_exchange(
        self, oidc_client, store, provider, secret_dir, make_id_token
    ):
        provider.token_response = {"access_token": "at123", "id_token": make_id_token()}
        watcher = CredentialWatcher(secret_dir, store.set)

        await oidc_client.exchange_code("code-1")
        (secret_dir / "client_secret").write_text("s2\n")
        assert await watcher.reload(reason="change")
        await oidc_client.exchange_code("code-2")

        first, second = provider.token_requests
        assert basic_auth_of(first) == ("abc", "s1")
        assert basic_auth_of(second) == ("abc", "s2")

    @pytest.mark.asyncio
    async def test_pending_exchange_sees_rotation(self, oidc_client, store, provider, make_id_token):
        """An exchange created before the rotation but not yet sent uses the new secret"""
        provider.token_response = {"access_token": "at123", "id_token": make_id_token()}

        task = asyncio.create_task(oidc_client.exchange_code("code-1"))
        store.set(CredentialPair(client_id="abc", client_secret="s2"))
        await task

        assert basic_auth_of(provider.token_requests[0]) == ("abc", "s2")

    @pytest.mark.asyncio
    async def test_secret_with_reserved_characters(self, oidc_client, store, provider, make_id_token):
        """client_secret_basic form-encodes both values before base64"""
        provider.token_response = {"access_token": "at123", "id_token": make_id_token()}
        store.set(CredentialPair(client_id="abc", client_secret="p@ss:w rd"))

        await oidc_client.exchange_code("code-1")

        assert basic_auth_of(provider.token_requests[0]) == ("abc", "p%40ss%3Aw+rd")


# =============================================================================
# ID Token Verification
# =============================================================================

class TestVerifyIdToken:
    """Tests for OIDCClient.verify_id_token()"""

    @pytest.mark.asyncio
    async def test_valid_token(self, oidc_client, make_id_token):
        claims = await oidc_client.verify_id_token(make_id_token())

        assert claims["sub"] == "user-sub-123"
        assert claims["email"] == "user@example.com"

    @pytest.mark.asyncio
    async def test_valid_token_with_at_hash(self, oidc_client, make_id_token):
        token = make_id_token(at_hash=at_hash_for("at123"))

        claims = await oidc_client.verify_id_token(token, access_token="at123")

        assert claims["sub"] == "user-sub-123"

    @pytest.mark.asyncio
    async def test_at_hash_mismatch(self, oidc_client, make_id_token):
        token = make_id_token(at_hash=at_hash_for("other-token"))

        with pytest.raises(VerificationFailedError):
            await oidc_client.verify_id_token(token, access_token="at123")

    @pytest.mark.asyncio
    async def test_wrong_signature(self, oidc_client, make_id_token):
        """Same kid, different private key"""
        token = make_id_token(key=generate_private_key())

        with pytest.raises(VerificationFailedError):
            await oidc_client.verify_id_token(token)

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, oidc_client, make_id_token):
        token = make_id_token(iss="https://evil.example.com")

        with pytest.raises(VerificationFailedError) as exc_info:
            await oidc_client.verify_id_token(token)

        assert "issuer" in str(exc_info.value).lower()

    @pytest.mark.asyncio
    async def test_wrong_audience(self, oidc_client, make_id_token):
        token = make_id_token(aud="some-other-client")

        with pytest.raises(VerificationFailedError) as exc_info:
            await oidc_client.verify_id_token(token)

        assert "audience" in str(exc_info.value).lower()

    @pytest.mark.asyncio
    async def test_audience_follows_rotated_client_id(self, oidc_client, store, make_id_token):
        store.set(CredentialPair(client_id="new-client", client_secret="s2"))

        with pytest.raises(VerificationFailedError):
            await oidc_client.verify_id_token(make_id_token())

        claims = await oidc_client.verify_id_token(make_id_token(aud="new-client"))
        assert claims["aud"] == "new-client"

    @pytest.mark.asyncio
    async def test_expired_token(self, oidc_client, make_id_token):
        token = make_id_token(exp_delta_minutes=-5)

        with pytest.raises(VerificationFailedError) as exc_info:
            await oidc_client.verify_id_token(token)

        assert "expired" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_small_clock_skew_tolerated(self, oidc_client, make_id_token):
        """Expired a few seconds ago is still inside the 10 second leeway"""
        from datetime import datetime, timedelta, timezone
        token = make_id_token(exp=datetime.now(timezone.utc) - timedelta(seconds=3))

        claims = await oidc_client.verify_id_token(token)

        assert claims["sub"] == "user-sub-123"

    @pytest.mark.asyncio
    async def test_missing_expiry(self, oidc_client, make_id_token):
        with pytest.raises(VerificationFailedError):
            await oidc_client.verify_id_token(make_id_token(exp=None))

    @pytest.mark.asyncio
    async def test_malformed_token(self, oidc_client):
        with pytest.raises(VerificationFailedError):
            await oidc_client.verify_id_token("not.a.jwt")

    @pytest.mark.asyncio
    async def test_unknown_kid(self, oidc_client, make_id_token):
        token = make_id_token(kid="unknown-key-id")

        with pytest.raises(VerificationFailedError) as exc_info:
            await oidc_client.verify_id_token(token)

        assert "Unable to find signing key" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_key_rotation_refreshes_jwks(self, oidc_client, provider, make_id_token, signing_key):
        """A new kid forces one JWKS refresh, then verifies"""
        await oidc_client.jwks.get_keys()
        new_key = generate_private_key()
        provider.jwks = {"keys": [public_jwk(signing_key), public_jwk(new_key, kid="rotated-kid")]}

        claims = await oidc_client.verify_id_token(make_id_token(key=new_key, kid="rotated-kid"))

        assert claims["sub"] == "user-sub-123"
        assert len(provider.jwks_requests) == 2

    @pytest.mark.asyncio
    async def test_token_without_kid(self, oidc_client, make_id_token):
        claims = await oidc_client.verify_id_token(make_id_token(kid=None))
        assert claims["sub"] == "user-sub-123"

    @pytest.mark.asyncio
    async def test_key_set_unreachable(self, oidc_client, provider, make_id_token):
        provider.jwks_status = 500

        with pytest.raises(VerificationFailedError) as exc_info:
            await oidc_client.verify_id_token(make_id_token())

        assert "key set unavailable" in str(exc_info.value)


class TestJWKSCache:
    """Tests for JWKSCache"""

    @pytest.mark.asyncio
    async def test_keys_are_cached(self, http_client, provider, provider_config):
        cache = JWKSCache(http_client, provider_config.jwks_uri)

        await cache.get_keys()
        await cache.get_keys()

        assert len(provider.jwks_requests) == 1

    @pytest.mark.asyncio
    async def test_zero_ttl_always_refetches(self, http_client, provider, provider_config):
        cache = JWKSCache(http_client, provider_config.jwks_uri, cache_seconds=0)

        await cache.get_keys()
        await cache.get_keys()

        assert len(provider.jwks_requests) == 2

    @pytest.mark.asyncio
    async def test_invalid_key_set(self, http_client, provider, provider_config):
        provider.jwks = {"not_keys": []}
        cache = JWKSCache(http_client, provider_config.jwks_uri)

        with pytest.raises(KeySetUnreachableError):
            await cache.fetch()


class TestPreflight:
    """Tests for OIDCClient.preflight()"""

    @pytest.mark.asyncio
    async def test_preflight_success(self, oidc_client, provider):
        assert await oidc_client.preflight() is True
        assert len(provider.jwks_requests) == 1

    @pytest.mark.asyncio
    async def test_preflight_failure_is_not_fatal(self, oidc_client, provider):
        provider.jwks_status = 503
        assert await oidc_client.preflight() is False
