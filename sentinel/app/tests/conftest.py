"""
Shared fixtures: an RSA-signed fake identity provider served through
httpx.MockTransport, and helpers for minting ID tokens.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from sentinel.app.config import Settings
from sentinel.app.credentials.store import CredentialStore
from sentinel.app.models import CredentialPair, ProviderConfiguration

ISSUER = "https://sso.example.com/realms/main"
REDIRECT_URL = "https://app.example.com/auth/callback"
CLIENT_ID = "abc"
CLIENT_SECRET = "s1"
TEST_KID = "test-key-id-2024"


def generate_private_key() -> rsa.RSAPrivateKey:
    """Generate RSA key for signing test tokens"""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def public_jwk(key: rsa.RSAPrivateKey, kid: str = TEST_KID) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(key.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return jwk


# Generate test key once for reuse
TEST_PRIVATE_KEY = generate_private_key()


@pytest.fixture
def signing_key() -> rsa.RSAPrivateKey:
    return TEST_PRIVATE_KEY


@pytest.fixture
def make_id_token(signing_key) -> Callable[..., str]:
    """
    Factory for signed ID tokens.

    Keyword overrides replace claims; pass a value of None to drop a claim.
    """

    def _make(
        key: Optional[rsa.RSAPrivateKey] = None,
        kid: Optional[str] = TEST_KID,
        exp_delta_minutes: int = 60,
        **claims: Any,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": ISSUER,
            "sub": "user-sub-123",
            "aud": CLIENT_ID,
            "exp": now + timedelta(minutes=exp_delta_minutes),
            "iat": now,
            "email": "user@example.com",
            "name": "Test User",
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}

        headers = {"kid": kid} if kid else {}
        return jwt.encode(payload, private_pem(key or signing_key), algorithm="RS256", headers=headers)

    return _make


class FakeProvider:
    """
    In-memory OIDC provider behind httpx.MockTransport.

    Attributes:
        token_response: JSON body (or callable returning an httpx.Response)
            served by the token endpoint
        jwks: Key set served by the JWKS endpoint
        requests: Every request seen, in order
    """

    def __init__(self, jwks_keys: List[Dict[str, Any]]):
        self.jwks = {"keys": jwks_keys}
        self.token_response: Any = {"access_token": "at123", "token_type": "Bearer", "expires_in": 300}
        self.token_status = 200
        self.jwks_status = 200
        self.discovery_status = 200
        self.discovery_overrides: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []

    @property
    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/token")]

    @property
    def jwks_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/certs")]

    def discovery_document(self) -> Dict[str, Any]:
        document = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
            "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
            "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
            "id_token_signing_alg_values_supported": ["RS256"],
        }
        document.update(self.discovery_overrides)
        return document

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(self.discovery_status, json=self.discovery_document())
        if path.endswith("/certs"):
            return httpx.Response(self.jwks_status, json=self.jwks)
        if path.endswith("/token"):
            if callable(self.token_response):
                return self.token_response(request)
            return httpx.Response(self.token_status, json=self.token_response)
        return httpx.Response(404, json={"error": "not_found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def provider(signing_key) -> FakeProvider:
    return FakeProvider([public_jwk(signing_key)])


@pytest.fixture
def http_client(provider) -> httpx.AsyncClient:
    """AsyncClient routed to the fake provider"""
    return httpx.AsyncClient(transport=provider.transport())


@pytest.fixture
def provider_config() -> ProviderConfiguration:
    return ProviderConfiguration(
        issuer=ISSUER,
        authorization_endpoint=f"{ISSUER}/protocol/openid-connect/auth",
        token_endpoint=f"{ISSUER}/protocol/openid-connect/token",
        jwks_uri=f"{ISSUER}/protocol/openid-connect/certs",
    )


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(CredentialPair(client_id=CLIENT_ID, client_secret=CLIENT_SECRET))


@pytest.fixture
def secret_dir(tmp_path):
    """Secret directory with client_id=abc, client_secret=s1"""
    directory = tmp_path / "secrets"
    directory.mkdir()
    (directory / "client_id").write_text(f"{CLIENT_ID}\n")
    (directory / "client_secret").write_text(f"{CLIENT_SECRET}\n")
    return directory


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values = {
            "OIDC_ISSUER_URL": ISSUER,
            "REDIRECT_URL": REDIRECT_URL,
            "OIDC_CLIENT_ID": CLIENT_ID,
            "OIDC_CLIENT_SECRET": CLIENT_SECRET,
            "WATCH_DEBOUNCE_MS": 50,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make
