"""
Identity provider endpoint resolution.

Endpoints come either from the standard OIDC discovery document or, when
discovery is disabled or fails, from the Keycloak realm path layout.
"""

import logging
from typing import Optional

import httpx

from sentinel.app.errors import DiscoveryFailedError
from sentinel.app.models import ProviderConfiguration

logger = logging.getLogger("sentinel.auth.discovery")

DISCOVERY_PATH = "/.well-known/openid-configuration"
REQUIRED_METADATA = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


async def discover_provider(
    http_client: httpx.AsyncClient,
    issuer_url: str,
    discovery_base: Optional[str] = None,
) -> ProviderConfiguration:
    """
    Fetch and validate the provider's discovery document.

    Args:
        http_client: Shared provider HTTP client
        issuer_url: Expected issuer identifier
        discovery_base: Base URL to fetch from, if not the issuer itself

    Returns:
        ProviderConfiguration from the document

    Raises:
        DiscoveryFailedError: If the document is unreachable or invalid, or
            advertises a different issuer
    """
    issuer_url = issuer_url.rstrip("/")
    url = f"{(discovery_base or issuer_url).rstrip('/')}{DISCOVERY_PATH}"

    try:
        response = await http_client.get(url)
        response.raise_for_status()
        metadata = response.json()
    except httpx.HTTPError as e:
        raise DiscoveryFailedError(f"Failed to fetch discovery document from {url}: {e}") from e
    except ValueError as e:
        raise DiscoveryFailedError(f"Discovery document at {url} is not valid JSON") from e

    if not isinstance(metadata, dict):
        raise DiscoveryFailedError(f"Discovery document at {url} is not a JSON object")

    missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
    if missing:
        raise DiscoveryFailedError(f"Discovery document missing: {', '.join(missing)}")

    if metadata["issuer"].rstrip("/") != issuer_url:
        raise DiscoveryFailedError(
            f"Issuer mismatch: expected {issuer_url}, discovery document says {metadata['issuer']}"
        )

    algorithms = metadata.get("id_token_signing_alg_values_supported") or ["RS256"]
    # "none" is never acceptable for ID tokens
    algorithms = [alg for alg in algorithms if alg and alg.lower() != "none"] or ["RS256"]

    return ProviderConfiguration(
        issuer=metadata["issuer"],
        authorization_endpoint=metadata["authorization_endpoint"],
        token_endpoint=metadata["token_endpoint"],
        jwks_uri=metadata["jwks_uri"],
        id_token_signing_alg_values_supported=algorithms,
    )


def static_provider(issuer_url: str, internal_url: Optional[str] = None) -> ProviderConfiguration:
    """
    Assemble endpoints from the Keycloak realm layout.

    The authorization endpoint is browser-facing and uses the issuer URL;
    token and JWKS calls use the internal URL when one is configured.
    """
    issuer_url = issuer_url.rstrip("/")
    backchannel = (internal_url or issuer_url).rstrip("/")

    return ProviderConfiguration(
        issuer=issuer_url,
        authorization_endpoint=f"{issuer_url}/protocol/openid-connect/auth",
        token_endpoint=f"{backchannel}/protocol/openid-connect/token",
        jwks_uri=f"{backchannel}/protocol/openid-connect/certs",
    )


async def resolve_provider(
    http_client: httpx.AsyncClient,
    issuer_url: str,
    internal_url: Optional[str] = None,
    use_discovery: bool = True,
) -> ProviderConfiguration:
    """
    Discovery first, static layout as fallback. Never raises on discovery
    failure; the error is logged and the static layout is used.
    """
    if use_discovery:
        try:
            provider = await discover_provider(http_client, issuer_url, discovery_base=internal_url)
            logger.info(
                "OIDC discovery succeeded",
                extra={"issuer": provider.issuer, "jwks_uri": provider.jwks_uri},
            )
            return provider
        except DiscoveryFailedError as e:
            logger.error(f"OIDC discovery failed, using static endpoint layout: {e}")

    provider = static_provider(issuer_url, internal_url)
    logger.info(
        "Using static OIDC endpoint layout",
        extra={"issuer": provider.issuer, "token_endpoint": provider.token_endpoint},
    )
    return provider
