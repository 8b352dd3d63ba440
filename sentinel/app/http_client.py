"""
Outbound HTTP client for identity provider calls.

One httpx.AsyncClient is built at startup and handed to every component that
talks to the provider (discovery, JWKS, token exchange). Nothing here touches
process-wide defaults.
"""

import ssl

import httpx

from sentinel.app.config import Settings

USER_AGENT = "sentinel-auth/1.0"


def build_ssl_context() -> ssl.SSLContext:
    """Default verifying context, TLS 1.2 or newer."""
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the shared provider HTTP client.

    Args:
        settings: Application settings (timeouts, IPv4 pinning)

    Returns:
        Configured httpx.AsyncClient. The caller owns it and must aclose() it.
    """
    context = build_ssl_context()
    transport = httpx.AsyncHTTPTransport(
        verify=context,
        local_address="0.0.0.0" if settings.HTTP_FORCE_IPV4 else None,
    )

    return httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(settings.HTTP_TIMEOUT, connect=settings.HTTP_CONNECT_TIMEOUT),
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        follow_redirects=False,
    )
