"""
JWKS fetching and caching.

The provider's JSON Web Key Set is cached for JWKS_CACHE_SECONDS. A token
whose kid is not in the cached set triggers one forced refresh, which covers
provider key rotation.
"""

import asyncio
import logging
import time
from typing import Dict, Any, List, Optional

import httpx
from jose import jwt, JWTError

from sentinel.app.errors import KeySetUnreachableError, VerificationFailedError

logger = logging.getLogger("sentinel.auth.jwks")


class JWKSCache:
    """
    Cached view of one JWKS endpoint.

    Concurrent cache misses share a single refresh.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwks_uri: str,
        cache_seconds: int = 3600,
    ):
        self._http = http_client
        self._jwks_uri = jwks_uri
        self._cache_seconds = cache_seconds
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._fetched_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def jwks_uri(self) -> str:
        return self._jwks_uri

    def _is_fresh(self) -> bool:
        return self._keys is not None and (time.monotonic() - self._fetched_at) < self._cache_seconds

    async def fetch(self) -> List[Dict[str, Any]]:
        """
        Fetch the key set from the provider, bypassing the cache.

        Raises:
            KeySetUnreachableError: If the endpoint is unreachable or the
                response is not a key set
        """
        try:
            response = await self._http.get(self._jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()
        except httpx.HTTPError as e:
            raise KeySetUnreachableError(f"JWKS fetch from {self._jwks_uri} failed: {e}") from e
        except ValueError as e:
            raise KeySetUnreachableError(f"JWKS response from {self._jwks_uri} is not valid JSON") from e

        if not isinstance(jwks_data, dict) or not isinstance(jwks_data.get("keys"), list):
            raise KeySetUnreachableError("Invalid JWKS response: missing 'keys' field")

        keys = [key for key in jwks_data["keys"] if isinstance(key, dict)]
        self._keys = keys
        self._fetched_at = time.monotonic()

        logger.debug(
            "Fetched JWKS",
            extra={"jwks_uri": self._jwks_uri, "key_count": len(keys), "status": response.status_code},
        )
        return keys

    async def get_keys(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        """Cached key set, refreshed when stale or forced."""
        if not force_refresh and self._is_fresh():
            return self._keys

        async with self._lock:
            # Another task may have refreshed while we waited
            if not force_refresh and self._is_fresh():
                return self._keys
            return await self.fetch()

    async def get_signing_keys(self, token: str) -> List[Dict[str, Any]]:
        """
        Candidate verification keys for a token.

        With a kid in the header, returns the matching key (refreshing the
        cache once on a miss). Without a kid, every signing key in the set is
        a candidate.

        Raises:
            VerificationFailedError: If the header is malformed or no key matches
            KeySetUnreachableError: If the key set cannot be fetched
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise VerificationFailedError(f"Failed to decode token header: {e}") from e

        kid = header.get("kid")
        keys = await self.get_keys()

        if not kid:
            candidates = [key for key in keys if key.get("use", "sig") == "sig"]
            if not candidates:
                raise VerificationFailedError("No signing keys published in JWKS")
            return candidates

        matching = [key for key in keys if key.get("kid") == kid]
        if matching:
            return matching

        logger.info("Unknown kid, refreshing JWKS", extra={"kid": kid})
        keys = await self.get_keys(force_refresh=True)
        matching = [key for key in keys if key.get("kid") == kid]
        if not matching:
            raise VerificationFailedError(
                f"Unable to find signing key '{kid}' in JWKS. "
                "Token may be from a different issuer or keys may have rotated."
            )
        return matching
