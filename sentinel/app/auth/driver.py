"""
Authentication driver.

Wires the credential store, the credential watcher and the OIDC client
together and exposes the two operations the HTTP layer needs:

1. login_redirect(): fresh CSRF state plus the provider login URL
2. handle_callback(): code exchange followed by ID token verification
"""

import asyncio
import logging
from typing import Optional

import httpx

from sentinel.app.auth.client import OIDCClient
from sentinel.app.auth.discovery import resolve_provider
from sentinel.app.auth.state import generate_state
from sentinel.app.config import Settings
from sentinel.app.credentials.reader import read_credentials
from sentinel.app.credentials.store import CredentialStore
from sentinel.app.credentials.watcher import CredentialWatcher
from sentinel.app.errors import CredentialSourceError, ExchangeFailedError, WatchSetupError
from sentinel.app.models import CredentialPair, LoginRedirect, LoginResult

logger = logging.getLogger("sentinel.auth.driver")


class Authenticator:
    """
    Composition root for the login flow.

    Usage:
        authenticator = await Authenticator.create(settings, http_client)
        authenticator.start()
        redirect = authenticator.login_redirect()
        result = await authenticator.handle_callback(code)
        await authenticator.stop()
    """

    def __init__(
        self,
        store: CredentialStore,
        client: OIDCClient,
        watcher: Optional[CredentialWatcher] = None,
    ):
        self._store = store
        self._client = client
        self._watcher = watcher
        self._watcher_task: Optional[asyncio.Task] = None

    @classmethod
    async def create(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        store: Optional[CredentialStore] = None,
    ) -> "Authenticator":
        """
        Build store, watcher and client from settings.

        Static credentials seed the store; the watched directory (if any) is
        read once here, before the service starts serving, and replaces them
        when that read succeeds. A failed read is logged and the watcher
        retries on the next change. Discovery and JWKS preflight failures are
        logged and do not abort construction.
        """
        if store is None:
            store = CredentialStore()
            if settings.has_static_credentials:
                store.set(CredentialPair(
                    client_id=settings.OIDC_CLIENT_ID,
                    client_secret=settings.OIDC_CLIENT_SECRET,
                ))

        watcher = None
        if settings.SECRET_WATCH_PATH:
            try:
                pair = await asyncio.to_thread(read_credentials, settings.SECRET_WATCH_PATH)
            except CredentialSourceError as e:
                logger.warning(
                    f"Initial credential read from {settings.SECRET_WATCH_PATH} failed: {e}",
                    extra={"error_type": type(e).__name__},
                )
            else:
                store.set(pair)

            watcher = CredentialWatcher(
                settings.SECRET_WATCH_PATH,
                store.set,
                debounce_ms=settings.WATCH_DEBOUNCE_MS,
                force_polling=settings.WATCH_FORCE_POLLING,
            )

        provider = await resolve_provider(
            http_client,
            settings.OIDC_ISSUER_URL,
            internal_url=settings.OIDC_INTERNAL_URL,
            use_discovery=settings.OIDC_DISCOVERY,
        )

        client = OIDCClient(
            provider=provider,
            store=store,
            redirect_url=settings.REDIRECT_URL,
            http_client=http_client,
            scopes=settings.scopes_list,
            token_auth_method=settings.OIDC_TOKEN_AUTH_METHOD,
            jwks_cache_seconds=settings.JWKS_CACHE_SECONDS,
        )

        if settings.JWKS_PREFLIGHT:
            await client.preflight()

        return cls(store=store, client=client, watcher=watcher)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def client(self) -> OIDCClient:
        return self._client

    @property
    def watcher(self) -> Optional[CredentialWatcher]:
        return self._watcher

    @property
    def credentials_configured(self) -> bool:
        return self._store.is_configured

    @property
    def watcher_failed(self) -> bool:
        """True if the watcher task ended with an error."""
        task = self._watcher_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is not None

    # =========================================================================
    # Watcher Lifecycle
    # =========================================================================

    def start(self) -> Optional[asyncio.Task]:
        """Start the credential watcher, if one is configured."""
        if self._watcher is None:
            logger.info("No secret watch path configured; using static credentials only")
            return None

        self._watcher_task = self._watcher.start()
        self._watcher_task.add_done_callback(self._on_watcher_done)
        return self._watcher_task

    async def stop(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()

    def _on_watcher_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, WatchSetupError):
            logger.critical(
                f"Credential watcher failed: {error}. Continuing with current credentials; "
                "rotations will not be picked up.",
                extra={"credentials_configured": self.credentials_configured},
            )
        else:
            logger.critical("Credential watcher crashed", exc_info=error)

    # =========================================================================
    # Protocol Operations
    # =========================================================================

    def login_redirect(self) -> LoginRedirect:
        """Issue a new CSRF state and the matching authorization URL."""
        state = generate_state()
        return LoginRedirect(url=self._client.authorization_url(state), state=state)

    async def handle_callback(self, code: str, timeout: Optional[float] = None) -> LoginResult:
        """
        Complete a login from the callback's authorization code.

        Args:
            code: Authorization code
            timeout: Optional deadline in seconds for the whole callback

        Returns:
            LoginResult with tokens and verified claims

        Raises:
            ExchangeFailedError, MissingIdentityTokenError,
            VerificationFailedError
        """
        if timeout is None:
            return await self._handle_callback(code)
        try:
            return await asyncio.wait_for(self._handle_callback(code), timeout)
        except asyncio.TimeoutError as e:
            raise ExchangeFailedError(f"Login did not complete within {timeout}s") from e

    async def _handle_callback(self, code: str) -> LoginResult:
        token = await self._client.exchange_code(code)
        claims = await self._client.verify_id_token(token.id_token, access_token=token.access_token)

        logger.info(
            "Login verified",
            extra={"sub": claims.get("sub"), "client_id": self._store.get().client_id},
        )
        return LoginResult(token=token, claims=claims)
