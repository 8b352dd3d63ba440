"""
Credential hot reload.

Watches the secret directory and pushes freshly read credentials into a
callback (normally CredentialStore.set) whenever client_id or client_secret
is created or modified.

Lifecycle:
1. One unconditional read at startup (failure is logged, not fatal)
2. Filesystem watch on the directory via watchfiles
3. Each batch of matching events triggers one re-read
4. stop() ends the watch deterministically

A failed re-read keeps the last good credentials active. Only a failure to
set up the watch itself ends the task, with WatchSetupError.

Only events named client_id or client_secret are acted on. A Kubernetes
Secret volume rotates by swapping the ..data symlink, which raises no such
event; set WATCH_FORCE_POLLING=true for those mounts.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from watchfiles import Change, awatch

from sentinel.app.credentials.reader import CREDENTIAL_FILES, read_credentials
from sentinel.app.errors import CredentialSourceError, WatchSetupError
from sentinel.app.models import CredentialPair

logger = logging.getLogger("sentinel.credentials.watcher")

DEFAULT_DEBOUNCE_MS = 1600
STOP_TIMEOUT_SECONDS = 5.0


def is_credential_change(change: Change, path: str) -> bool:
    """
    watchfiles filter: only creations or modifications of the two
    credential files are relevant.
    """
    if change not in (Change.added, Change.modified):
        return False
    return os.path.basename(path) in CREDENTIAL_FILES


class CredentialWatcher:
    """
    Background task that reloads credentials from a watched directory.

    Usage:
        watcher = CredentialWatcher("/var/run/secrets/oidc", store.set)
        task = watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        location: Union[str, Path],
        on_change: Callable[[CredentialPair], Any],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        force_polling: bool = False,
    ):
        """
        Args:
            location: Secret directory containing client_id and client_secret
            on_change: Called with every successfully read CredentialPair
            debounce_ms: Window in which rapid filesystem events are batched
            force_polling: Poll instead of using native notifications
        """
        self._location = Path(location)
        self._on_change = on_change
        self._debounce_ms = debounce_ms
        self._force_polling = force_polling

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._reload_count = 0
        self._last_reload_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def location(self) -> Path:
        return self._location

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def reload_count(self) -> int:
        """Number of successful reads delivered to the callback."""
        return self._reload_count

    @property
    def last_reload_at(self) -> Optional[str]:
        return self._last_reload_at.isoformat() if self._last_reload_at else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def status(self) -> Dict[str, Any]:
        """Snapshot for the health endpoint."""
        return {
            "path": str(self._location),
            "running": self._running,
            "reload_count": self._reload_count,
            "last_reload_at": self.last_reload_at,
            "last_error": self._last_error,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> asyncio.Task:
        """Run the watcher in the background and return its task handle."""
        if self._task is not None and not self._task.done():
            return self._task

        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="credential-watcher")
        return self._task

    async def stop(self) -> None:
        """Signal the watch loop to exit and wait for it."""
        self._stop_event.set()
        task = self._task
        if task is None:
            return

        done, _ = await asyncio.wait({task}, timeout=STOP_TIMEOUT_SECONDS)
        if not done:
            logger.warning("Credential watcher did not stop in time, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif not task.cancelled() and task.exception() is not None:
            logger.debug(f"Credential watcher had exited with: {task.exception()!r}")

    async def run(self) -> None:
        """
        Watch loop. Returns when stop() is called.

        Raises:
            WatchSetupError: If the directory cannot be watched
        """
        self._running = True
        try:
            await self.reload(reason="startup")

            if not self._location.is_dir():
                raise WatchSetupError(f"Cannot watch {self._location}: directory does not exist")

            logger.info(
                f"Watching {self._location} for credential changes",
                extra={"path": str(self._location), "debounce_ms": self._debounce_ms},
            )

            try:
                async for changes in awatch(
                    self._location,
                    watch_filter=is_credential_change,
                    debounce=self._debounce_ms,
                    stop_event=self._stop_event,
                    recursive=False,
                    force_polling=self._force_polling,
                ):
                    logger.debug(
                        "Credential files changed",
                        extra={"changes": sorted(os.path.basename(p) for _, p in changes)},
                    )
                    await self.reload(reason="change")
            except OSError as e:
                raise WatchSetupError(f"Cannot watch {self._location}: {e}") from e
        finally:
            self._running = False
            logger.info("Credential watcher stopped", extra={"path": str(self._location)})

    # =========================================================================
    # Reload
    # =========================================================================

    async def reload(self, reason: str = "manual") -> bool:
        """
        Read the directory once and deliver the result.

        Returns:
            True if credentials were read and delivered, False otherwise.
        """
        try:
            pair = await asyncio.to_thread(read_credentials, self._location)
        except CredentialSourceError as e:
            self._last_error = str(e)
            logger.warning(
                f"Failed to load credentials from {self._location}: {e}",
                extra={"reason": reason, "error_type": type(e).__name__},
            )
            return False

        try:
            self._on_change(pair)
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Credential change callback failed: {e}", exc_info=True)
            return False

        self._reload_count += 1
        self._last_reload_at = datetime.now(timezone.utc)
        self._last_error = None
        logger.debug(
            "Credentials loaded",
            extra={"reason": reason, "client_id": pair.client_id, "reload_count": self._reload_count},
        )
        return True
