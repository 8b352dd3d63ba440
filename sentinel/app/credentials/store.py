"""
In-memory holder for the current OAuth2 client credentials.

Many request handlers read, the credential watcher occasionally writes.
Writers serialise on a lock and swap in a new immutable CredentialPair;
readers just take the current reference, so a read never observes a
client_id from one generation paired with a client_secret from another.
"""

import logging
import threading
from typing import Optional

from sentinel.app.models import CredentialPair

logger = logging.getLogger("sentinel.credentials.store")


class CredentialStore:
    """
    Thread-safe holder of the current CredentialPair.

    Pass one instance to every component that needs credentials instead of
    reading them from a module-level global.
    """

    def __init__(self, initial: Optional[CredentialPair] = None):
        self._pair = initial or CredentialPair()
        self._lock = threading.Lock()

    def get(self) -> CredentialPair:
        """Return the current credential snapshot."""
        return self._pair

    def set(self, pair: CredentialPair) -> bool:
        """
        Replace the stored credentials.

        Args:
            pair: New credentials

        Returns:
            True if the stored value changed, False if it was identical.
        """
        with self._lock:
            if pair == self._pair:
                logger.debug("Credentials unchanged", extra={"client_id": pair.client_id})
                return False
            previous_id = self._pair.client_id
            self._pair = pair

        logger.info(
            f"Client credentials replaced: client_id={pair.client_id}",
            extra={"client_id": pair.client_id, "previous_client_id": previous_id},
        )
        return True

    @property
    def is_configured(self) -> bool:
        return self._pair.is_configured
