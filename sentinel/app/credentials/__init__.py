"""
Credential Hot Reload Package

Keeps the OAuth2 client credentials current without a restart.

Modules:
- reader: reads client_id / client_secret from a secret directory
- store: concurrency-safe holder of the current credentials
- watcher: background task reloading the store on file changes
"""

from .reader import read_credentials
from .store import CredentialStore
from .watcher import CredentialWatcher

__all__ = [
    "CredentialStore",
    "CredentialWatcher",
    "read_credentials",
]
