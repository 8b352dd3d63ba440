"""
Secret directory reader.

A secret directory (for example a mounted Kubernetes Secret) holds two
files, ``client_id`` and ``client_secret``, each with a single line of text.
"""

import errno
import logging
from pathlib import Path
from typing import Optional, Union

from sentinel.app.errors import MissingFieldError, SourceUnavailableError
from sentinel.app.models import CredentialPair

logger = logging.getLogger("sentinel.credentials.reader")

CLIENT_ID_FILE = "client_id"
CLIENT_SECRET_FILE = "client_secret"
CREDENTIAL_FILES = (CLIENT_ID_FILE, CLIENT_SECRET_FILE)


def _read_field(directory: Path, name: str) -> Optional[str]:
    """
    Read and strip one credential file.

    Returns:
        File contents without surrounding whitespace, or None if the file
        does not exist.

    Raises:
        SourceUnavailableError: If the file exists but cannot be read
    """
    path = directory / name
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        # Includes dangling symlinks mid-rotation
        return None
    except OSError as e:
        raise SourceUnavailableError(f"Failed to read {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SourceUnavailableError(f"{path} is not valid UTF-8 text") from e


def read_credentials(location: Union[str, Path]) -> CredentialPair:
    """
    Read client_id and client_secret from a secret directory.

    Either both values are returned or the call fails; a pair with one
    empty field is never produced.

    Args:
        location: Directory containing the credential files

    Returns:
        CredentialPair with whitespace-stripped values

    Raises:
        SourceUnavailableError: If the directory cannot be opened or a file
            cannot be read
        MissingFieldError: If either file is missing or empty
    """
    directory = Path(location)

    try:
        if not directory.is_dir():
            reason = "does not exist" if not directory.exists() else "is not a directory"
            raise SourceUnavailableError(f"Secret directory {directory} {reason}")
    except OSError as e:
        if e.errno == errno.EACCES:
            raise SourceUnavailableError(f"Permission denied opening {directory}") from e
        raise SourceUnavailableError(f"Cannot open secret directory {directory}: {e}") from e

    values = {name: _read_field(directory, name) for name in CREDENTIAL_FILES}

    missing = [name for name, value in values.items() if not value]
    if missing:
        raise MissingFieldError(missing)

    return CredentialPair(
        client_id=values[CLIENT_ID_FILE],
        client_secret=values[CLIENT_SECRET_FILE],
    )
