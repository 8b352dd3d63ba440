"""
CSRF state parameter helpers.

A fresh state value is issued per login attempt, stored in a short-lived
HttpOnly cookie and compared with the `state` query parameter on callback.
"""

import hmac
import secrets
from typing import Optional

STATE_BYTES = 32


def generate_state() -> str:
    """
    Generate an unguessable state value.

    Returns:
        URL-safe base64 string encoding STATE_BYTES random bytes
    """
    return secrets.token_urlsafe(STATE_BYTES)


def states_match(received_state: Optional[str], expected_state: Optional[str]) -> bool:
    """
    Compare the callback state with the one issued at login.

    Returns:
        True only if both are present and equal
    """
    if not received_state or not expected_state:
        return False
    return hmac.compare_digest(received_state.encode("utf-8"), expected_state.encode("utf-8"))
