"""
Authentication Package

This package implements the OpenID Connect authorization code flow against
an external identity provider.

Key responsibilities:
- Provider discovery (or the static Keycloak endpoint layout)
- Authorization URL construction with CSRF state
- Authorization code exchange using the current client credentials
- ID token verification against the provider JWKS

Modules:
- discovery: discovery document fetch and static endpoint layout
- jwks: JWKS fetching and caching
- client: the OIDC protocol client
- state: CSRF state generation and comparison
- driver: Authenticator, wiring credentials, watcher and client
- routes: /auth/login and /auth/callback

The authentication flow:
1. Client opens /auth/login, receives a state cookie and a redirect
2. User authenticates with the identity provider
3. Provider redirects to /auth/callback with code and state
4. State is checked against the cookie, the code is exchanged
5. The ID token is verified; the login succeeds or is rejected
"""

from .driver import Authenticator
from .routes import auth_router

__all__ = [
    "Authenticator",
    "auth_router",
]
