"""
Sentinel application package.

Subpackages:
- credentials: secret directory reader, credential store and watcher
- auth: OIDC discovery, token exchange, ID token verification and routes
"""
