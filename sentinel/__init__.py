"""Sentinel: OIDC login with hot-reloadable client credentials."""

__version__ = "1.0.0"
