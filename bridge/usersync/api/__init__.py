"""
HTTP API for usersync.
"""

from .app import create_app, status_for
from .auth import InvalidTokenError, StubTokenVerifier, TokenClaims, TokenVerifier

__all__ = [
    "create_app",
    "status_for",
    "TokenVerifier",
    "TokenClaims",
    "StubTokenVerifier",
    "InvalidTokenError",
]
