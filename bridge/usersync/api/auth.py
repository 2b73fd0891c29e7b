"""
Bearer token authentication for the HTTP API.

Token verification is delegated to a TokenVerifier. The bundled
StubTokenVerifier accepts any non-empty token; production deployments
plug in a real verifier through create_app().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    """The bearer token was rejected."""

    pass


@dataclass(frozen=True)
class TokenClaims:
    """Claims extracted from a verified token."""

    user_id: str
    email: str | None = None
    exp: int | None = None


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> TokenClaims:
        """Verify a token.

        Raises:
            InvalidTokenError: If the token is not acceptable
        """
        ...


class StubTokenVerifier:
    """Accepts every non-empty token."""

    def __init__(self, user_id: str = "stub-user", email: str | None = None) -> None:
        self.user_id = user_id
        self.email = email

    async def verify(self, token: str) -> TokenClaims:
        if not token.strip():
            raise InvalidTokenError("Token is required")
        return TokenClaims(user_id=self.user_id, email=self.email)


async def require_auth(
    request: Request,
    authorization: str | None = Header(None),
) -> TokenClaims | None:
    """FastAPI dependency checking the Authorization header.

    Returns None when authentication is disabled.
    """
    if not request.app.state.config.auth.required:
        return None

    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization[len("Bearer ") :]
    if not token.strip():
        raise HTTPException(status_code=401, detail="Token is required")

    verifier: TokenVerifier = request.app.state.verifier
    try:
        return await verifier.verify(token)
    except InvalidTokenError as e:
        logger.info("Rejected bearer token", extra={"reason": str(e)})
        raise HTTPException(status_code=401, detail="Invalid token") from e


def resolve_actor(request: Request, claims: TokenClaims | None) -> str:
    """Actor for a request: X-User-ID header, else the token's user, else "system"."""
    header_user = request.headers.get("X-User-ID")
    if header_user:
        return header_user
    if claims is not None and claims.user_id:
        return claims.user_id
    return "system"
