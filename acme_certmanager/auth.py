"""
Bearer token authentication for the HTTP API.

Tokens are JWTs signed by an external gateway. Only the verification key is
known here; it is read from disk on every request so it can be rotated
without a restart.
"""

import logging
from pathlib import Path

import jwt
from fastapi import HTTPException, Request
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class UserClaims(BaseModel):
    """Identity carried by a verified token."""

    id: str = ""
    email: str = ""
    role: str = ""
    scope: str = ""


ANONYMOUS = UserClaims(id="anonymous", role="admin")


def _extract_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip()


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


class TokenVerifier:
    """
    FastAPI dependency resolving the caller's UserClaims.

    When ``enabled`` is False every request is accepted as :data:`ANONYMOUS`.

    Attributes:
        enabled: Whether tokens are required.
        public_key_path: PEM file holding the verification key.
        algorithms: Accepted signing algorithms.
    """

    def __init__(
        self,
        enabled: bool = True,
        public_key_path: Path | None = None,
        algorithms: tuple[str, ...] = ("RS256",),
    ) -> None:
        self.enabled = enabled
        self.public_key_path = public_key_path
        self.algorithms = list(algorithms)

    def _read_key(self) -> bytes:
        if self.public_key_path is None:
            raise HTTPException(status_code=500, detail="Internal Server Error")
        try:
            return Path(self.public_key_path).read_bytes()
        except OSError as e:
            logger.error(f"Cannot read token verification key {self.public_key_path}: {e}")
            raise HTTPException(status_code=500, detail="Internal Server Error") from None

    def verify(self, token: str) -> UserClaims:
        """
        Decode and verify ``token``.

        Raises:
            HTTPException: 401 if the token is invalid, 500 if the key cannot be read.
        """
        key = self._read_key()
        try:
            payload = jwt.decode(token, key, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError:
            logger.debug("Rejected expired JWT token")
            raise _unauthorized() from None
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected invalid JWT token: {e}")
            raise _unauthorized() from None

        claims = {name: payload.get(name) for name in ("id", "email", "role", "scope")}
        if not all(isinstance(value, str) for value in claims.values()):
            logger.debug("Rejected JWT token with missing or non-string claims")
            raise _unauthorized()
        return UserClaims(**claims)

    async def __call__(self, request: Request) -> UserClaims:
        if not self.enabled:
            return ANONYMOUS

        token = _extract_bearer_token(request)
        if not token:
            raise _unauthorized()

        claims = self.verify(token)
        request.state.auth_id = claims.id
        return claims
