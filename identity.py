from typing import Optional, Protocol
import time

import jwt

from errors import Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


class IdentityResolver(Protocol):
    async def resolve(self, credentials: Optional[str]) -> str:
        """Turn handshake credentials into a user id or raise Unauthorized."""
        ...


class JwtIdentityResolver:
    """Resolves a bearer access token carrying a ``userId`` claim."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    async def resolve(self, credentials: Optional[str]) -> str:
        if not credentials:
            raise Unauthorized("missing access token")
        token = credentials
        if token.lower().startswith("bearer "):
            token = token[7:]
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.warning(f"Rejected access token: {e}")
            raise Unauthorized(str(e)) from e
        user_id = claims.get("userId")
        if not user_id:
            raise Unauthorized("token has no userId claim")
        return str(user_id)

    def issue(self, user_id: str, expires_in: Optional[int] = None) -> str:
        """Mint a token for ``user_id``; used by tooling and tests."""
        claims = {"userId": user_id}
        if expires_in is not None:
            claims["exp"] = int(time.time()) + expires_in
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)
