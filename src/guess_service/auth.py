from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import jwt

from .errors import AuthError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str


class TokenVerifier:
    """Verifies bearer tokens issued by the login handler."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("secret must not be empty")
        self._secret = secret

    def verify(self, authorization: str | None) -> Identity:
        if not authorization or not authorization.strip():
            raise AuthError("No token provided")

        token = authorization.strip()
        if token[:7].lower() == "bearer ":
            token = token[7:].strip()

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp"]},
            )
        except jwt.PyJWTError as exc:
            logger.info("JWT verification failed: %s", exc)
            raise AuthError(str(exc)) from exc

        user_id = claims.get("userId")
        username = claims.get("username")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("token missing userId")
        if not isinstance(username, str) or not username:
            raise AuthError("token missing username")
        return Identity(user_id=user_id, username=username)


def issue_token(user_id: str, username: str, secret: str, *, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS) -> str:
    now = int(time.time())
    payload = {
        "userId": user_id,
        "username": username,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)
