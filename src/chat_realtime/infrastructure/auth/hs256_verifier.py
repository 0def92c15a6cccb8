from __future__ import annotations

import jwt

from chat_realtime.application.dto.principal import Principal


class HS256Verifier:
    """Verify JWTs signed with a shared HS256 secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def verify(self, token: str) -> Principal:
        payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        user_id = payload.get("userId", payload.get("sub"))
        if not user_id:
            raise jwt.InvalidTokenError("Token carries no user id")
        return Principal(
            user_id=str(user_id),
            username=payload.get("username"),
            roles=payload.get("roles", []),
        )
