"""
Identity collaborator.

Sign-in itself happens at an external identity provider; what reaches us is a
signed bearer token. `TokenIdentityProvider` turns such a token into an
Identity (or None when it is missing, expired, or forged).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Optional, Protocol

import jwt

from .models import Identity

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def current(self) -> Optional[Identity]:
        ...

    async def sign_in(self, credential: str) -> Optional[Identity]:
        ...


class TokenIdentityProvider:
    def __init__(self, jwt_secret: str, jwt_algorithm: str = "HS256"):
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self._current: Optional[Identity] = None

    def current(self) -> Optional[Identity]:
        return self._current

    def resolve(self, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.PyJWTError as exc:
            logger.warning("Rejected identity token: %s", exc)
            return None
        user_id = payload.get("sub") or payload.get("user_id")
        if not user_id:
            return None
        self._current = Identity(id=str(user_id), email=payload.get("email"), name=payload.get("name"))
        return self._current

    async def sign_in(self, credential: str) -> Optional[Identity]:
        identity = self.resolve(credential)
        if identity is not None:
            logger.info("Signed in profile=%s", identity.id)
        return identity

    def issue_token(self, identity: Identity, expire_minutes: int = 60) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
        payload = {"sub": identity.id, "exp": expire}
        if identity.email:
            payload["email"] = identity.email
        if identity.name:
            payload["name"] = identity.name
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)
