from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt

logger = logging.getLogger(__name__)


def create_token(user_id: str, secret: str, algorithm: str = "HS256", ttl_minutes: int = 120,
                 email: str = "", name: str = "") -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


class IdentityProvider(ABC):
    """Maps a bearer credential to the caller's user id, or None."""

    @abstractmethod
    def current_user_id(self, token: Optional[str]) -> Optional[str]:
        ...


class JwtIdentityProvider(IdentityProvider):

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def decode(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected token: {e}")
            return None

    def current_user_id(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        payload = self.decode(token)
        if not payload:
            return None
        return payload.get("sub") or None


class StaticIdentityProvider(IdentityProvider):
    """Every request is the same development user."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    def current_user_id(self, token: Optional[str]) -> Optional[str]:
        return self.user_id
