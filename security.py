from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from config import Settings
from errors import Unauthorized

SCOPE_ACCESS = "access"
SCOPE_PASSWORD_RESET = "password_reset"


class PasswordHasher:
    def __init__(self, rounds: Optional[int] = None):
        kwargs = {"bcrypt__rounds": rounds} if rounds else {}
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", **kwargs)

    def hash(self, plaintext: str) -> str:
        return self.pwd_context.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        if not digest:
            return False
        return self.pwd_context.verify(plaintext, digest)


class TokenClaims(BaseModel):
    sub: str
    email: str
    scope: str = SCOPE_ACCESS
    ver: int = 0


class TokenIssuer:
    """Signs and checks HS256 bearer tokens."""

    def __init__(self, settings: Settings):
        self.secret = settings.JWT_SECRET
        self.algorithm = settings.JWT_ALGORITHM
        self.lifetimes = {
            SCOPE_ACCESS: timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            SCOPE_PASSWORD_RESET: timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES),
        }

    def issue(self, subject_id: str, claims: Dict[str, Any]) -> str:
        scope = claims.get("scope", SCOPE_ACCESS)
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "sub": subject_id,
            "scope": scope,
            "iat": now,
            "exp": now + self.lifetimes[scope],
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired")
        except jwt.InvalidTokenError:
            raise Unauthorized("Failed to authenticate token")
        try:
            return TokenClaims.model_validate(payload)
        except ValueError:
            raise Unauthorized("Failed to authenticate token")
