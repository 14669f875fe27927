from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt

from metering.core.config import settings

ENV = settings.ENV
JWT_SECRET = settings.JWT_SECRET
if not JWT_SECRET and ENV != "dev":
    raise RuntimeError("JWT_SECRET is not set")
if not JWT_SECRET:
    JWT_SECRET = "dev-change-me"
JWT_ALG = "HS256"
JWT_ACCESS_EXP_MINUTES = settings.JWT_ACCESS_EXP_MINUTES


def create_access_token(payload: Dict[str, Any]) -> str:
    to_encode = dict(payload)
    to_encode["typ"] = "access"
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=JWT_ACCESS_EXP_MINUTES)
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])


__all__ = [
    "JWTError",
    "create_access_token",
    "decode_token",
]
