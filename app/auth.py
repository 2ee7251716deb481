"""
AUTH MODULE
===========

Login tokens and the FastAPI dependencies that turn them into a user id.

  create_access_token(user)  - HS256 JWT with sub=user_id, email, exp.
  get_optional_user_id       - Bearer token -> user id; missing/invalid -> None (anonymous chat).
  require_user_id            - same, but 401 when there is no valid token (session endpoints).

The user id is the identity string every stored session is scoped by.
"""

import datetime
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt

from app.models import AppUser
from config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_SECRET_KEY

logger = logging.getLogger("ClassChat")


def create_access_token(user: AppUser, expires_delta: Optional[datetime.timedelta] = None) -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    expire = now + (expires_delta or datetime.timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims: Dict[str, Any] = {
        "sub": user.user_id,
        "email": user.email,
        "iat": now,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """User id from a valid access token, None for anything else (expired, forged, wrong type)."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.info("Rejected access token: %s", e)
        return None
    if payload.get("type") != "access":
        return None
    return payload.get("sub") or None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    token = _bearer_token(authorization)
    return decode_access_token(token) if token else None


async def require_user_id(user_id: Optional[str] = Depends(get_optional_user_id)) -> str:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id
