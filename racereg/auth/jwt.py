from __future__ import annotations
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
import jwt  # PyJWT

from ..config import get_settings

S = get_settings()

ALGO = "HS256"


class InvalidSession(Exception):
    pass


def _now() -> int:
    return int(time.time())


def create_session_token(user_id: uuid.UUID, email: str, expires_in: Optional[timedelta] = None) -> str:
    """Session token as issued by the external sign-in flow; tests mint their own with it."""
    ttl = expires_in or timedelta(minutes=S.JWT_EXPIRE_MINUTES)
    iat = _now()
    claims = {
        "iss": S.APP_NAME,
        "aud": S.APP_NAME,
        "iat": iat,
        "exp": iat + int(ttl.total_seconds()),
        "sub": str(user_id),
        "email": email,
    }
    return jwt.encode(claims, S.JWT_SECRET, algorithm=ALGO)


def decode_session_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            S.JWT_SECRET,
            algorithms=[ALGO],
            audience=S.APP_NAME,
            issuer=S.APP_NAME,
        )
    except jwt.PyJWTError as e:
        raise InvalidSession(str(e)) from e
    if not claims.get("sub"):
        raise InvalidSession("token has no subject")
    return claims
