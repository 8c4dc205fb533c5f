from __future__ import annotations
import uuid
from typing import Optional
from fastapi import Depends, HTTPException, Request
from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from ..config import get_settings
from ..db import get_db
from ..domain.caller import Caller
from ..models import User
from .jwt import InvalidSession, decode_session_token

S = get_settings()


def _session_token(request: Request) -> Optional[str]:
    # cookie first (browser), then bearer header (server-to-server)
    token = request.cookies.get(S.SESSION_COOKIE_NAME)
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


async def get_caller(request: Request, db: AsyncSession = Depends(get_db)) -> Caller:
    token = _session_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        claims = decode_session_token(token)
        user_id = uuid.UUID(claims["sub"])
    except (InvalidSession, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")

    result = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()
    if not user or user.status != "active":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive or not found")
    caller = Caller(
        user_id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        is_admin=user.is_admin,
    )
    request.state.user_id = str(caller.user_id)
    return caller
