from __future__ import annotations
import uuid
from typing import Optional
from fastapi import Request
from ..config import get_settings
from ..redis_client import redis

S = get_settings()


# ---- generic token counter (fixed window) ----
async def _hit(key: str, window_sec: int, limit: int) -> bool:
    """Count one hit against `key`; False once the window's budget is spent."""
    count = await redis.incr(key)
    if count == 1:
        await redis.expire(key, window_sec)
    return count <= limit


def client_ip(req: Optional[Request]) -> Optional[str]:
    # prefer X-Forwarded-For (first hop), then X-Real-IP, then the socket peer
    if req is None:
        return None
    h = req.headers.get("x-forwarded-for")
    if h:
        return h.split(",")[0].strip() or None
    real = req.headers.get("x-real-ip")
    if real:
        return real.strip() or None
    return req.client.host if req.client else None


# ---- public helpers ----
async def allow_invite_claim(user_id: uuid.UUID, token_hash: str) -> bool:
    window = S.RL_INVITE_CLAIM_WINDOW_SEC
    # charge both buckets on every attempt
    by_user = await _hit(f"rl:invite_claim:user:{user_id}", window, S.RL_INVITE_CLAIM_PER_USER)
    by_token = await _hit(f"rl:invite_claim:token:{token_hash}", window, S.RL_INVITE_CLAIM_PER_TOKEN)
    return by_user and by_token


async def allow_group_upload(user_id: uuid.UUID) -> bool:
    return await _hit(
        f"rl:group_upload:user:{user_id}", S.RL_GROUP_UPLOAD_WINDOW_SEC, S.RL_GROUP_UPLOAD_PER_USER
    )
