from __future__ import annotations

import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


async def record_audit(
    db: AsyncSession,
    *,
    organization_id: Optional[uuid.UUID],
    actor_user_id: Optional[uuid.UUID],
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    request_context: Optional[dict] = None,
) -> AuditLog:
    """Write an audit row in the caller's transaction.

    Flushes immediately so a failing insert aborts the mutation it describes.
    """
    entry = AuditLog(
        organization_id=organization_id,
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before=_jsonable(before) if before is not None else None,
        after=_jsonable(after) if after is not None else None,
        request_context=_jsonable(request_context) if request_context else None,
    )
    db.add(entry)
    await db.flush()
    return entry
