from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from ..repos.outbox import CHANNEL_CACHE, add_outbox_event

PUBLIC_EVENTS_TAG = "public-events"


def edition_detail_tag(edition_id: uuid.UUID) -> str:
    return f"edition:{edition_id}:detail"


def edition_registrations_tag(edition_id: uuid.UUID) -> str:
    return f"edition:{edition_id}:registrations"


def edition_tags(edition_id: uuid.UUID, *, public: bool = True) -> list[str]:
    tags = [edition_detail_tag(edition_id), edition_registrations_tag(edition_id)]
    if public:
        tags.append(PUBLIC_EVENTS_TAG)
    return tags


async def revalidate_edition(db: AsyncSession, edition_id: uuid.UUID, *, public: bool = True) -> None:
    """Queue a tag-revalidation signal; it is published only if the caller's tx commits."""
    await add_outbox_event(db, channel=CHANNEL_CACHE, payload={"tags": edition_tags(edition_id, public=public)})
