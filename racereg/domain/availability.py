from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..models import EventEdition
from .results import ActionError, ErrorCode

def check_registration_window(
    edition: Optional[EventEdition], now: datetime, *, at_finalize: bool = False
) -> None:
    """Raise if the edition is not taking registrations right now.

    Finalize reports visibility and existence with the EVENT_* codes so a
    client can tell "the event went away" apart from "you never could start".
    """
    if edition is None or edition.deleted_at is not None:
        raise ActionError(
            ErrorCode.EVENT_NOT_FOUND if at_finalize else ErrorCode.NOT_FOUND, "Event not found"
        )
    if edition.visibility != "published":
        raise ActionError(
            ErrorCode.EVENT_NOT_PUBLISHED if at_finalize else ErrorCode.NOT_PUBLISHED,
            "Event is not published",
        )
    if edition.is_registration_paused:
        raise ActionError(ErrorCode.REGISTRATION_PAUSED, "Registration is currently paused")
    if edition.registration_opens_at is not None and now < edition.registration_opens_at:
        raise ActionError(ErrorCode.REGISTRATION_NOT_OPEN, "Registration has not opened yet")
    if edition.registration_closes_at is not None and now > edition.registration_closes_at:
        raise ActionError(ErrorCode.REGISTRATION_CLOSED, "Registration is closed")
