from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Caller:
    """Resolved identity handed to the engine by the auth layer."""

    user_id: uuid.UUID
    email: str
    email_verified: bool = False
    is_admin: bool = False
