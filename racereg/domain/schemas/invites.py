import uuid
from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, EmailStr, Field, StringConstraints


class IssueInviteIn(BaseModel):
    email: EmailStr
    date_of_birth: Annotated[str, StringConstraints(pattern=r"^\d{4}-\d{2}-\d{2}$")]
    # the uploaded row this registration was created from, when there is one
    batch_row_id: Optional[uuid.UUID] = None


class UpdateInviteEmailIn(BaseModel):
    email: EmailStr


class IssuedInviteOut(BaseModel):
    invite_id: uuid.UUID
    registration_id: uuid.UUID
    # raw token; shown once, only its hash is stored
    token: str
    expires_at: datetime


class BatchInviteOut(IssuedInviteOut):
    row_index: int


class BatchInviteFailure(BaseModel):
    row_index: int
    code: str
    error: str


class BatchInvitesOut(BaseModel):
    batch_id: uuid.UUID
    issued: List[BatchInviteOut] = Field(default_factory=list)
    failed: List[BatchInviteFailure] = Field(default_factory=list)
    skipped: int = 0


class InviteCancelledOut(BaseModel):
    invite_id: uuid.UUID
    registration_id: uuid.UUID
    registration_status: str


class BatchCancelledOut(BaseModel):
    batch_id: uuid.UUID
    cancelled_registrations: int
    cancelled_invites: int
    kept: int


class ClaimInviteIn(BaseModel):
    token: Annotated[str, StringConstraints(strip_whitespace=True, min_length=16, max_length=256)]
    date_of_birth: Optional[str] = None


class ClaimInviteOut(BaseModel):
    invite_id: uuid.UUID
    registration_id: uuid.UUID
    edition_id: uuid.UUID
    already_claimed: bool = False
