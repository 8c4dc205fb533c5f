import uuid
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from ..identity import parse_iso_date

Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=120)]
ShortText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=200)]


class ProfileSnapshotIn(BaseModel):
    """Person-level data copied onto the registrant at submit time."""

    first_name: Name
    last_name: Name
    email: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=320)]
    date_of_birth: str
    phone: Optional[ShortText] = None
    gender: Optional[ShortText] = None
    city: Optional[ShortText] = None
    state: Optional[ShortText] = None
    country: Optional[ShortText] = None
    emergency_contact_name: Optional[ShortText] = None
    emergency_contact_phone: Optional[ShortText] = None

    @field_validator("date_of_birth")
    @classmethod
    def iso_date(cls, v: str) -> str:
        iso = parse_iso_date(v)
        if iso is None:
            raise ValueError("date_of_birth must be YYYY-MM-DD")
        return iso

    def snapshot(self) -> dict:
        return self.model_dump(exclude_none=True)


class StartRegistrationIn(BaseModel):
    distance_id: uuid.UUID
    registrant: Optional[ProfileSnapshotIn] = None
    division: Optional[ShortText] = None
    gender_identity: Optional[ShortText] = None


class RegistrantInfoIn(BaseModel):
    profile: ProfileSnapshotIn
    division: Optional[ShortText] = None
    gender_identity: Optional[ShortText] = None


class AcceptWaiverIn(BaseModel):
    signature_type: Literal["checkbox", "initials", "signature"]
    signature_value: Optional[Annotated[str, StringConstraints(max_length=500)]] = None


class AnswerIn(BaseModel):
    question_id: uuid.UUID
    value: Optional[Annotated[str, StringConstraints(max_length=2000)]] = None


class AnswersIn(BaseModel):
    answers: List[AnswerIn] = Field(default_factory=list)


class RegistrationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    edition_id: uuid.UUID
    distance_id: uuid.UUID
    buyer_user_id: Optional[uuid.UUID] = None
    status: str  # started | submitted | payment_pending | confirmed | cancelled
    payment_responsibility: str
    base_price_cents: Optional[int] = None
    fees_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    total_cents: Optional[int] = None
    expires_at: Optional[datetime] = None


class WaiverAcceptanceOut(BaseModel):
    registration_id: uuid.UUID
    waiver_id: uuid.UUID
    already_accepted: bool = False


class AnswersOut(BaseModel):
    registration_id: uuid.UUID
    saved: int
