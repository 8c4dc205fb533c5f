import uuid
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class GroupUploadIn(BaseModel):
    csv_text: Optional[str] = None
    xlsx_base64: Optional[str] = None
    source_filename: Optional[str] = None
    payment_responsibility: Literal["self_pay", "central_pay"] = "central_pay"

    @model_validator(mode="after")
    def exactly_one_source(self):
        if bool(self.csv_text) == bool(self.xlsx_base64):
            raise ValueError("provide exactly one of csv_text or xlsx_base64")
        return self


class BatchRowOut(BaseModel):
    id: Optional[uuid.UUID] = None
    row_index: int
    raw: dict
    errors: List[str] = Field(default_factory=list)
    created_registration_id: Optional[uuid.UUID] = None


class BatchOut(BaseModel):
    id: uuid.UUID
    edition_id: uuid.UUID
    status: str  # uploaded | validated | failed | processed
    payment_responsibility: str
    row_count: int
    error_row_count: int
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    rows: List[BatchRowOut] = Field(default_factory=list)


class ProcessBatchOut(BaseModel):
    batch_id: uuid.UUID
    created_count: int
    percent_off: Optional[int] = None


class DiscountRuleIn(BaseModel):
    min_participants: Annotated[int, Field(ge=1, le=10_000)]
    percent_off: Annotated[int, Field(ge=1, le=100)]
    is_active: bool = True


class DiscountRuleOut(BaseModel):
    id: uuid.UUID
    edition_id: uuid.UUID
    min_participants: int
    percent_off: int
    is_active: bool
