from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

Side = Literal["source", "target"]
Verdict = Literal["confirmed", "rejected", "unsure"]
MatchStatus = Literal["pending", "notified", "viewed", "confirmed", "rejected", "expired"]
RejectionReason = Literal[
    "wrong_color",
    "wrong_size",
    "wrong_location",
    "wrong_brand",
    "different_item_type",
    "wrong_pattern",
    "wrong_shape",
    "other",
]


class PhotoMatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_photo_id: Optional[UUID] = None
    source_case_id: Optional[UUID] = None
    target_photo_id: Optional[UUID] = None
    target_case_id: Optional[UUID] = None
    overall_score: int
    dna_score: Optional[int] = None
    hash_score: Optional[int] = None
    ocr_score: Optional[int] = None
    color_score: Optional[int] = None
    visual_score: Optional[int] = None
    shape_score: Optional[int] = None
    match_type: str
    match_details: Optional[dict] = None
    matched_identifiers: Optional[dict] = None
    location_score: Optional[int] = None
    distance_miles: Optional[Decimal] = None
    status: MatchStatus
    source_user_notified: bool
    target_user_notified: bool
    notified_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    source_user_feedback: Optional[Verdict] = None
    source_rejection_reasons: Optional[list[str]] = None
    source_rejection_details: Optional[str] = None
    target_user_feedback: Optional[Verdict] = None
    target_rejection_reasons: Optional[list[str]] = None
    target_rejection_details: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FeedbackRequest(BaseModel):
    side: Side
    verdict: Verdict
    reason_codes: list[RejectionReason] = []
    detail: Optional[str] = Field(default=None, max_length=2000)
    user_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _rejection_needs_reason(self) -> "FeedbackRequest":
        if self.verdict == "rejected" and not self.reason_codes:
            raise ValueError("At least one reason code is required when rejecting")
        return self


class ViewRequest(BaseModel):
    side: Side = "target"


class PhotoReadyEvent(BaseModel):
    photo_id: UUID
    case_id: UUID
    case_type: Optional[str] = None
    category: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    force_reextract: bool = False


class CaseClosedEvent(BaseModel):
    case_id: UUID
    reason: Literal["closed", "deleted"] = "closed"


class AcceptedResponse(BaseModel):
    status: str = "accepted"
    photo_id: UUID


class CaseClosedResponse(BaseModel):
    case_id: UUID
    expired: int


class SweepResponse(BaseModel):
    expired: int
    cutoff: datetime


class FeedbackStatsResponse(BaseModel):
    total: int
    by_verdict: dict[str, int]
    by_reason: dict[str, int]
    by_training_status: dict[str, int]
    mean_scores: dict[str, dict[str, Optional[float]]]


class FeedbackExportRequest(BaseModel):
    batch_id: Optional[str] = Field(default=None, max_length=64)
    limit: int = Field(default=1000, ge=1, le=10_000)


class FeedbackExportResponse(BaseModel):
    batch_id: str
    count: int
    records: list[dict]
