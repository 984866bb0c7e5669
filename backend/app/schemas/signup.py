from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class SourceType(str, Enum):
    EVENT = "event"
    SOLO = "solo"


class ExtractionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MissingField(str, Enum):
    BET_AMOUNT = "bet_amount"
    TEAM_BET_ON = "team_bet_on"
    ODDS = "odds"
    ANY = "any"


class _SignUpSubmissionBase(BaseModel):
    operator_id: int = Field(..., gt=0)
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_email: EmailStr
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    customer_state: Optional[str] = Field(default=None, min_length=2, max_length=2)
    idempotency_key: str = Field(..., min_length=1, max_length=64)
    bet_slip_photo: Optional[str] = None
    bet_slip_content_type: Optional[str] = Field(default=None, max_length=64)

    @field_validator("customer_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("customer_name is required")
        return value

    @field_validator("customer_state")
    @classmethod
    def _upper_state(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class EventSignUpSubmission(_SignUpSubmissionBase):
    event_id: str


class SoloSignUpSubmission(_SignUpSubmissionBase):
    solo_chat_id: str


class SignUpOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    idempotency_key: str
    source_type: SourceType
    ambassador_id: str
    event_id: Optional[str] = None
    solo_chat_id: Optional[str] = None
    operator_id: int
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    customer_state: Optional[str] = None
    cpa_amount: Decimal
    bet_slip_image_ref: Optional[str] = None
    bet_slip_content_type: Optional[str] = None
    bet_amount: Optional[Decimal] = None
    team_bet_on: Optional[str] = None
    odds: Optional[str] = None
    extraction_confidence: Optional[Decimal] = None
    extraction_status: ExtractionStatus
    review_status: ReviewStatus
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @field_validator("id", "ambassador_id", "event_id", "solo_chat_id", "resolved_by", mode="before")
    @classmethod
    def _uuid_to_str(cls, value: Any) -> Any:
        return str(value) if value is not None else None


class SubmissionMeta(BaseModel):
    is_idempotent_return: bool


class SubmissionResponse(BaseModel):
    data: SignUpOut
    meta: SubmissionMeta


class AuditEntryOut(BaseModel):
    action: str
    actor_type: str
    actor_id: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class AuditLogResponse(BaseModel):
    signup_id: str
    items: List[AuditEntryOut]


class ReviewQueueItem(BaseModel):
    id: str
    customer_name: str
    customer_email: str
    operator_id: int
    ambassador_id: str
    bet_slip_image_ref: Optional[str] = None
    extraction_status: ExtractionStatus
    extraction_confidence: float = 0.0
    bet_amount: Optional[Decimal] = None
    team_bet_on: Optional[str] = None
    odds: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None


class ReviewQueueResponse(BaseModel):
    items: List[ReviewQueueItem]
    total: int
    page: int
    page_size: int
    total_pages: int


class ConfirmExtractionRequest(BaseModel):
    bet_amount: Optional[Decimal] = Field(default=None, gt=0)
    team_bet_on: Optional[str] = Field(default=None, min_length=1, max_length=255)
    odds: Optional[str] = Field(default=None, min_length=1, max_length=50)


class SkipExtractionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=1, max_length=500)


class JobStatsOut(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    avg_confidence: Optional[float] = None


class ExtractionStatsResponse(BaseModel):
    jobs: JobStatsOut
    by_extraction_status: Dict[str, int]
    by_review_status: Dict[str, int]
    avg_confidence_pending_review: Optional[float] = None
    avg_confidence_confirmed: Optional[float] = None


class ProcessJobsResponse(BaseModel):
    processed: int
    succeeded: int
    retrying: int
    failed: int
    skipped: int


class CleanupResponse(BaseModel):
    reset_count: int


class VisionHealthResponse(BaseModel):
    available: bool
    provider: str
    latency_ms: Optional[float] = None
