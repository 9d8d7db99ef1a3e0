from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .domain import EventSource


class AttributedDomain(BaseModel):
    id: str
    client_config_id: str
    domain: str
    status: str
    match_type: str
    first_email_sent_at: datetime | None = None
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None
    has_positive_reply: bool
    has_sign_up: bool
    has_meeting_booked: bool
    has_paying_customer: bool
    is_within_window: bool
    matched_emails: list[str] = Field(default_factory=list)
    promoted_at: datetime | None = None
    promoted_by: str | None = None
    promotion_notes: str | None = None
    review_sent_at: datetime | None = None
    review_sent_by: str | None = None
    review_response: str | None = None
    review_responded_at: datetime | None = None
    review_responded_by: str | None = None
    review_response_notes: str | None = None
    dispute_reason: str | None = None
    dispute_submitted_at: datetime | None = None
    dispute_resolved_at: datetime | None = None
    dispute_resolution_notes: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("matched_emails", mode="before")
    @classmethod
    def _coerce_emails(cls, value: Any) -> list[str]:
        return list(value or [])


class AttributedDomainList(BaseModel):
    total: int
    items: list[AttributedDomain]


class DomainEvent(BaseModel):
    id: str
    event_source: str
    event_time: datetime
    email: str | None = None
    source_id: str | None = None
    source_table: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="event_metadata")
    created_at: datetime

    model_config = {"from_attributes": True}


class DomainTimeline(BaseModel):
    domain: str
    items: list[DomainEvent]


class ManualEventRequest(BaseModel):
    domain: str = Field(min_length=1)
    event_source: EventSource
    event_time: datetime
    email: str | None = None
    notes: str | None = None
    actor: str = Field(min_length=1)


class PromoteRequest(BaseModel):
    actor: str = Field(min_length=1)
    notes: str | None = None


class SendForReviewRequest(BaseModel):
    actor: str = Field(min_length=1)
    notes: str | None = None


class ReviewResponseRequest(BaseModel):
    response: str = Field(min_length=1, description="CONFIRMED or REJECTED")
    actor: str = Field(min_length=1)
    notes: str | None = None


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1)


class DisputeResolutionRequest(BaseModel):
    upheld: bool
    actor: str = Field(min_length=1)
    notes: str | None = None


class AutoConfirmResult(BaseModel):
    confirmed: int
    domains: list[str]


class ProcessingJob(BaseModel):
    id: str
    job_type: str
    status: str
    client_config_id: str | None = None
    total_events: int
    processed_events: int
    matched_hard: int
    matched_soft: int
    no_match: int
    error_count: int
    current_batch: int
    progress_current: int
    progress_total: int
    current_client: str | None = None
    last_processed_event_id: str | None = None
    last_checkpoint_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    stats: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProcessingJobList(BaseModel):
    total: int
    items: list[ProcessingJob]


class JobTriggerResponse(BaseModel):
    job_id: str
    status: str
    already_running: bool = False
    resumed: bool = False


class BillingPeriod(BaseModel):
    period_number: int
    period_name: str
    start_date: date
    end_date: date
    review_deadline: date
    status: str
    estimated_revenue: float | None = None
    amount_owed: float | None = None
    billable_domains: int | None = None

    model_config = {"from_attributes": True}


class BillingPeriodList(BaseModel):
    client_config_id: str
    billing_cycle: str
    items: list[BillingPeriod]


class HealthStatus(BaseModel):
    status: str
    engine_store: bool
    source_store: bool


class ClientConfig(BaseModel):
    id: str
    client_id: str
    client_name: str
    slug: str
    rev_share_rate: float
    estimated_acv: float
    attribution_window_days: int
    soft_match_enabled: bool
    exclude_personal_domains: bool
    billing_cycle: str
    contract_start_date: date | None = None
    review_window_days: int
    sign_ups_mode: str = "per_event"
    meetings_mode: str = "per_event"
    paying_mode: str = "per_domain"
    total_emails_sent: int
    total_positive_replies: int
    total_sign_ups: int
    total_meetings_booked: int
    total_paying_customers: int
    attributed_positive_replies: int
    attributed_sign_ups: int
    attributed_meetings_booked: int
    attributed_paying_customers: int
    hard_match_positive_replies: int = 0
    soft_match_positive_replies: int = 0
    last_processed_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("rev_share_rate", "estimated_acv", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float:
        return float(value)


class JobError(BaseModel):
    id: str
    client_config_id: str | None = None
    attribution_event_id: str | None = None
    domain: str | None = None
    error_message: str
    created_at: datetime

    model_config = {"from_attributes": True}
