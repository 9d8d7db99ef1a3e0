from __future__ import annotations

from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .domain import AttributionStatus, JobStatus, MatchType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class ClientConfig(Base):
    __tablename__ = "client_config"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    client_name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    access_uuid: Mapped[str] = mapped_column(String, nullable=False, unique=True, default=_uuid)

    rev_share_rate: Mapped[float] = mapped_column(Numeric(6, 4), nullable=False, default=0.10)
    estimated_acv: Mapped[float] = mapped_column(Numeric(14, 2), nullable=False, default=10000)
    attribution_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=31)
    soft_match_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_personal_domains: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    billing_cycle: Mapped[str] = mapped_column(String, nullable=False, default="monthly")
    contract_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    review_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    sign_ups_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="per_event")
    meetings_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="per_event")
    paying_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="per_domain")

    total_emails_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_positive_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_meetings_booked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paying_customers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attributed_positive_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attributed_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attributed_meetings_booked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attributed_paying_customers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_match_positive_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_match_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_match_meetings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hard_match_paying: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    soft_match_positive_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    soft_match_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    soft_match_meetings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    soft_match_paying: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outside_window_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outside_window_meetings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outside_window_paying: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_matched_sign_ups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_matched_meetings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_matched_paying: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    domains_with_replies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    domains_with_signups: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    domains_with_meetings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    domains_with_paying: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    domains_with_multiple_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    domains: Mapped[list["AttributedDomain"]] = relationship(
        "AttributedDomain", back_populates="client_config", cascade="all, delete-orphan"
    )


class AttributedDomain(Base):
    __tablename__ = "attributed_domain"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    client_config_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_config.id"), nullable=False
    )
    domain: Mapped[str] = mapped_column(String, nullable=False)

    first_email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    has_positive_reply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_sign_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_meeting_booked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_paying_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_within_window: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    match_type: Mapped[str] = mapped_column(String, nullable=False, default=MatchType.NO_MATCH.value)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AttributionStatus.UNATTRIBUTED.value
    )
    matched_emails: Mapped[list | None] = mapped_column(JSON, nullable=True)

    promoted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    promoted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    promotion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_sent_by: Mapped[str | None] = mapped_column(String, nullable=True)
    review_response: Mapped[str | None] = mapped_column(String, nullable=True)
    review_responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_responded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    review_response_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    client_config: Mapped[ClientConfig] = relationship("ClientConfig", back_populates="domains")
    events: Mapped[list["DomainEvent"]] = relationship(
        "DomainEvent",
        back_populates="attributed_domain",
        cascade="all, delete-orphan",
        order_by="DomainEvent.created_at",
    )

    __table_args__ = (
        UniqueConstraint("client_config_id", "domain", name="uq_attributed_domain_client_domain"),
        Index("ix_attributed_domain_client_status", "client_config_id", "status"),
    )


class DomainEvent(Base):
    __tablename__ = "domain_event"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    attributed_domain_id: Mapped[str] = mapped_column(
        String, ForeignKey("attributed_domain.id"), nullable=False
    )
    event_source: Mapped[str] = mapped_column(String, nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    source_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source_table: Mapped[str | None] = mapped_column(String, nullable=True)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    attributed_domain: Mapped[AttributedDomain] = relationship(
        "AttributedDomain", back_populates="events"
    )

    __table_args__ = (
        UniqueConstraint(
            "attributed_domain_id",
            "event_source",
            "source_id",
            name="uq_domain_event_source",
        ),
        Index("ix_domain_event_domain_time", "attributed_domain_id", "event_time"),
    )


class ProcessingJob(Base):
    __tablename__ = "processing_job"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    client_config_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("client_config.id"), nullable=True
    )
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.PENDING.value)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_hard: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_soft: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_match: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_checkpoint_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    current_batch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_client: Mapped[str | None] = mapped_column(String, nullable=True)
    stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    errors: Mapped[list["EventProcessingError"]] = relationship(
        "EventProcessingError", back_populates="processing_job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_processing_job_type_status", "job_type", "status"),
        Index("ix_processing_job_client", "client_config_id"),
    )


class EventProcessingError(Base):
    __tablename__ = "event_processing_error"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    processing_job_id: Mapped[str] = mapped_column(
        String, ForeignKey("processing_job.id"), nullable=False
    )
    client_config_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attribution_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    domain: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    processing_job: Mapped[ProcessingJob] = relationship("ProcessingJob", back_populates="errors")

    __table_args__ = (Index("ix_event_error_job", "processing_job_id"),)
