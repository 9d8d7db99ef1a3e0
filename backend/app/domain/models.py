"""Typed domain representations shared by the matcher, repositories, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class EventType(str, Enum):
    SIGN_UP = "sign_up"
    MEETING_BOOKED = "meeting_booked"
    PAYING_CUSTOMER = "paying_customer"
    POSITIVE_REPLY = "positive_reply"


class MatchType(str, Enum):
    HARD_MATCH = "HARD_MATCH"
    SOFT_MATCH = "SOFT_MATCH"
    NO_MATCH = "NO_MATCH"
    MANUAL = "MANUAL"


class MatchClassification(str, Enum):
    """Why an event did or did not produce a usable match."""

    MATCHED = "MATCHED"
    NO_DOMAIN = "NO_DOMAIN"
    NO_SEND_HISTORY = "NO_SEND_HISTORY"
    SENT_AFTER_EVENT = "SENT_AFTER_EVENT"


class AttributionStatus(str, Enum):
    UNATTRIBUTED = "UNATTRIBUTED"
    OUTSIDE_WINDOW = "OUTSIDE_WINDOW"
    ATTRIBUTED = "ATTRIBUTED"
    CLIENT_PROMOTED = "CLIENT_PROMOTED"
    PENDING_CLIENT_REVIEW = "PENDING_CLIENT_REVIEW"
    CLIENT_REJECTED = "CLIENT_REJECTED"

    @classmethod
    def parse(cls, value: str | AttributionStatus | None) -> AttributionStatus:
        """Read a stored status, mapping retired names onto current states."""

        if isinstance(value, AttributionStatus):
            return value
        if value is None or not str(value).strip():
            return cls.UNATTRIBUTED
        key = str(value).strip().upper()
        if key in LEGACY_STATUS_ALIASES:
            return LEGACY_STATUS_ALIASES[key]
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"Unknown attribution status: {value!r}") from exc


LEGACY_STATUS_ALIASES: dict[str, AttributionStatus] = {
    "DISPUTE_PENDING": AttributionStatus.PENDING_CLIENT_REVIEW,
    "DISPUTED": AttributionStatus.CLIENT_REJECTED,
    "REJECTED": AttributionStatus.CLIENT_REJECTED,
}

# Only a human action moves a domain out of these.
PROTECTED_STATUSES: frozenset[AttributionStatus] = frozenset(
    {
        AttributionStatus.CLIENT_PROMOTED,
        AttributionStatus.PENDING_CLIENT_REVIEW,
        AttributionStatus.CLIENT_REJECTED,
    }
)

BILLABLE_STATUSES: frozenset[AttributionStatus] = frozenset(
    {AttributionStatus.ATTRIBUTED, AttributionStatus.CLIENT_PROMOTED}
)


class EventSource(str, Enum):
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_RECEIVED = "EMAIL_RECEIVED"
    POSITIVE_REPLY = "POSITIVE_REPLY"
    SIGN_UP = "SIGN_UP"
    MEETING_BOOKED = "MEETING_BOOKED"
    PAYING_CUSTOMER = "PAYING_CUSTOMER"
    STATUS_CHANGE = "STATUS_CHANGE"

    @classmethod
    def for_event_type(cls, event_type: EventType) -> EventSource:
        return _EVENT_SOURCE_BY_TYPE[event_type]


_EVENT_SOURCE_BY_TYPE = {
    EventType.SIGN_UP: EventSource.SIGN_UP,
    EventType.MEETING_BOOKED: EventSource.MEETING_BOOKED,
    EventType.PAYING_CUSTOMER: EventSource.PAYING_CUSTOMER,
    EventType.POSITIVE_REPLY: EventSource.POSITIVE_REPLY,
}


class StatusAction(str, Enum):
    AUTO_MATCH = "AUTO_MATCH"
    MANUAL_EVENT = "MANUAL_EVENT"
    PROMOTED = "PROMOTED"
    SENT_FOR_REVIEW = "SENT_FOR_REVIEW"
    REVIEW_CONFIRMED = "REVIEW_CONFIRMED"
    REVIEW_REJECTED = "REVIEW_REJECTED"
    AUTO_CONFIRMED = "AUTO_CONFIRMED"
    DISPUTE_SUBMITTED = "DISPUTE_SUBMITTED"
    DISPUTE_UPHELD = "DISPUTE_UPHELD"
    DISPUTE_DISMISSED = "DISPUTE_DISMISSED"


class JobType(str, Enum):
    SYNC_CLIENTS = "SYNC_CLIENTS"
    SINGLE_CLIENT = "SINGLE_CLIENT"
    FULL_PROCESS = "FULL_PROCESS"
    CREATE_INDEXES = "CREATE_INDEXES"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_JOB_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    TWENTY_EIGHT_DAY = "28_day"


class CountingMode(str, Enum):
    PER_EVENT = "per_event"
    PER_DOMAIN = "per_domain"


class PeriodStatus(str, Enum):
    UPCOMING = "UPCOMING"
    OPEN = "OPEN"
    OVERDUE = "OVERDUE"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on the way back)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(slots=True, frozen=True)
class ConversionEventRecord:
    """Immutable conversion fact read from the CRM event table."""

    event_id: str
    event_type: EventType
    event_time: datetime
    email: str | None = None
    domain: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class SendIndex:
    """Earliest outbound send per normalized email and per normalized domain."""

    by_email: dict[str, datetime] = field(default_factory=dict)
    by_domain: dict[str, datetime] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class MatchOutcome:
    event_id: str
    event_type: EventType
    event_time: datetime | None
    classification: MatchClassification
    match_type: MatchType
    domain: str | None = None
    email: str | None = None
    send_time: datetime | None = None
    days_since_send: int | None = None
    is_within_window: bool = False

    @property
    def is_matched(self) -> bool:
        return self.classification == MatchClassification.MATCHED


@dataclass(slots=True)
class AttributedDomainState:
    """Storage-independent snapshot of one attributed domain."""

    domain: str
    status: AttributionStatus = AttributionStatus.UNATTRIBUTED
    match_type: MatchType = MatchType.NO_MATCH
    first_email_sent_at: datetime | None = None
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None
    has_positive_reply: bool = False
    has_sign_up: bool = False
    has_meeting_booked: bool = False
    has_paying_customer: bool = False
    is_within_window: bool = False
    matched_emails: tuple[str, ...] = ()

    def flag_for(self, event_type: EventType) -> bool:
        return getattr(self, FLAG_BY_EVENT_TYPE[event_type])


FLAG_BY_EVENT_TYPE: dict[EventType, str] = {
    EventType.SIGN_UP: "has_sign_up",
    EventType.MEETING_BOOKED: "has_meeting_booked",
    EventType.PAYING_CUSTOMER: "has_paying_customer",
    EventType.POSITIVE_REPLY: "has_positive_reply",
}


@dataclass(slots=True, frozen=True)
class BillingPeriod:
    period_number: int
    period_name: str
    start_date: date
    end_date: date
    review_deadline: date
    status: PeriodStatus


@dataclass(slots=True, frozen=True)
class AutoBillEstimate:
    period_name: str
    billable_domains: int
    estimated_revenue: float
    amount_owed: float
