"""Domain value types and merge rules for attribution."""

from .attribution import (
    days_since_send,
    derive_automatic_status,
    has_usable_send,
    merge_attributed_domain,
    recompute_window,
    resolve_automatic_status,
)
from .models import (
    ACTIVE_JOB_STATUSES,
    BILLABLE_STATUSES,
    FLAG_BY_EVENT_TYPE,
    LEGACY_STATUS_ALIASES,
    PROTECTED_STATUSES,
    AttributedDomainState,
    AttributionStatus,
    AutoBillEstimate,
    BillingCycle,
    BillingPeriod,
    ConversionEventRecord,
    CountingMode,
    EventSource,
    EventType,
    JobStatus,
    JobType,
    MatchClassification,
    MatchOutcome,
    MatchType,
    PeriodStatus,
    SendIndex,
    StatusAction,
    ensure_utc,
)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "BILLABLE_STATUSES",
    "FLAG_BY_EVENT_TYPE",
    "LEGACY_STATUS_ALIASES",
    "PROTECTED_STATUSES",
    "AttributedDomainState",
    "AttributionStatus",
    "AutoBillEstimate",
    "BillingCycle",
    "BillingPeriod",
    "ConversionEventRecord",
    "CountingMode",
    "EventSource",
    "EventType",
    "JobStatus",
    "JobType",
    "MatchClassification",
    "MatchOutcome",
    "MatchType",
    "PeriodStatus",
    "SendIndex",
    "StatusAction",
    "days_since_send",
    "derive_automatic_status",
    "has_usable_send",
    "ensure_utc",
    "merge_attributed_domain",
    "recompute_window",
    "resolve_automatic_status",
]
