"""DTOs for pipeline persistence operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class DomainEventInput:
    attributed_domain_id: str
    event_source: str
    event_time: datetime
    email: str | None = None
    source_id: str | None = None
    source_table: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class JobCheckpointInput:
    processed_events: int
    matched_hard: int
    matched_soft: int
    no_match: int
    error_count: int
    last_processed_event_id: str | None
    current_batch: int
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EventErrorInput:
    processing_job_id: str
    error_message: str
    client_config_id: str | None = None
    attribution_event_id: str | None = None
    domain: str | None = None
    error_stack: str | None = None
