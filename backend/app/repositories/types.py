"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True, frozen=True)
class PositiveReplyRecord:
    """Prospect whose reply was categorised with positive sentiment."""

    prospect_id: str
    email: str | None
    company_domain: str | None
    replied_at: datetime | None


@dataclass(slots=True, frozen=True)
class SourceClientRecord:
    client_id: str
    client_name: str
    op_status: str | None


__all__ = ["PositiveReplyRecord", "SourceClientRecord"]
