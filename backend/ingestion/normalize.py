from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser

from app.core.config import DEFAULT_MULTI_PART_TLDS, Settings
from app.domain import ConversionEventRecord, EventType

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")


class DomainNormalizer:
    """Reduce raw emails, URLs and hostnames to comparable registrable domains."""

    def __init__(self, multi_part_tlds: Iterable[str] = DEFAULT_MULTI_PART_TLDS) -> None:
        self._multi_part_tlds = frozenset(
            tld.strip().lower().strip(".") for tld in multi_part_tlds if tld and tld.strip()
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> DomainNormalizer:
        return cls(settings.multi_part_tlds)

    @property
    def multi_part_tlds(self) -> frozenset[str]:
        return self._multi_part_tlds

    def normalize_domain(self, raw: str | None) -> str | None:
        if raw is None:
            return None
        value = str(raw).strip().lower()
        if not value:
            return None

        value = _SCHEME_RE.sub("", value)
        if "@" in value:
            value = value.rsplit("@", 1)[1]
        for separator in ("/", "?", "#"):
            value = value.split(separator, 1)[0]
        value = value.split(":", 1)[0].strip(".")
        if value.startswith("www."):
            value = value[4:]

        labels = value.split(".")
        # Single-label hosts ("localhost", "acme") are not registrable.
        if len(labels) < 2 or not all(_LABEL_RE.match(label) for label in labels):
            return None

        suffix = ".".join(labels[-2:])
        if suffix in self._multi_part_tlds:
            if len(labels) < 3:
                return None
            return ".".join(labels[-3:])
        return suffix

    def normalize_email(self, raw: str | None) -> str | None:
        if raw is None:
            return None
        value = str(raw).strip().lower()
        parts = value.split("@")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return value

    def extract_domain(self, email: str | None) -> str | None:
        normalized = self.normalize_email(email)
        if normalized is None:
            return None
        return self.normalize_domain(normalized.split("@", 1)[1])

    def event_domain(self, domain: str | None, email: str | None) -> str | None:
        """Prefer the explicit company domain, falling back to the email's."""

        return self.normalize_domain(domain) or self.extract_domain(email)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_conversion_event(
    *,
    event_id: Any,
    event_type: Any,
    event_time: Any,
    email: str | None,
    domain: str | None,
    metadata: dict[str, Any] | None = None,
) -> ConversionEventRecord:
    """Validate one raw CRM row; raises ValueError for malformed records."""

    if event_id is None:
        raise ValueError("Conversion event is missing an id")
    try:
        parsed_type = EventType(str(event_type).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported event type {event_type!r} for event {event_id}") from exc
    if parsed_type == EventType.POSITIVE_REPLY:
        raise ValueError(f"Positive replies are read from prospects, not events ({event_id})")
    parsed_time = parse_timestamp(event_time)
    if parsed_time is None:
        raise ValueError(f"Event {event_id} has no usable event_time ({event_time!r})")
    return ConversionEventRecord(
        event_id=str(event_id),
        event_type=parsed_type,
        event_time=parsed_time,
        email=email,
        domain=domain,
        metadata=metadata,
    )
