from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from app.schemas import AttributedDomain, ClientConfig, DomainEvent, ManualEventRequest

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_client_config_coerces_decimal_fields():
    """Verify that Decimal fields are correctly coerced to floats."""
    config = ClientConfig(
        id="config-1",
        client_id="client-1",
        client_name="Acme Outreach",
        slug="acme-outreach",
        rev_share_rate=Decimal("0.15"),
        estimated_acv=Decimal("12000.50"),
        attribution_window_days=31,
        soft_match_enabled=True,
        exclude_personal_domains=True,
        billing_cycle="monthly",
        review_window_days=7,
        total_emails_sent=0,
        total_positive_replies=0,
        total_sign_ups=0,
        total_meetings_booked=0,
        total_paying_customers=0,
        attributed_positive_replies=0,
        attributed_sign_ups=0,
        attributed_meetings_booked=0,
        attributed_paying_customers=0,
    )
    assert isinstance(config.rev_share_rate, float)
    assert config.rev_share_rate == 0.15
    assert isinstance(config.estimated_acv, float)
    assert config.estimated_acv == 12000.50


def test_domain_event_reads_stored_metadata():
    """Verify the ORM's event_metadata attribute is exposed as metadata."""
    row = SimpleNamespace(
        id="evt-1",
        event_source="STATUS_CHANGE",
        event_time=NOW,
        email=None,
        source_id="abc",
        source_table="attributed_domain",
        event_metadata={"old_status": None, "new_status": "ATTRIBUTED"},
        created_at=NOW,
    )

    event = DomainEvent.model_validate(row)

    assert event.metadata == {"old_status": None, "new_status": "ATTRIBUTED"}
    assert event.model_dump()["metadata"]["new_status"] == "ATTRIBUTED"


def test_attributed_domain_defaults_missing_emails():
    """Verify a null matched_emails column becomes an empty list."""
    domain = AttributedDomain(
        id="dom-1",
        client_config_id="config-1",
        domain="acme.com",
        status="ATTRIBUTED",
        match_type="HARD_MATCH",
        has_positive_reply=False,
        has_sign_up=True,
        has_meeting_booked=False,
        has_paying_customer=False,
        is_within_window=True,
        matched_emails=None,
        created_at=NOW,
        updated_at=NOW,
    )
    assert domain.matched_emails == []


def test_manual_event_request_validates_source():
    """Verify manual events only accept known event sources."""
    request = ManualEventRequest(
        domain="acme.com", event_source="SIGN_UP", event_time="2024-02-01T00:00:00Z", actor="ops"
    )
    assert request.event_source.value == "SIGN_UP"
    with pytest.raises(ValidationError):
        ManualEventRequest(domain="acme.com", event_source="CLICK", event_time=NOW, actor="ops")
