from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db import Base, SourceBase, enable_sqlite_savepoints
from app.models import ClientConfig
from app import models, source_models  # noqa: F401
from app.repositories import AttributionRepository, source_repository  # noqa: F401
from app.source_models import (
    Client,
    ClientIntegration,
    ConversionEvent,
    EmailConversation,
    LeadCategory,
    Prospect,
)


def _memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_savepoints(engine)
    return engine


@pytest.fixture
def engine():
    engine = _memory_engine()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def source_engine():
    engine = _memory_engine()
    SourceBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = Session(bind=engine, expire_on_commit=False)
    yield session
    session.close()


@pytest.fixture
def source_session(source_engine):
    session = Session(bind=source_engine, expire_on_commit=False)
    yield session
    session.close()


@pytest.fixture
def test_settings(monkeypatch) -> Settings:
    settings = Settings(
        database_url="sqlite://",
        attribution_window_days=31,
        lookup_chunk_size=100,
        processing_batch_size=2,
        pipeline_db_retry_attempts=2,
        pipeline_db_retry_backoff_seconds=[0.0],
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


class SourceSeeder:
    """Populate the source store for one client integration."""

    def __init__(
        self,
        session: Session,
        client_id: str = "client-1",
        name: str = "Acme Outreach",
        *,
        op_status: str | None = "2 - Onboarded",
        is_active: bool = True,
    ) -> None:
        self.session = session
        self.client_id = client_id
        self.integration_id = f"{client_id}-integration"
        self._counter = 0
        session.add(
            Client(id=client_id, client_name=name, op_status=op_status, is_active=is_active, is_deleted=False)
        )
        session.add(ClientIntegration(id=self.integration_id, client_id=client_id, integration_type="smartlead"))
        if session.get(LeadCategory, "positive") is None:
            session.add(LeadCategory(id="positive", name="Interested", sentiment="POSITIVE"))
        session.commit()

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{self.client_id}-{prefix}-{self._counter:04d}"

    def prospect(
        self,
        email: str | None,
        *,
        company_domain: str | None = None,
        positive_at: datetime | None = None,
    ) -> Prospect:
        prospect = Prospect(
            id=self._next_id("prospect"),
            client_integration_id=self.integration_id,
            lead_email=email,
            company_domain=company_domain,
            lead_category_id="positive" if positive_at else None,
            last_interaction_time=positive_at,
        )
        self.session.add(prospect)
        self.session.commit()
        return prospect

    def sent(self, prospect: Prospect, at: datetime) -> EmailConversation:
        message = EmailConversation(
            id=self._next_id("message"),
            prospect_id=prospect.id,
            client_integration_id=self.integration_id,
            type="Sent",
            timestamp_email=at,
        )
        self.session.add(message)
        self.session.commit()
        return message

    def event(
        self,
        event_type: str,
        at: datetime | None,
        *,
        email: str | None = None,
        domain: str | None = None,
        event_id: str | None = None,
    ) -> ConversionEvent:
        event = ConversionEvent(
            id=event_id or self._next_id("event"),
            client_integration_id=self.integration_id,
            event_type=event_type,
            email=email,
            domain=domain,
            event_time=at,
        )
        self.session.add(event)
        self.session.commit()
        return event


@pytest.fixture
def seeder(source_session) -> SourceSeeder:
    return SourceSeeder(source_session)


@pytest.fixture
def make_seeder(source_session):
    """Seed additional source clients next to the default one."""

    def _make(client_id: str, name: str, **kwargs) -> SourceSeeder:
        return SourceSeeder(source_session, client_id, name, **kwargs)

    return _make


@pytest.fixture
def client_config(session) -> ClientConfig:
    """Configuration row for the seeded source client."""
    config = AttributionRepository(session).create_client_config(
        client_id="client-1",
        client_name="Acme Outreach",
        slug="acme-outreach",
        rev_share_rate=0.1,
        estimated_acv=10000,
        attribution_window_days=31,
        billing_cycle="monthly",
        review_window_days=7,
        contract_start_date=date(2024, 1, 1),
    )
    session.commit()
    return config
