"""Read-only queries against the CRM/outreach source store."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import Index, func, inspect, select
from sqlalchemy.orm import Session

from app.domain import EventType, ensure_utc
from app.source_models import (
    Client,
    ClientIntegration,
    ConversionEvent,
    EmailConversation,
    LeadCategory,
    Prospect,
)

from .types import PositiveReplyRecord, SourceClientRecord

SENT_MESSAGE_TYPE = "Sent"
POSITIVE_SENTIMENT = "POSITIVE"
CONVERSION_EVENT_TYPES = (
    EventType.SIGN_UP.value,
    EventType.MEETING_BOOKED.value,
    EventType.PAYING_CUSTOMER.value,
)

# Lookups issued by the send index builder and the event batch reader.
SOURCE_INDEXES: tuple[Index, ...] = (
    Index(
        "idx_prospect_lead_email_lower",
        func.lower(Prospect.lead_email),
        postgresql_concurrently=True,
    ),
    Index(
        "idx_prospect_company_domain_lower",
        func.lower(Prospect.company_domain),
        postgresql_concurrently=True,
    ),
    Index(
        "idx_email_conversation_prospect_type",
        EmailConversation.prospect_id,
        EmailConversation.type,
        postgresql_concurrently=True,
    ),
    Index(
        "idx_email_conversation_integration_type",
        EmailConversation.client_integration_id,
        EmailConversation.type,
        postgresql_concurrently=True,
    ),
    Index(
        "idx_attribution_event_integration_time",
        ConversionEvent.client_integration_id,
        ConversionEvent.event_time,
        postgresql_concurrently=True,
    ),
)


class SourceRepository:
    """Queries scoped to a single client's integrations."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def reset(self) -> None:
        """Discard an aborted read transaction before retrying."""

        self._session.rollback()

    # ------------------------------------------------------------------
    # Clients

    def list_active_clients(self) -> list[SourceClientRecord]:
        query = (
            select(Client.id, Client.client_name, Client.op_status)
            .where(Client.is_active.is_(True), Client.is_deleted.is_(False))
            .order_by(Client.client_name)
        )
        return [
            SourceClientRecord(client_id=row.id, client_name=row.client_name, op_status=row.op_status)
            for row in self._session.execute(query)
        ]

    def get_client(self, client_id: str) -> SourceClientRecord | None:
        row = self._session.get(Client, client_id)
        if row is None:
            return None
        return SourceClientRecord(client_id=row.id, client_name=row.client_name, op_status=row.op_status)

    def _integration_ids(self, client_id: str):
        return select(ClientIntegration.id).where(ClientIntegration.client_id == client_id)

    # ------------------------------------------------------------------
    # Conversion events

    def count_events(self, client_id: str) -> int:
        query = (
            select(func.count())
            .select_from(ConversionEvent)
            .where(
                ConversionEvent.client_integration_id.in_(self._integration_ids(client_id)),
                ConversionEvent.event_type.in_(CONVERSION_EVENT_TYPES),
            )
        )
        return int(self._session.execute(query).scalar_one())

    def fetch_event_batch(
        self, client_id: str, *, after_id: str | None, limit: int
    ) -> list[ConversionEvent]:
        """Keyset page of conversion events ordered by id."""

        query = select(ConversionEvent).where(
            ConversionEvent.client_integration_id.in_(self._integration_ids(client_id)),
            ConversionEvent.event_type.in_(CONVERSION_EVENT_TYPES),
        )
        if after_id is not None:
            query = query.where(ConversionEvent.id > after_id)
        query = query.order_by(ConversionEvent.id).limit(limit)
        return list(self._session.execute(query).scalars().all())

    def fetch_positive_replies(self, client_id: str) -> list[PositiveReplyRecord]:
        query = (
            select(
                Prospect.id,
                Prospect.lead_email,
                Prospect.company_domain,
                Prospect.last_interaction_time,
            )
            .join(LeadCategory, Prospect.lead_category_id == LeadCategory.id)
            .where(
                Prospect.client_integration_id.in_(self._integration_ids(client_id)),
                func.upper(LeadCategory.sentiment) == POSITIVE_SENTIMENT,
            )
            .order_by(Prospect.id)
        )
        return [
            PositiveReplyRecord(
                prospect_id=row.id,
                email=row.lead_email,
                company_domain=row.company_domain,
                replied_at=ensure_utc(row.last_interaction_time),
            )
            for row in self._session.execute(query)
        ]

    # ------------------------------------------------------------------
    # Outbound send history

    def count_sent_emails(self, client_id: str) -> int:
        query = (
            select(func.count())
            .select_from(EmailConversation)
            .where(
                EmailConversation.client_integration_id.in_(self._integration_ids(client_id)),
                EmailConversation.type == SENT_MESSAGE_TYPE,
            )
        )
        return int(self._session.execute(query).scalar_one())

    def earliest_sends_by_email(
        self, client_id: str, emails: Sequence[str]
    ) -> dict[str, datetime]:
        if not emails:
            return {}
        key = func.lower(Prospect.lead_email)
        return self._earliest_sends(client_id, key, emails)

    def earliest_sends_by_domain(
        self, client_id: str, domains: Sequence[str]
    ) -> dict[str, datetime]:
        if not domains:
            return {}
        key = func.lower(Prospect.company_domain)
        return self._earliest_sends(client_id, key, domains)

    def _earliest_sends(self, client_id: str, key, values: Sequence[str]) -> dict[str, datetime]:
        query = (
            select(key.label("lookup_key"), func.min(EmailConversation.timestamp_email).label("first_sent"))
            .select_from(EmailConversation)
            .join(Prospect, EmailConversation.prospect_id == Prospect.id)
            .where(
                EmailConversation.client_integration_id.in_(self._integration_ids(client_id)),
                EmailConversation.type == SENT_MESSAGE_TYPE,
                EmailConversation.timestamp_email.is_not(None),
                key.in_(list(values)),
            )
            .group_by(key)
        )
        return {
            row.lookup_key: ensure_utc(row.first_sent)
            for row in self._session.execute(query)
            if row.lookup_key is not None and row.first_sent is not None
        }


def _existing_index_names(connection, table: str) -> set[str]:
    # SQLite reflection skips expression indexes, so read its catalog directly.
    if connection.dialect.name == "sqlite":
        rows = connection.exec_driver_sql(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?", (table,)
        )
        return {row[0] for row in rows}
    return {index["name"] for index in inspect(connection).get_indexes(table)}


def create_source_indexes(bind) -> list[str]:
    """Create the lookup indexes the engine relies on, skipping existing ones."""

    created: list[str] = []
    options = {"isolation_level": "AUTOCOMMIT"} if bind.dialect.name == "postgresql" else {}
    with bind.connect() as connection:
        connection = connection.execution_options(**options)
        for index in SOURCE_INDEXES:
            if index.name in _existing_index_names(connection, index.table.name):
                continue
            index.create(bind=connection)
            created.append(index.name)
        if not options:
            connection.commit()
    return created
