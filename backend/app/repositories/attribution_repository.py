"""Persistence helpers for client configuration, attributed domains, and timelines."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime

from sqlalchemy import Integer, cast, func, select
from sqlalchemy.orm import Session

from app.domain import (
    LEGACY_STATUS_ALIASES,
    AttributedDomainState,
    AttributionStatus,
    MatchType,
    ensure_utc,
)
from app.models import AttributedDomain, ClientConfig, DomainEvent

from .pipeline_models import DomainEventInput


def domain_state_from_record(record: AttributedDomain) -> AttributedDomainState:
    return AttributedDomainState(
        domain=record.domain,
        status=AttributionStatus.parse(record.status),
        match_type=MatchType(record.match_type) if record.match_type else MatchType.NO_MATCH,
        first_email_sent_at=ensure_utc(record.first_email_sent_at),
        first_event_at=ensure_utc(record.first_event_at),
        last_event_at=ensure_utc(record.last_event_at),
        has_positive_reply=bool(record.has_positive_reply),
        has_sign_up=bool(record.has_sign_up),
        has_meeting_booked=bool(record.has_meeting_booked),
        has_paying_customer=bool(record.has_paying_customer),
        is_within_window=bool(record.is_within_window),
        matched_emails=tuple(record.matched_emails or ()),
    )


def _stored_status_values(statuses: Iterable[AttributionStatus]) -> list[str]:
    """Current status names plus the retired aliases that read back as them."""

    wanted = set(statuses)
    values = {status.value for status in wanted}
    values.update(alias for alias, status in LEGACY_STATUS_ALIASES.items() if status in wanted)
    return sorted(values)


class AttributionRepository:
    """Encapsulate reads and writes against the attribution store."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Client configuration

    def get_client_config(self, client_config_id: str) -> ClientConfig | None:
        return self._session.get(ClientConfig, client_config_id)

    def get_client_config_by_client_id(self, client_id: str) -> ClientConfig | None:
        query = select(ClientConfig).where(ClientConfig.client_id == client_id)
        return self._session.execute(query).scalars().first()

    def list_client_configs(self) -> list[ClientConfig]:
        query = select(ClientConfig).order_by(ClientConfig.client_name)
        return list(self._session.execute(query).scalars().all())

    def slug_exists(self, slug: str) -> bool:
        query = select(func.count()).select_from(ClientConfig).where(ClientConfig.slug == slug)
        return bool(self._session.execute(query).scalar_one())

    def create_client_config(
        self,
        *,
        client_id: str,
        client_name: str,
        slug: str,
        rev_share_rate: float,
        estimated_acv: float,
        attribution_window_days: int,
        billing_cycle: str,
        review_window_days: int,
        contract_start_date: date | None = None,
    ) -> ClientConfig:
        record = ClientConfig(
            client_id=client_id,
            client_name=client_name,
            slug=slug,
            rev_share_rate=rev_share_rate,
            estimated_acv=estimated_acv,
            attribution_window_days=attribution_window_days,
            billing_cycle=billing_cycle,
            review_window_days=review_window_days,
            contract_start_date=contract_start_date,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def update_client_counters(
        self,
        config: ClientConfig,
        counters: Mapping[str, int],
        *,
        processed_at: datetime,
    ) -> None:
        for column, value in counters.items():
            if not hasattr(ClientConfig, column):
                raise KeyError(f"client_config has no counter column {column!r}")
            setattr(config, column, int(value))
        config.last_processed_at = processed_at
        self._session.flush()

    # ------------------------------------------------------------------
    # Attributed domains

    def get_domain(
        self,
        client_config_id: str,
        domain: str,
        *,
        for_update: bool = False,
    ) -> AttributedDomain | None:
        query = select(AttributedDomain).where(
            AttributedDomain.client_config_id == client_config_id,
            AttributedDomain.domain == domain,
        )
        if for_update:
            query = query.with_for_update()
        return self._session.execute(query).scalars().first()

    def list_domains(
        self,
        client_config_id: str,
        *,
        statuses: Iterable[AttributionStatus] | None = None,
    ) -> list[AttributedDomain]:
        query = select(AttributedDomain).where(
            AttributedDomain.client_config_id == client_config_id
        )
        if statuses is not None:
            query = query.where(AttributedDomain.status.in_(_stored_status_values(statuses)))
        query = query.order_by(AttributedDomain.domain)
        return list(self._session.execute(query).scalars().all())

    def list_pending_reviews(
        self, *, sent_before: datetime, client_config_id: str | None = None
    ) -> list[AttributedDomain]:
        query = select(AttributedDomain).where(
            AttributedDomain.status.in_(
                _stored_status_values([AttributionStatus.PENDING_CLIENT_REVIEW])
            ),
            AttributedDomain.review_sent_at.is_not(None),
            AttributedDomain.review_sent_at < sent_before,
        )
        if client_config_id is not None:
            query = query.where(AttributedDomain.client_config_id == client_config_id)
        query = query.order_by(AttributedDomain.review_sent_at)
        return list(self._session.execute(query).scalars().all())

    def create_domain(self, client_config_id: str, state: AttributedDomainState) -> AttributedDomain:
        """Insert a new domain row; the caller records its initial status."""

        record = AttributedDomain(client_config_id=client_config_id, domain=state.domain)
        self.apply_state(record, state)
        self._session.add(record)
        self._session.flush()
        return record

    def apply_state(self, record: AttributedDomain, state: AttributedDomainState) -> None:
        """Copy every merged field except ``status`` onto the row.

        Unchanged values are not reassigned so an idempotent rerun leaves the
        row (including ``updated_at``) untouched.
        """

        values = {
            "match_type": state.match_type.value,
            "first_email_sent_at": state.first_email_sent_at,
            "first_event_at": state.first_event_at,
            "last_event_at": state.last_event_at,
            "has_positive_reply": state.has_positive_reply,
            "has_sign_up": state.has_sign_up,
            "has_meeting_booked": state.has_meeting_booked,
            "has_paying_customer": state.has_paying_customer,
            "is_within_window": state.is_within_window,
            "matched_emails": list(state.matched_emails),
        }
        for column, value in values.items():
            current = getattr(record, column)
            if isinstance(value, datetime) or isinstance(current, datetime):
                if ensure_utc(current) == ensure_utc(value):
                    continue
            elif current == value:
                continue
            setattr(record, column, value)

    def count_domain_flags(self, client_config_id: str) -> dict[str, int]:
        multiple = (
            cast(AttributedDomain.has_positive_reply, Integer)
            + cast(AttributedDomain.has_sign_up, Integer)
            + cast(AttributedDomain.has_meeting_booked, Integer)
            + cast(AttributedDomain.has_paying_customer, Integer)
        )
        query = select(
            func.count().filter(AttributedDomain.has_positive_reply.is_(True)),
            func.count().filter(AttributedDomain.has_sign_up.is_(True)),
            func.count().filter(AttributedDomain.has_meeting_booked.is_(True)),
            func.count().filter(AttributedDomain.has_paying_customer.is_(True)),
            func.count().filter(multiple > 1),
        ).where(AttributedDomain.client_config_id == client_config_id)
        replies, signups, meetings, paying, multi = self._session.execute(query).one()
        return {
            "domains_with_replies": replies or 0,
            "domains_with_signups": signups or 0,
            "domains_with_meetings": meetings or 0,
            "domains_with_paying": paying or 0,
            "domains_with_multiple_events": multi or 0,
        }

    # ------------------------------------------------------------------
    # Domain timeline

    def add_domain_event(self, payload: DomainEventInput) -> DomainEvent:
        record = DomainEvent(
            attributed_domain_id=payload.attributed_domain_id,
            event_source=payload.event_source,
            event_time=payload.event_time,
            email=payload.email,
            source_id=payload.source_id,
            source_table=payload.source_table,
            event_metadata=payload.metadata,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def domain_event_exists(
        self, attributed_domain_id: str, event_source: str, source_id: str
    ) -> bool:
        query = (
            select(func.count())
            .select_from(DomainEvent)
            .where(
                DomainEvent.attributed_domain_id == attributed_domain_id,
                DomainEvent.event_source == event_source,
                DomainEvent.source_id == source_id,
            )
        )
        return bool(self._session.execute(query).scalar_one())

    def list_domain_events(
        self, attributed_domain_id: str, *, event_source: str | None = None
    ) -> list[DomainEvent]:
        query = select(DomainEvent).where(DomainEvent.attributed_domain_id == attributed_domain_id)
        if event_source is not None:
            query = query.where(DomainEvent.event_source == event_source)
        query = query.order_by(DomainEvent.created_at, DomainEvent.event_time)
        return list(self._session.execute(query).scalars().all())


__all__ = ["AttributionRepository", "domain_state_from_record"]
