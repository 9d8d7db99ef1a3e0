"""Manual actions on attributed domains (dashboard writes)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from loguru import logger

from app.core.config import Settings
from app.domain import (
    FLAG_BY_EVENT_TYPE,
    PROTECTED_STATUSES,
    AttributedDomainState,
    AttributionStatus,
    EventSource,
    EventType,
    MatchType,
    StatusAction,
    derive_automatic_status,
    ensure_utc,
    recompute_window,
)
from app.domain.attribution import earliest, latest
from app.models import AttributedDomain, ClientConfig, DomainEvent
from app.repositories.attribution_repository import (
    AttributionRepository,
    domain_state_from_record,
)
from app.repositories.pipeline_models import DomainEventInput
from ingestion.normalize import DomainNormalizer

from .status_machine import SYSTEM_ACTOR, StatusMachine

MANUAL_EVENT_SOURCES: dict[EventSource, EventType | None] = {
    EventSource.EMAIL_SENT: None,
    EventSource.POSITIVE_REPLY: EventType.POSITIVE_REPLY,
    EventSource.SIGN_UP: EventType.SIGN_UP,
    EventSource.MEETING_BOOKED: EventType.MEETING_BOOKED,
    EventSource.PAYING_CUSTOMER: EventType.PAYING_CUSTOMER,
}

REVIEW_CONFIRMED = "CONFIRMED"
REVIEW_REJECTED = "REJECTED"


class AttributionActionError(ValueError):
    """Raised for manual actions that cannot be applied."""


class DomainNotFoundError(AttributionActionError, LookupError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttributionService:
    def __init__(
        self,
        repo: AttributionRepository,
        settings: Settings,
        *,
        normalizer: DomainNormalizer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self._settings = settings
        self._normalizer = normalizer or DomainNormalizer.from_settings(settings)
        self._clock = clock
        self._machine = StatusMachine(repo, clock=clock)

    # ------------------------------------------------------------------
    # Lookups

    def _config(self, client_config_id: str) -> ClientConfig:
        config = self._repo.get_client_config(client_config_id)
        if config is None:
            raise DomainNotFoundError(f"Unknown client config {client_config_id!r}")
        return config

    def _normalize(self, domain: str) -> str:
        normalized = self._normalizer.normalize_domain(domain)
        if normalized is None:
            raise AttributionActionError(f"{domain!r} is not a valid domain")
        return normalized

    def _domain(self, client_config_id: str, domain: str) -> AttributedDomain:
        self._config(client_config_id)
        normalized = self._normalize(domain)
        record = self._repo.get_domain(client_config_id, normalized, for_update=True)
        if record is None:
            raise DomainNotFoundError(f"No attributed domain {normalized!r} for client {client_config_id}")
        return record

    def list_domains(
        self, client_config_id: str, *, statuses: list[AttributionStatus] | None = None
    ) -> list[AttributedDomain]:
        self._config(client_config_id)
        return self._repo.list_domains(client_config_id, statuses=statuses)

    def domain_timeline(self, client_config_id: str, domain: str) -> list[DomainEvent]:
        record = self._domain(client_config_id, domain)
        return self._repo.list_domain_events(record.id)

    # ------------------------------------------------------------------
    # Manual events

    def add_manual_event(
        self,
        client_config_id: str,
        *,
        domain: str,
        event_source: EventSource,
        event_time: datetime,
        actor: str,
        email: str | None = None,
        notes: str | None = None,
    ) -> AttributedDomain:
        """Record a client-reported event and re-evaluate the domain.

        Conversions on a domain matching could not attribute escalate it to
        CLIENT_PROMOTED; a manual first-send can instead make it ATTRIBUTED.
        """

        if event_source not in MANUAL_EVENT_SOURCES:
            raise AttributionActionError(f"{event_source.value} cannot be added manually")
        config = self._config(client_config_id)
        normalized = self._normalize(domain)
        event_time = ensure_utc(event_time)
        event_type = MANUAL_EVENT_SOURCES[event_source]

        record = self._repo.get_domain(client_config_id, normalized, for_update=True)
        current = self._machine.current_status(record) if record is not None else None
        base = (
            domain_state_from_record(record)
            if record is not None
            else AttributedDomainState(domain=normalized, match_type=MatchType.MANUAL)
        )
        if base.match_type == MatchType.NO_MATCH:
            base = replace(base, match_type=MatchType.MANUAL)

        if event_type is None:
            updated = replace(base, first_email_sent_at=earliest(base.first_email_sent_at, event_time))
        else:
            updated = replace(
                base,
                first_event_at=earliest(base.first_event_at, event_time),
                last_event_at=latest(base.last_event_at, event_time),
            )
            setattr(updated, FLAG_BY_EVENT_TYPE[event_type], True)
        updated = recompute_window(updated, config.attribution_window_days)

        computed = derive_automatic_status(updated)
        if current in PROTECTED_STATUSES:
            target = current
        elif computed == AttributionStatus.ATTRIBUTED or event_type is None:
            target = computed
        else:
            target = AttributionStatus.CLIENT_PROMOTED

        if record is None:
            record = self._repo.create_domain(client_config_id, updated)
            self._machine.record_initial(
                record, target, action=StatusAction.MANUAL_EVENT, actor=actor, reason=notes
            )
        else:
            self._repo.apply_state(record, updated)
            if current not in PROTECTED_STATUSES:
                self._machine.transition(
                    record, target, action=StatusAction.MANUAL_EVENT, actor=actor, reason=notes
                )

        if target == AttributionStatus.CLIENT_PROMOTED and record.promoted_at is None:
            record.promoted_at = self._clock()
            record.promoted_by = actor
            record.promotion_notes = notes

        self._repo.add_domain_event(
            DomainEventInput(
                attributed_domain_id=record.id,
                event_source=event_source.value,
                event_time=event_time,
                email=self._normalizer.normalize_email(email),
                source_id=f"manual:{uuid4()}",
                source_table="manual",
                metadata={"notes": notes, "added_by": actor, "manual": True},
            )
        )
        logger.info(
            "Manual {} event for {} (client {}) by {}; status {}",
            event_source.value,
            normalized,
            client_config_id,
            actor,
            target.value,
        )
        return record

    # ------------------------------------------------------------------
    # Promotion

    def promote_domain(
        self,
        client_config_id: str,
        domain: str,
        *,
        actor: str,
        notes: str | None = None,
    ) -> AttributedDomain:
        record = self._domain(client_config_id, domain)
        current = self._machine.current_status(record)
        if current == AttributionStatus.CLIENT_PROMOTED:
            raise AttributionActionError(f"{record.domain} is already promoted")
        if current == AttributionStatus.ATTRIBUTED and record.is_within_window:
            raise AttributionActionError(f"{record.domain} is already attributed within the window")
        self._transition(record, AttributionStatus.CLIENT_PROMOTED, StatusAction.PROMOTED, actor, notes)
        record.promoted_at = self._clock()
        record.promoted_by = actor
        record.promotion_notes = notes
        return record

    # ------------------------------------------------------------------
    # Client review

    def send_for_review(
        self,
        client_config_id: str,
        domain: str,
        *,
        actor: str,
        notes: str | None = None,
    ) -> AttributedDomain:
        record = self._domain(client_config_id, domain)
        current = self._machine.current_status(record)
        if current == AttributionStatus.PENDING_CLIENT_REVIEW:
            raise AttributionActionError(f"{record.domain} is already awaiting client review")
        if current == AttributionStatus.CLIENT_REJECTED:
            raise AttributionActionError(f"{record.domain} was already rejected by the client")
        self._transition(
            record, AttributionStatus.PENDING_CLIENT_REVIEW, StatusAction.SENT_FOR_REVIEW, actor, notes
        )
        record.review_sent_at = self._clock()
        record.review_sent_by = actor
        record.review_response = None
        record.review_responded_at = None
        record.review_responded_by = None
        record.review_response_notes = None
        return record

    def respond_to_review(
        self,
        client_config_id: str,
        domain: str,
        *,
        response: str,
        actor: str,
        notes: str | None = None,
    ) -> AttributedDomain:
        normalized_response = response.strip().upper()
        if normalized_response not in {REVIEW_CONFIRMED, REVIEW_REJECTED}:
            raise AttributionActionError("Review response must be CONFIRMED or REJECTED")
        record = self._domain(client_config_id, domain)
        if self._machine.current_status(record) != AttributionStatus.PENDING_CLIENT_REVIEW:
            raise AttributionActionError(f"{record.domain} is not awaiting client review")
        if normalized_response == REVIEW_CONFIRMED:
            self._transition(
                record, AttributionStatus.ATTRIBUTED, StatusAction.REVIEW_CONFIRMED, actor, notes
            )
        else:
            self._transition(
                record, AttributionStatus.CLIENT_REJECTED, StatusAction.REVIEW_REJECTED, actor, notes
            )
        record.review_response = normalized_response
        record.review_responded_at = self._clock()
        record.review_responded_by = actor
        record.review_response_notes = notes
        return record

    def auto_confirm_expired_reviews(
        self, *, client_config_id: str | None = None
    ) -> list[AttributedDomain]:
        now = self._clock()
        cutoff = now - timedelta(days=self._settings.review_auto_confirm_days)
        confirmed: list[AttributedDomain] = []
        for record in self._repo.list_pending_reviews(sent_before=cutoff, client_config_id=client_config_id):
            self._transition(
                record,
                AttributionStatus.ATTRIBUTED,
                StatusAction.AUTO_CONFIRMED,
                SYSTEM_ACTOR,
                f"No client response within {self._settings.review_auto_confirm_days} days",
            )
            record.review_response = REVIEW_CONFIRMED
            record.review_responded_at = now
            record.review_responded_by = SYSTEM_ACTOR
            confirmed.append(record)
        if confirmed:
            logger.info("Auto-confirmed {} expired reviews", len(confirmed))
        return confirmed

    # ------------------------------------------------------------------
    # Disputes

    def submit_dispute(
        self,
        client_config_id: str,
        domain: str,
        *,
        reason: str,
        actor: str,
    ) -> AttributedDomain:
        if not reason or not reason.strip():
            raise AttributionActionError("A dispute needs a reason")
        record = self._domain(client_config_id, domain)
        self._transition(
            record, AttributionStatus.PENDING_CLIENT_REVIEW, StatusAction.DISPUTE_SUBMITTED, actor, reason
        )
        record.dispute_reason = reason
        record.dispute_submitted_at = self._clock()
        record.dispute_resolved_at = None
        record.dispute_resolution_notes = None
        return record

    def resolve_dispute(
        self,
        client_config_id: str,
        domain: str,
        *,
        upheld: bool,
        actor: str,
        notes: str | None = None,
    ) -> AttributedDomain:
        record = self._domain(client_config_id, domain)
        if record.dispute_submitted_at is None or record.dispute_resolved_at is not None:
            raise AttributionActionError(f"{record.domain} has no open dispute")
        if upheld:
            self._transition(
                record, AttributionStatus.CLIENT_REJECTED, StatusAction.DISPUTE_UPHELD, actor, notes
            )
        else:
            self._transition(
                record, AttributionStatus.ATTRIBUTED, StatusAction.DISPUTE_DISMISSED, actor, notes
            )
        record.dispute_resolved_at = self._clock()
        record.dispute_resolution_notes = notes
        return record

    def _transition(
        self,
        record: AttributedDomain,
        target: AttributionStatus,
        action: StatusAction,
        actor: str,
        reason: str | None,
    ) -> None:
        self._machine.transition(record, target, action=action, actor=actor, reason=reason)

    def commit(self) -> None:
        self._repo.session.commit()
