from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import reduce

from loguru import logger
from sqlalchemy.exc import IntegrityError

from app.domain import (
    FLAG_BY_EVENT_TYPE,
    AttributedDomainState,
    EventSource,
    MatchOutcome,
    MatchType,
    StatusAction,
    derive_automatic_status,
    merge_attributed_domain,
)
from app.models import AttributedDomain
from app.repositories.attribution_repository import (
    AttributionRepository,
    domain_state_from_record,
)
from app.repositories.pipeline_models import DomainEventInput
from app.services.status_machine import SYSTEM_ACTOR, StatusMachine

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def state_from_outcome(outcome: MatchOutcome) -> AttributedDomainState:
    if not outcome.is_matched or outcome.domain is None:
        raise ValueError(f"Outcome for event {outcome.event_id} has no match to aggregate")
    state = AttributedDomainState(
        domain=outcome.domain,
        match_type=outcome.match_type,
        first_email_sent_at=outcome.send_time,
        first_event_at=outcome.event_time,
        last_event_at=outcome.event_time,
        is_within_window=outcome.is_within_window,
        matched_emails=(outcome.email,) if outcome.email and outcome.match_type == MatchType.HARD_MATCH else (),
    )
    setattr(state, FLAG_BY_EVENT_TYPE[outcome.event_type], True)
    state.status = derive_automatic_status(state)
    return state


def _fold_order(outcome: MatchOutcome) -> tuple[datetime, datetime, str]:
    return (outcome.send_time or _EPOCH, outcome.event_time or _EPOCH, outcome.event_id)


def fold_domain(outcomes: Sequence[MatchOutcome]) -> AttributedDomainState:
    """Fold one domain's matched outcomes into a single snapshot.

    Outcomes are merged in send-time order so the first-write-wins send
    timestamp ends up as the minimum across the batch.
    """

    ordered = sorted(outcomes, key=_fold_order)
    states = [state_from_outcome(outcome) for outcome in ordered]
    return reduce(merge_attributed_domain, states[1:], merge_attributed_domain(None, states[0]))


def group_by_domain(outcomes: Iterable[MatchOutcome]) -> dict[str, list[MatchOutcome]]:
    grouped: dict[str, list[MatchOutcome]] = defaultdict(list)
    for outcome in outcomes:
        if outcome.is_matched and outcome.domain:
            grouped[outcome.domain].append(outcome)
    return dict(sorted(grouped.items()))


@dataclass(slots=True)
class DomainWriteResult:
    record: AttributedDomain
    created: bool
    status_changed: bool
    timeline_added: int


class DomainAggregator:
    """Merge folded snapshots into stored domains under a row lock."""

    def __init__(
        self,
        repo: AttributionRepository,
        machine: StatusMachine,
        *,
        actor: str = SYSTEM_ACTOR,
        source_table: str = "attribution_event",
    ) -> None:
        self._repo = repo
        self._machine = machine
        self._actor = actor
        self._source_table = source_table

    def apply(
        self,
        client_config_id: str,
        state: AttributedDomainState,
        outcomes: Sequence[MatchOutcome] = (),
    ) -> DomainWriteResult:
        session = self._repo.session
        try:
            with session.begin_nested():
                return self._apply_once(client_config_id, state, outcomes)
        except IntegrityError:
            # Another writer inserted the row first; merge into it instead.
            logger.warning("Concurrent insert for {}; retrying as update", state.domain)
            with session.begin_nested():
                return self._apply_once(client_config_id, state, outcomes)

    def _apply_once(
        self,
        client_config_id: str,
        state: AttributedDomainState,
        outcomes: Sequence[MatchOutcome],
    ) -> DomainWriteResult:
        record = self._repo.get_domain(client_config_id, state.domain, for_update=True)
        if record is None:
            merged = merge_attributed_domain(None, state)
            record = self._repo.create_domain(client_config_id, merged)
            self._machine.record_initial(
                record,
                merged.status,
                action=StatusAction.AUTO_MATCH,
                actor=self._actor,
                reason="first matched event",
            )
            created, changed = True, True
        else:
            merged = merge_attributed_domain(domain_state_from_record(record), state)
            self._repo.apply_state(record, merged)
            changed = self._machine.apply_automatic(record, merged.status, actor=self._actor)
            created = False

        added = 0
        for outcome in outcomes:
            if self._record_timeline(record, outcome):
                added += 1
        return DomainWriteResult(record=record, created=created, status_changed=changed, timeline_added=added)

    def _record_timeline(self, record: AttributedDomain, outcome: MatchOutcome) -> bool:
        source = EventSource.for_event_type(outcome.event_type).value
        if outcome.event_time is None:
            return False
        if self._repo.domain_event_exists(record.id, source, outcome.event_id):
            return False
        self._repo.add_domain_event(
            DomainEventInput(
                attributed_domain_id=record.id,
                event_source=source,
                event_time=outcome.event_time,
                email=outcome.email,
                source_id=outcome.event_id,
                source_table="prospect" if source == EventSource.POSITIVE_REPLY.value else self._source_table,
                metadata={
                    "match_type": outcome.match_type.value,
                    "days_since_send": outcome.days_since_send,
                    "is_within_window": outcome.is_within_window,
                },
            )
        )
        return True
