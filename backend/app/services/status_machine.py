"""Attribution status transitions and their audit trail.

Every status write, automatic or manual, goes through :class:`StatusMachine`,
which validates the move against :data:`TRANSITIONS` and appends exactly one
``STATUS_CHANGE`` domain event per change.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from loguru import logger

from app.domain import (
    PROTECTED_STATUSES,
    AttributionStatus,
    EventSource,
    StatusAction,
)
from app.models import AttributedDomain, DomainEvent
from app.repositories.attribution_repository import AttributionRepository
from app.repositories.pipeline_models import DomainEventInput

SYSTEM_ACTOR = "system"


class InvalidTransitionError(ValueError):
    """Raised when an action is not allowed from the domain's current status."""


@dataclass(slots=True, frozen=True)
class TransitionRule:
    sources: frozenset[AttributionStatus]
    targets: frozenset[AttributionStatus]


_UNPROTECTED = frozenset(AttributionStatus) - PROTECTED_STATUSES
_AUTOMATIC_TARGETS = frozenset(
    {
        AttributionStatus.ATTRIBUTED,
        AttributionStatus.OUTSIDE_WINDOW,
        AttributionStatus.UNATTRIBUTED,
    }
)
_PENDING = frozenset({AttributionStatus.PENDING_CLIENT_REVIEW})
_REVIEWABLE = frozenset({AttributionStatus.ATTRIBUTED, AttributionStatus.CLIENT_PROMOTED})

TRANSITIONS: dict[StatusAction, TransitionRule] = {
    StatusAction.AUTO_MATCH: TransitionRule(_UNPROTECTED, _AUTOMATIC_TARGETS),
    StatusAction.MANUAL_EVENT: TransitionRule(
        _UNPROTECTED, _AUTOMATIC_TARGETS | {AttributionStatus.CLIENT_PROMOTED}
    ),
    StatusAction.PROMOTED: TransitionRule(
        frozenset({AttributionStatus.OUTSIDE_WINDOW, AttributionStatus.UNATTRIBUTED}),
        frozenset({AttributionStatus.CLIENT_PROMOTED}),
    ),
    StatusAction.SENT_FOR_REVIEW: TransitionRule(_REVIEWABLE, _PENDING),
    StatusAction.REVIEW_CONFIRMED: TransitionRule(_PENDING, frozenset({AttributionStatus.ATTRIBUTED})),
    StatusAction.REVIEW_REJECTED: TransitionRule(_PENDING, frozenset({AttributionStatus.CLIENT_REJECTED})),
    StatusAction.AUTO_CONFIRMED: TransitionRule(_PENDING, frozenset({AttributionStatus.ATTRIBUTED})),
    StatusAction.DISPUTE_SUBMITTED: TransitionRule(_REVIEWABLE, _PENDING),
    StatusAction.DISPUTE_UPHELD: TransitionRule(_PENDING, frozenset({AttributionStatus.CLIENT_REJECTED})),
    StatusAction.DISPUTE_DISMISSED: TransitionRule(_PENDING, frozenset({AttributionStatus.ATTRIBUTED})),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusMachine:
    def __init__(
        self,
        repo: AttributionRepository,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self._clock = clock

    @staticmethod
    def current_status(record: AttributedDomain) -> AttributionStatus:
        return AttributionStatus.parse(record.status)

    def record_initial(
        self,
        record: AttributedDomain,
        status: AttributionStatus,
        *,
        action: StatusAction,
        actor: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DomainEvent:
        """Set the status of a freshly created domain and audit it."""

        if status not in TRANSITIONS[action].targets:
            raise InvalidTransitionError(
                f"{action.value} cannot create {record.domain} in {status.value}"
            )
        record.status = status.value
        return self._audit(record, None, status, action=action, actor=actor, reason=reason, metadata=metadata)

    def apply_automatic(
        self,
        record: AttributedDomain,
        computed: AttributionStatus,
        *,
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
    ) -> bool:
        """Apply a status computed by matching; protected statuses are left alone."""

        current = self.current_status(record)
        if current in PROTECTED_STATUSES:
            if computed != current:
                logger.debug(
                    "Keeping {} for {} (matching computed {})",
                    current.value,
                    record.domain,
                    computed.value,
                )
            return False
        return self.transition(
            record,
            computed,
            action=StatusAction.AUTO_MATCH,
            actor=actor,
            reason=reason,
        )

    def transition(
        self,
        record: AttributedDomain,
        target: AttributionStatus,
        *,
        action: StatusAction,
        actor: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move ``record`` to ``target``; returns False when it is already there."""

        rule = TRANSITIONS[action]
        if target not in rule.targets:
            raise InvalidTransitionError(f"{action.value} cannot move a domain to {target.value}")
        current = self.current_status(record)
        if current == target:
            return False
        if current not in rule.sources:
            raise InvalidTransitionError(
                f"{action.value} is not allowed for {record.domain} in {current.value}"
            )
        record.status = target.value
        self._audit(record, current, target, action=action, actor=actor, reason=reason, metadata=metadata)
        logger.info(
            "Domain {} moved {} -> {} ({} by {})",
            record.domain,
            current.value,
            target.value,
            action.value,
            actor,
        )
        return True

    def _audit(
        self,
        record: AttributedDomain,
        old: AttributionStatus | None,
        new: AttributionStatus,
        *,
        action: StatusAction,
        actor: str,
        reason: str | None,
        metadata: dict[str, Any] | None,
    ) -> DomainEvent:
        payload: dict[str, Any] = dict(metadata or {})
        payload.update(
            {
                "old_status": old.value if old is not None else None,
                "new_status": new.value,
                "action": action.value,
                "actor": actor,
                "reason": reason,
            }
        )
        return self._repo.add_domain_event(
            DomainEventInput(
                attributed_domain_id=record.id,
                event_source=EventSource.STATUS_CHANGE.value,
                event_time=self._clock(),
                source_id=str(uuid4()),
                source_table="attributed_domain",
                metadata=payload,
            )
        )
