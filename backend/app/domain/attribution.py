"""Merge and status rules for attributed domains, independent of storage."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from .models import (
    PROTECTED_STATUSES,
    AttributedDomainState,
    AttributionStatus,
    MatchType,
    ensure_utc,
)

_MATCH_STRENGTH = {
    MatchType.HARD_MATCH: 3,
    MatchType.SOFT_MATCH: 2,
    MatchType.MANUAL: 1,
    MatchType.NO_MATCH: 0,
}


def days_since_send(send_time: datetime, event_time: datetime) -> int:
    """Whole days elapsed between send and event, floored."""

    return (ensure_utc(event_time) - ensure_utc(send_time)) // timedelta(days=1)


def earliest(left: datetime | None, right: datetime | None) -> datetime | None:
    left, right = ensure_utc(left), ensure_utc(right)
    if left is None:
        return right
    if right is None:
        return left
    return min(left, right)


def latest(left: datetime | None, right: datetime | None) -> datetime | None:
    left, right = ensure_utc(left), ensure_utc(right)
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


def _stronger_match(left: MatchType, right: MatchType) -> MatchType:
    return left if _MATCH_STRENGTH[left] >= _MATCH_STRENGTH[right] else right


def has_usable_send(state: AttributedDomainState) -> bool:
    send = ensure_utc(state.first_email_sent_at)
    first_event = ensure_utc(state.first_event_at)
    return send is not None and first_event is not None and send <= first_event


def derive_automatic_status(state: AttributedDomainState) -> AttributionStatus:
    if state.is_within_window:
        return AttributionStatus.ATTRIBUTED
    if state.match_type in (MatchType.HARD_MATCH, MatchType.SOFT_MATCH) or has_usable_send(state):
        return AttributionStatus.OUTSIDE_WINDOW
    return AttributionStatus.UNATTRIBUTED


def resolve_automatic_status(
    current: AttributionStatus | None, computed: AttributionStatus
) -> AttributionStatus:
    if current is not None and current in PROTECTED_STATUSES:
        return current
    return computed


def merge_attributed_domain(
    old: AttributedDomainState | None, new: AttributedDomainState
) -> AttributedDomainState:
    """Merge a freshly computed domain snapshot into the stored one.

    Flags and ``is_within_window`` only ever turn on. ``first_email_sent_at``
    keeps the first value written, ``first_event_at``/``last_event_at`` widen
    to cover both snapshots, and HARD_MATCH outranks SOFT_MATCH outranks
    MANUAL. The status is recomputed from the merged fields unless the stored
    status is one only a human may change. Merging the same snapshot twice is
    a no-op.
    """

    if old is None:
        merged = replace(
            new,
            first_email_sent_at=ensure_utc(new.first_email_sent_at),
            first_event_at=ensure_utc(new.first_event_at),
            last_event_at=ensure_utc(new.last_event_at),
            matched_emails=tuple(sorted(set(new.matched_emails))),
        )
        merged.status = derive_automatic_status(merged)
        return merged

    if old.domain != new.domain:
        raise ValueError(f"Cannot merge {new.domain!r} into {old.domain!r}")

    merged = AttributedDomainState(
        domain=old.domain,
        status=old.status,
        match_type=_stronger_match(old.match_type, new.match_type),
        first_email_sent_at=ensure_utc(old.first_email_sent_at)
        if old.first_email_sent_at is not None
        else ensure_utc(new.first_email_sent_at),
        first_event_at=earliest(old.first_event_at, new.first_event_at),
        last_event_at=latest(old.last_event_at, new.last_event_at),
        has_positive_reply=old.has_positive_reply or new.has_positive_reply,
        has_sign_up=old.has_sign_up or new.has_sign_up,
        has_meeting_booked=old.has_meeting_booked or new.has_meeting_booked,
        has_paying_customer=old.has_paying_customer or new.has_paying_customer,
        is_within_window=old.is_within_window or new.is_within_window,
        matched_emails=tuple(sorted(set(old.matched_emails) | set(new.matched_emails))),
    )
    merged.status = resolve_automatic_status(old.status, derive_automatic_status(merged))
    return merged


def recompute_window(state: AttributedDomainState, window_days: int) -> AttributedDomainState:
    """Re-evaluate the window from stored timestamps after a manual edit."""

    if not has_usable_send(state):
        return replace(state)
    elapsed = days_since_send(state.first_email_sent_at, state.first_event_at)
    return replace(state, is_within_window=state.is_within_window or elapsed <= window_days)
