from __future__ import annotations

from collections.abc import Iterable, Sequence

from app.domain import (
    ConversionEventRecord,
    EventType,
    MatchClassification,
    MatchOutcome,
    MatchType,
    SendIndex,
    days_since_send,
    ensure_utc,
)
from app.repositories.types import PositiveReplyRecord
from ingestion.normalize import DomainNormalizer


class EventMatcher:
    """Classify conversion events against a client's send index."""

    def __init__(
        self,
        normalizer: DomainNormalizer,
        *,
        window_days: int,
        soft_match_enabled: bool = True,
        personal_domains: Iterable[str] = (),
    ) -> None:
        self._normalizer = normalizer
        self._window_days = window_days
        self._soft_match_enabled = soft_match_enabled
        self._personal_domains = frozenset(domain.lower() for domain in personal_domains)

    @property
    def window_days(self) -> int:
        return self._window_days

    def lookup_keys(self, events: Sequence[ConversionEventRecord]) -> tuple[set[str], set[str]]:
        """Distinct normalized emails and domains worth looking up for a batch."""

        emails: set[str] = set()
        domains: set[str] = set()
        for event in events:
            email = self._normalizer.normalize_email(event.email)
            if email:
                emails.add(email)
            if not self._soft_match_enabled:
                continue
            domain = self._normalizer.event_domain(event.domain, event.email)
            if domain and domain not in self._personal_domains:
                domains.add(domain)
        return emails, domains

    def match(self, event: ConversionEventRecord, index: SendIndex) -> MatchOutcome:
        email = self._normalizer.normalize_email(event.email)
        domain = self._normalizer.event_domain(event.domain, event.email)
        event_time = ensure_utc(event.event_time)

        if domain is None:
            return self._unmatched(event, MatchClassification.NO_DOMAIN, domain=None, email=email)

        send_time = None
        match_type = MatchType.NO_MATCH
        if email and email in index.by_email:
            send_time = index.by_email[email]
            match_type = MatchType.HARD_MATCH
        elif self._soft_allowed(domain) and domain in index.by_domain:
            send_time = index.by_domain[domain]
            match_type = MatchType.SOFT_MATCH

        if send_time is None:
            return self._unmatched(event, MatchClassification.NO_SEND_HISTORY, domain=domain, email=email)

        send_time = ensure_utc(send_time)
        # A send after the conversion cannot have caused it.
        if send_time > event_time:
            return self._unmatched(
                event,
                MatchClassification.SENT_AFTER_EVENT,
                domain=domain,
                email=email,
                send_time=send_time,
            )

        elapsed = days_since_send(send_time, event_time)
        return MatchOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            event_time=event_time,
            classification=MatchClassification.MATCHED,
            match_type=match_type,
            domain=domain,
            email=email,
            send_time=send_time,
            days_since_send=elapsed,
            is_within_window=elapsed <= self._window_days,
        )

    def reply_lookup_keys(self, replies: Sequence[PositiveReplyRecord]) -> tuple[set[str], set[str]]:
        emails: set[str] = set()
        domains: set[str] = set()
        for reply in replies:
            email = self._normalizer.normalize_email(reply.email)
            if email:
                emails.add(email)
            domain = self._normalizer.event_domain(reply.company_domain, reply.email)
            if domain and self._soft_allowed(domain):
                domains.add(domain)
        return emails, domains

    def match_positive_reply(self, reply: PositiveReplyRecord, index: SendIndex | None = None) -> MatchOutcome:
        """Positive replies are direct responses to outreach, so always hard and in window.

        The send time comes from the replying address, falling back to the
        domain, and is only used to date the first email.
        """

        email = self._normalizer.normalize_email(reply.email)
        domain = self._normalizer.event_domain(reply.company_domain, reply.email)
        replied_at = ensure_utc(reply.replied_at)
        if domain is None:
            return MatchOutcome(
                event_id=reply.prospect_id,
                event_type=EventType.POSITIVE_REPLY,
                event_time=replied_at,
                classification=MatchClassification.NO_DOMAIN,
                match_type=MatchType.NO_MATCH,
                email=email,
            )
        send_time = None
        if index is not None:
            send_time = index.by_email.get(email) if email else None
            if send_time is None and self._soft_allowed(domain):
                send_time = index.by_domain.get(domain)
            send_time = ensure_utc(send_time)
            if send_time is not None and replied_at is not None and send_time > replied_at:
                send_time = None
        return MatchOutcome(
            event_id=reply.prospect_id,
            event_type=EventType.POSITIVE_REPLY,
            event_time=replied_at,
            classification=MatchClassification.MATCHED,
            match_type=MatchType.HARD_MATCH,
            domain=domain,
            email=email,
            send_time=send_time,
            days_since_send=days_since_send(send_time, replied_at) if send_time and replied_at else None,
            is_within_window=True,
        )

    def _soft_allowed(self, domain: str) -> bool:
        return self._soft_match_enabled and domain not in self._personal_domains

    def _unmatched(
        self,
        event: ConversionEventRecord,
        classification: MatchClassification,
        *,
        domain: str | None,
        email: str | None,
        send_time=None,
    ) -> MatchOutcome:
        return MatchOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            event_time=ensure_utc(event.event_time),
            classification=classification,
            match_type=MatchType.NO_MATCH,
            domain=domain,
            email=email,
            send_time=send_time,
        )
