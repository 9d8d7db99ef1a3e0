from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from ingestion.send_index import SendIndexBuilder, SendIndexUnavailableError

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeSourceRepository:
    """In-memory send history that records how it was queried."""

    def __init__(self, by_email=None, by_domain=None, failures=0):
        self.by_email = by_email or {}
        self.by_domain = by_domain or {}
        self.failures = failures
        self.email_chunks: list[list[str]] = []
        self.domain_chunks: list[list[str]] = []
        self.resets = 0

    def _maybe_fail(self):
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("SELECT", {}, Exception("statement timeout"))

    def earliest_sends_by_email(self, client_id, emails):
        self._maybe_fail()
        self.email_chunks.append(list(emails))
        return {email: self.by_email[email] for email in emails if email in self.by_email}

    def earliest_sends_by_domain(self, client_id, domains):
        self._maybe_fail()
        self.domain_chunks.append(list(domains))
        return {domain: self.by_domain[domain] for domain in domains if domain in self.by_domain}

    def reset(self):
        self.resets += 1


def _emails(count: int) -> list[str]:
    return [f"lead{number:03d}@company{number:03d}.com" for number in range(count)]


def test_build_chunks_distinct_keys():
    """Verify 250 keys are looked up as chunks of 100, 100 and 50."""
    emails = _emails(250)
    repo = FakeSourceRepository(by_email={email: BASE for email in emails})
    builder = SendIndexBuilder(repo, chunk_size=100)

    index = builder.build("client-1", emails=emails + emails[:10], domains=[])

    assert [len(chunk) for chunk in repo.email_chunks] == [100, 100, 50]
    assert len(index.by_email) == 250
    assert repo.domain_chunks == []


def test_chunked_index_equals_single_lookup():
    """Verify chunking does not change the earliest send per key."""
    emails = _emails(250)
    history = {email: BASE + timedelta(hours=position) for position, email in enumerate(emails)}
    domains = {email.split("@")[1]: BASE - timedelta(days=1) for email in emails}

    chunked = SendIndexBuilder(FakeSourceRepository(history, domains), chunk_size=100).build(
        "client-1", emails=emails, domains=domains
    )
    single = SendIndexBuilder(FakeSourceRepository(history, domains), chunk_size=len(emails)).build(
        "client-1", emails=emails, domains=domains
    )

    assert chunked == single


def test_build_keeps_missing_keys_out_of_index():
    """Verify keys with no send history are simply absent."""
    repo = FakeSourceRepository(by_domain={"acme.com": BASE})
    index = SendIndexBuilder(repo).build("client-1", emails=["", None], domains=["acme.com", "other.io"])

    assert index.by_email == {}
    assert index.by_domain == {"acme.com": BASE}


def test_transient_failures_are_retried():
    """Verify an OperationalError resets the session and retries after a backoff."""
    repo = FakeSourceRepository(by_email={"jane@acme.com": BASE}, failures=1)
    sleeps: list[float] = []
    builder = SendIndexBuilder(repo, retry_attempts=3, backoff_schedule=(0.5, 1.0), sleep=sleeps.append)

    index = builder.build("client-1", emails=["jane@acme.com"], domains=[])

    assert index.by_email == {"jane@acme.com": BASE}
    assert repo.resets == 1
    assert sleeps == [0.5]


def test_exhausted_retries_raise_unavailable():
    """Verify a lookup that keeps failing becomes a systemic error."""
    repo = FakeSourceRepository(by_email={"jane@acme.com": BASE}, failures=5)
    sleeps: list[float] = []
    builder = SendIndexBuilder(repo, retry_attempts=2, backoff_schedule=(0.0,), sleep=sleeps.append)

    with pytest.raises(SendIndexUnavailableError, match="email lookup chunk 1 failed after 2 attempts"):
        builder.build("client-1", emails=["jane@acme.com"], domains=[])
    assert repo.resets == 2
    assert sleeps == [0.0]


def test_from_settings_uses_configured_chunk_size(test_settings):
    """Verify chunk size and retry policy come from settings."""
    test_settings.lookup_chunk_size = 2
    repo = FakeSourceRepository()
    builder = SendIndexBuilder.from_settings(repo, test_settings, sleep=lambda _: None)

    builder.build("client-1", emails=["a@x.com", "b@x.com", "c@x.com"], domains=[])

    assert [len(chunk) for chunk in repo.email_chunks] == [2, 1]
