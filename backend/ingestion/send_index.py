from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.exc import OperationalError

from app.core.config import Settings
from app.domain import SendIndex
from app.repositories.source_repository import SourceRepository


class SendIndexUnavailableError(RuntimeError):
    """Raised when a send-history lookup keeps failing after all retries."""


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _merge_minimums(target: dict[str, datetime], chunk: dict[str, datetime]) -> None:
    for key, sent_at in chunk.items():
        current = target.get(key)
        if current is None or sent_at < current:
            target[key] = sent_at


class SendIndexBuilder:
    """Load the earliest outbound send per email and per domain for one client.

    Only the distinct keys referenced by the current event batch are looked
    up, ``chunk_size`` keys per query.
    """

    def __init__(
        self,
        source_repo: SourceRepository,
        *,
        chunk_size: int = 100,
        retry_attempts: int = 3,
        backoff_schedule: Sequence[float] = (1.0, 2.0, 4.0),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source_repo = source_repo
        self._chunk_size = chunk_size
        self._retry_attempts = max(1, retry_attempts)
        self._backoff_schedule = tuple(backoff_schedule) or (1.0,)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, source_repo: SourceRepository, settings: Settings, **kwargs) -> SendIndexBuilder:
        return cls(
            source_repo,
            chunk_size=settings.lookup_chunk_size,
            retry_attempts=settings.pipeline_db_retry_attempts,
            backoff_schedule=settings.pipeline_db_retry_backoff_schedule,
            **kwargs,
        )

    def build(self, client_id: str, *, emails: Iterable[str], domains: Iterable[str]) -> SendIndex:
        unique_emails = sorted({email for email in emails if email})
        unique_domains = sorted({domain for domain in domains if domain})

        by_email = self._lookup(
            "email", unique_emails, lambda chunk: self._source_repo.earliest_sends_by_email(client_id, chunk)
        )
        by_domain = self._lookup(
            "domain", unique_domains, lambda chunk: self._source_repo.earliest_sends_by_domain(client_id, chunk)
        )
        logger.debug(
            "Send index for client {}: {}/{} emails and {}/{} domains have send history",
            client_id,
            len(by_email),
            len(unique_emails),
            len(by_domain),
            len(unique_domains),
        )
        return SendIndex(by_email=by_email, by_domain=by_domain)

    def _lookup(
        self,
        label: str,
        keys: Sequence[str],
        fetch: Callable[[Sequence[str]], dict[str, datetime]],
    ) -> dict[str, datetime]:
        index: dict[str, datetime] = {}
        for chunk_number, chunk in enumerate(_chunked(keys, self._chunk_size), start=1):
            _merge_minimums(index, self._fetch_with_retry(label, chunk_number, chunk, fetch))
        return index

    def _fetch_with_retry(
        self,
        label: str,
        chunk_number: int,
        chunk: Sequence[str],
        fetch: Callable[[Sequence[str]], dict[str, datetime]],
    ) -> dict[str, datetime]:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return fetch(chunk)
            except OperationalError as exc:
                self._source_repo.reset()
                if attempt >= self._retry_attempts:
                    raise SendIndexUnavailableError(
                        f"{label} lookup chunk {chunk_number} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = self._backoff_schedule[min(attempt - 1, len(self._backoff_schedule) - 1)]
                logger.warning(
                    "Retrying {} lookup chunk {} (attempt {}/{}) in {:.1f}s: {}",
                    label,
                    chunk_number,
                    attempt,
                    self._retry_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")
