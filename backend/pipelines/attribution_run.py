from __future__ import annotations

import argparse
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ContextManager
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import (
    CountingMode,
    EventType,
    JobType,
    MatchClassification,
    MatchOutcome,
    MatchType,
)
from app.models import ClientConfig, ProcessingJob
from app.repositories.pipeline_models import JobCheckpointInput
from app.repositories.source_repository import create_source_indexes
from app.services.attribution_service import AttributionService
from app.services.job_service import JobService
from app.services.status_machine import StatusMachine
from ingestion.normalize import to_conversion_event
from ingestion.send_index import SendIndexBuilder
from ingestion.service import (
    eligible_clients,
    session_scope,
    source_session_scope,
    sync_clients,
)

from .aggregator import DomainAggregator, fold_domain, group_by_domain
from .context import PipelineContext
from .job_tracker import ProcessingJobTracker
from .matcher import EventMatcher


class ClientNotFoundError(LookupError):
    """Raised when a run targets a client with no configuration."""


# Column suffixes used by the per-client counters on ``client_config``.
_COUNTER_SUFFIX = {
    EventType.SIGN_UP: ("sign_ups", "sign_ups"),
    EventType.MEETING_BOOKED: ("meetings_booked", "meetings"),
    EventType.PAYING_CUSTOMER: ("paying_customers", "paying"),
}


# Mode column on ``client_config`` deciding how each conversion type is counted.
_MODE_COLUMN = {
    EventType.SIGN_UP: "sign_ups_mode",
    EventType.MEETING_BOOKED: "meetings_mode",
    EventType.PAYING_CUSTOMER: "paying_mode",
}

_COUNT_FIELDS = (
    "total",
    "hard_match",
    "soft_match",
    "within_window",
    "outside_window",
    "not_matched",
    "counted_hard",
    "counted_soft",
    "counted_within_window",
)


def counting_modes(config: ClientConfig) -> dict[EventType, CountingMode]:
    return {
        event_type: CountingMode(getattr(config, column) or CountingMode.PER_EVENT.value)
        for event_type, column in _MODE_COLUMN.items()
    }


@dataclass(slots=True)
class EventTypeStats:
    """Event counts for one event type.

    The raw counts see every event. The ``counted_*`` values feed the client
    counters and, in per-domain mode, count each domain at most once.
    """

    total: int = 0
    hard_match: int = 0
    soft_match: int = 0
    within_window: int = 0
    outside_window: int = 0
    not_matched: int = 0
    counted_hard: int = 0
    counted_soft: int = 0
    counted_within_window: int = 0
    matched_domains: set[str] = field(default_factory=set)
    attributed_domains: set[str] = field(default_factory=set)

    def record(self, outcome: MatchOutcome, *, mode: CountingMode = CountingMode.PER_EVENT) -> None:
        self.total += 1
        if not outcome.is_matched:
            self.not_matched += 1
            return
        hard = outcome.match_type == MatchType.HARD_MATCH
        soft = outcome.match_type == MatchType.SOFT_MATCH
        if hard:
            self.hard_match += 1
        elif soft:
            self.soft_match += 1
        if outcome.is_within_window:
            self.within_window += 1
        else:
            self.outside_window += 1

        per_domain = mode == CountingMode.PER_DOMAIN and outcome.domain is not None
        if not (per_domain and outcome.domain in self.matched_domains):
            self.counted_hard += int(hard)
            self.counted_soft += int(soft)
        if outcome.is_within_window and not (per_domain and outcome.domain in self.attributed_domains):
            self.counted_within_window += 1
        if per_domain:
            self.matched_domains.add(outcome.domain)
            if outcome.is_within_window:
                self.attributed_domains.add(outcome.domain)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {name: getattr(self, name) for name in _COUNT_FIELDS}
        payload["matched_domains"] = sorted(self.matched_domains)
        payload["attributed_domains"] = sorted(self.attributed_domains)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> EventTypeStats:
        payload = payload or {}
        stats = cls(**{name: int(payload.get(name, 0)) for name in _COUNT_FIELDS})
        stats.matched_domains = set(payload.get("matched_domains") or ())
        stats.attributed_domains = set(payload.get("attributed_domains") or ())
        return stats


@dataclass(slots=True)
class ClientRunStats:
    events: dict[EventType, EventTypeStats] = field(
        default_factory=lambda: {event_type: EventTypeStats() for event_type in EventType}
    )
    classifications: dict[str, int] = field(default_factory=dict)
    processed_events: int = 0
    errors: int = 0
    domains_created: int = 0
    domains_updated: int = 0
    status_changes: int = 0
    timeline_entries: int = 0
    modes: dict[EventType, CountingMode] = field(default_factory=dict)

    def record(self, outcome: MatchOutcome) -> None:
        mode = self.modes.get(outcome.event_type, CountingMode.PER_EVENT)
        self.events[outcome.event_type].record(outcome, mode=mode)
        key = outcome.classification.value
        self.classifications[key] = self.classifications.get(key, 0) + 1
        if outcome.event_type != EventType.POSITIVE_REPLY:
            self.processed_events += 1

    def _conversions(self) -> list[EventTypeStats]:
        return [stats for event_type, stats in self.events.items() if event_type != EventType.POSITIVE_REPLY]

    @property
    def matched_hard(self) -> int:
        return sum(stats.hard_match for stats in self._conversions())

    @property
    def matched_soft(self) -> int:
        return sum(stats.soft_match for stats in self._conversions())

    @property
    def no_match(self) -> int:
        return sum(stats.not_matched for stats in self._conversions())

    @property
    def never_emailed(self) -> int:
        return self.classifications.get(MatchClassification.NO_SEND_HISTORY.value, 0)

    def client_counters(self) -> dict[str, int]:
        """Counter values keyed by ``client_config`` column name."""

        replies = self.events[EventType.POSITIVE_REPLY]
        counters = {
            "total_positive_replies": replies.total,
            "attributed_positive_replies": replies.counted_within_window,
            "hard_match_positive_replies": replies.counted_hard,
            "soft_match_positive_replies": replies.counted_soft,
        }
        for event_type, (total_suffix, short_suffix) in _COUNTER_SUFFIX.items():
            stats = self.events[event_type]
            counters[f"total_{total_suffix}"] = stats.total
            counters[f"attributed_{total_suffix}"] = stats.counted_within_window
            counters[f"hard_match_{short_suffix}"] = stats.counted_hard
            counters[f"soft_match_{short_suffix}"] = stats.counted_soft
            counters[f"outside_window_{short_suffix}"] = stats.outside_window
            counters[f"not_matched_{short_suffix}"] = stats.not_matched
        return counters

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": {event_type.value: stats.to_dict() for event_type, stats in self.events.items()},
            "classifications": dict(sorted(self.classifications.items())),
            "processed_events": self.processed_events,
            "matched_hard": self.matched_hard,
            "matched_soft": self.matched_soft,
            "no_match": self.no_match,
            "never_emailed": self.never_emailed,
            "errors": self.errors,
            "domains_created": self.domains_created,
            "domains_updated": self.domains_updated,
            "status_changes": self.status_changes,
            "timeline_entries": self.timeline_entries,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ClientRunStats:
        payload = payload or {}
        stats = cls()
        for key, value in (payload.get("events") or {}).items():
            stats.events[EventType(key)] = EventTypeStats.from_dict(value)
        stats.classifications = {key: int(value) for key, value in (payload.get("classifications") or {}).items()}
        stats.processed_events = int(payload.get("processed_events", 0))
        stats.errors = int(payload.get("errors", 0))
        stats.domains_created = int(payload.get("domains_created", 0))
        stats.domains_updated = int(payload.get("domains_updated", 0))
        stats.status_changes = int(payload.get("status_changes", 0))
        stats.timeline_entries = int(payload.get("timeline_entries", 0))
        return stats


@dataclass(slots=True)
class RunSummary:
    run_id: str
    job_id: str | None = None
    job_type: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    skipped: bool = False
    result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "skipped": self.skipped,
            "result": self.result,
        }


# ----------------------------------------------------------------------
# Single client


def _build_matcher(ctx: PipelineContext, config: ClientConfig) -> EventMatcher:
    personal = ctx.settings.personal_email_domains if config.exclude_personal_domains else ()
    return EventMatcher(
        ctx.normalizer,
        window_days=config.attribution_window_days,
        soft_match_enabled=config.soft_match_enabled,
        personal_domains=personal,
    )


def _write_domains(
    ctx: PipelineContext,
    aggregator: DomainAggregator,
    config: ClientConfig,
    outcomes: Iterable[MatchOutcome],
    stats: ClientRunStats,
    tracker: ProcessingJobTracker,
) -> None:
    for domain, group in group_by_domain(outcomes).items():
        state = fold_domain(group)
        try:
            result = aggregator.apply(config.id, state, group)
        except (SQLAlchemyError, ValueError) as exc:
            stats.errors += 1
            logger.exception("Failed to write domain {} for {}", domain, config.client_name)
            tracker.record_error(
                f"domain write failed: {exc}",
                client_config_id=config.id,
                event_id=group[0].event_id,
                domain=domain,
                exc=exc,
            )
            continue
        if result.created:
            stats.domains_created += 1
        else:
            stats.domains_updated += 1
        if result.status_changed:
            stats.status_changes += 1
        stats.timeline_entries += result.timeline_added


def _checkpoint(
    tracker: ProcessingJobTracker,
    stats: ClientRunStats,
    *,
    last_event_id: str | None,
    batch_number: int,
) -> None:
    tracker.checkpoint(
        JobCheckpointInput(
            processed_events=stats.processed_events,
            matched_hard=stats.matched_hard,
            matched_soft=stats.matched_soft,
            no_match=stats.no_match,
            error_count=tracker.error_count,
            last_processed_event_id=last_event_id,
            current_batch=batch_number,
            stats=stats.to_dict(),
        )
    )


def process_client(
    ctx: PipelineContext,
    config: ClientConfig,
    tracker: ProcessingJobTracker,
) -> ClientRunStats:
    """Match every conversion event for one client and fold results into domains.

    Commits after each batch; a resumed job continues after the last
    checkpointed event id with its saved statistics.
    """

    client_id = config.client_id
    batch_size = tracker.job.batch_size or ctx.settings.processing_batch_size
    matcher = _build_matcher(ctx, config)
    aggregator = DomainAggregator(ctx.repo, StatusMachine(ctx.repo, clock=ctx.clock))
    builder = SendIndexBuilder.from_settings(ctx.source_repo, ctx.settings, sleep=ctx.sleep)

    resuming = tracker.is_resuming
    stats = ClientRunStats.from_dict(tracker.saved_stats) if resuming else ClientRunStats()
    stats.modes = counting_modes(config)
    total_events = ctx.source_repo.count_events(client_id)
    tracker.start(total_events=total_events)
    ctx.session.commit()
    logger.info(
        "Processing {} ({} events, batch size {}, window {} days)",
        config.client_name,
        total_events,
        batch_size,
        config.attribution_window_days,
    )

    if not resuming:
        replies = ctx.source_repo.fetch_positive_replies(client_id)
        reply_emails, reply_domains = matcher.reply_lookup_keys(replies)
        reply_index = builder.build(client_id, emails=reply_emails, domains=reply_domains)
        reply_outcomes = [matcher.match_positive_reply(reply, reply_index) for reply in replies]
        for outcome in reply_outcomes:
            stats.record(outcome)
        _write_domains(ctx, aggregator, config, reply_outcomes, stats, tracker)
        ctx.session.commit()
        logger.info("Folded {} positive replies for {}", len(replies), config.client_name)

    after_id = tracker.last_processed_event_id
    batch_number = tracker.current_batch
    while True:
        rows = ctx.source_repo.fetch_event_batch(client_id, after_id=after_id, limit=batch_size)
        if not rows:
            break
        batch_number += 1

        records = []
        for row in rows:
            try:
                records.append(
                    to_conversion_event(
                        event_id=row.id,
                        event_type=row.event_type,
                        event_time=row.event_time,
                        email=row.email,
                        domain=row.domain,
                        metadata=row.event_metadata,
                    )
                )
            except ValueError as exc:
                stats.errors += 1
                logger.warning("Skipping event {}: {}", row.id, exc)
                tracker.record_error(str(exc), client_config_id=config.id, event_id=row.id)

        emails, domains = matcher.lookup_keys(records)
        index = builder.build(client_id, emails=emails, domains=domains)

        outcomes: list[MatchOutcome] = []
        for record in records:
            try:
                outcome = matcher.match(record, index)
            except Exception as exc:  # noqa: BLE001
                stats.errors += 1
                logger.exception("Matching failed for event {}", record.event_id)
                tracker.record_error(
                    f"match failed: {exc}",
                    client_config_id=config.id,
                    event_id=record.event_id,
                    exc=exc,
                )
                continue
            stats.record(outcome)
            outcomes.append(outcome)

        _write_domains(ctx, aggregator, config, outcomes, stats, tracker)

        after_id = rows[-1].id
        _checkpoint(tracker, stats, last_event_id=after_id, batch_number=batch_number)
        ctx.session.commit()
        logger.info(
            "Batch {} for {}: {}/{} events (hard={}, soft={}, none={})",
            batch_number,
            config.client_name,
            stats.processed_events,
            total_events,
            stats.matched_hard,
            stats.matched_soft,
            stats.no_match,
        )
        if len(rows) < batch_size:
            break

    counters = stats.client_counters()
    counters.update(ctx.repo.count_domain_flags(config.id))
    counters["total_emails_sent"] = ctx.source_repo.count_sent_emails(client_id)
    ctx.repo.update_client_counters(config, counters, processed_at=ctx.clock())
    _checkpoint(tracker, stats, last_event_id=after_id, batch_number=batch_number)
    ctx.session.commit()
    return stats


# ----------------------------------------------------------------------
# Job handlers


def _run_tracked(
    ctx: PipelineContext,
    job: ProcessingJob,
    body: Callable[[ProcessingJobTracker], dict[str, Any]],
) -> dict[str, Any]:
    tracker = ProcessingJobTracker(ctx.processing_repo, job, clock=ctx.clock)
    try:
        result = body(tracker)
    except Exception as exc:
        ctx.session.rollback()
        tracker.fail(str(exc) or exc.__class__.__name__)
        ctx.session.commit()
        raise
    tracker.complete(result)
    ctx.session.commit()
    return result


def run_client_job(ctx: PipelineContext, job: ProcessingJob) -> dict[str, Any]:
    config = ctx.repo.get_client_config(job.client_config_id) if job.client_config_id else None

    def _body(tracker: ProcessingJobTracker) -> dict[str, Any]:
        if config is None:
            raise ClientNotFoundError(f"Unknown client config {job.client_config_id!r}")
        stats = process_client(ctx, config, tracker)
        return {"client": config.client_name, **stats.to_dict()}

    return _run_tracked(ctx, job, _body)


def run_sync_clients_job(ctx: PipelineContext, job: ProcessingJob) -> dict[str, Any]:
    def _body(tracker: ProcessingJobTracker) -> dict[str, Any]:
        tracker.start()
        created = sync_clients(ctx.repo, ctx.source_repo, ctx.settings)
        return {"created": created, "created_count": len(created)}

    return _run_tracked(ctx, job, _body)


def run_create_indexes_job(ctx: PipelineContext, job: ProcessingJob) -> dict[str, Any]:
    def _body(tracker: ProcessingJobTracker) -> dict[str, Any]:
        tracker.start()
        ctx.session.commit()
        created = create_source_indexes(ctx.source_session.get_bind())
        logger.info("Created {} source indexes", len(created))
        return {"created": created}

    return _run_tracked(ctx, job, _body)


def run_all_clients_job(ctx: PipelineContext, job: ProcessingJob) -> dict[str, Any]:
    """Sync clients, then process each one under its own child job.

    A failing client is logged against the parent job and the run moves on.
    Clients whose own job is still checkpointing are skipped.
    """

    def _body(tracker: ProcessingJobTracker) -> dict[str, Any]:
        tracker.start()
        created = sync_clients(ctx.repo, ctx.source_repo, ctx.settings)
        ctx.session.commit()

        eligible = {client.client_id for client in eligible_clients(ctx.source_repo, ctx.settings)}
        configs = [config for config in ctx.repo.list_client_configs() if config.client_id in eligible]
        total = len(configs)
        clients: dict[str, Any] = {}
        failures: list[dict[str, str]] = []
        skipped: list[dict[str, str]] = []
        jobs = JobService(ctx.session, ctx.settings, clock=ctx.clock)
        for position, config in enumerate(configs):
            tracker.progress(current=position, total=total, current_client=config.client_name)
            trigger = jobs.trigger(JobType.SINGLE_CLIENT, client_config_id=config.id)
            jobs.commit()
            child = trigger.job
            if not trigger.should_run:
                logger.info("Skipping {}: job {} is still running", config.client_name, child.id)
                skipped.append({"client": config.client_name, "job_id": child.id})
                continue
            try:
                clients[config.client_name] = run_client_job(ctx, child)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Client {} failed during full run {}", config.client_name, tracker.job_id)
                tracker.record_error(
                    f"{config.client_name}: {exc}",
                    client_config_id=config.id,
                    exc=exc,
                )
                failures.append({"client": config.client_name, "job_id": child.id, "error": str(exc)})
                ctx.session.commit()

        confirmed = AttributionService(
            ctx.repo, ctx.settings, normalizer=ctx.normalizer, clock=ctx.clock
        ).auto_confirm_expired_reviews()
        tracker.progress(current=total, total=total, current_client=None)
        return {
            "clients_created": created,
            "clients_processed": len(clients),
            "clients_failed": len(failures),
            "clients_skipped": len(skipped),
            "reviews_auto_confirmed": len(confirmed),
            "clients": clients,
            "failures": failures,
            "skipped": skipped,
        }

    return _run_tracked(ctx, job, _body)


_HANDLERS: dict[JobType, Callable[[PipelineContext, ProcessingJob], dict[str, Any]]] = {
    JobType.SYNC_CLIENTS: run_sync_clients_job,
    JobType.SINGLE_CLIENT: run_client_job,
    JobType.FULL_PROCESS: run_all_clients_job,
    JobType.CREATE_INDEXES: run_create_indexes_job,
}


def execute_job(ctx: PipelineContext, job: ProcessingJob) -> dict[str, Any]:
    job_type = JobType(job.job_type)
    logger.info("Running job {} ({})", job.id, job_type.value)
    return _HANDLERS[job_type](ctx, job)


def run_job(
    job_id: str,
    *,
    settings: Settings | None = None,
    session_factory: Callable[[], ContextManager[Any]] | None = None,
    source_session_factory: Callable[[], ContextManager[Any]] | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, Any]:
    """Load a persisted job by id and run it to completion."""

    settings = settings or get_settings()
    session_factory = session_factory or session_scope
    source_session_factory = source_session_factory or source_session_scope
    with session_factory() as session, source_session_factory() as source_session:
        ctx = PipelineContext.build(settings, session, source_session, clock=clock, sleep=sleep)
        job = ctx.processing_repo.get_job(job_id)
        if job is None:
            raise LookupError(f"Unknown job {job_id!r}")
        return execute_job(ctx, job)


# ----------------------------------------------------------------------
# CLI


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run attribution matching for one or all clients")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument(
        "--client",
        type=str,
        default=None,
        help="Client config id or source client id to process",
    )
    target.add_argument(
        "--all",
        action="store_true",
        help="Sync clients and process every configured client",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _resolve_client(ctx: PipelineContext, value: str) -> ClientConfig:
    config = ctx.repo.get_client_config(value) or ctx.repo.get_client_config_by_client_id(value)
    if config is None:
        raise ClientNotFoundError(f"No client config matches {value!r}")
    return config


def run_attribution(
    args: argparse.Namespace,
    settings: Settings,
    *,
    session_factory: Callable[[], ContextManager[Any]] | None = None,
    source_session_factory: Callable[[], ContextManager[Any]] | None = None,
    init_db_fn: Callable[[], None] = init_db,
    clock: Callable[[], datetime] | None = None,
) -> RunSummary:
    if session_factory is None:
        init_db_fn()
        session_factory = session_scope
    source_session_factory = source_session_factory or source_session_scope

    summary = RunSummary(run_id=str(uuid4()))
    with session_factory() as session, source_session_factory() as source_session:
        ctx = PipelineContext.build(settings, session, source_session, clock=clock)
        jobs = JobService(session, settings, clock=ctx.clock)
        if args.all:
            trigger = jobs.trigger(JobType.FULL_PROCESS)
        else:
            config = _resolve_client(ctx, args.client)
            trigger = jobs.trigger(JobType.SINGLE_CLIENT, client_config_id=config.id)
        jobs.commit()

        summary.job_id = trigger.job.id
        summary.job_type = trigger.job.job_type
        if not trigger.should_run:
            logger.info("Job {} is already running; nothing to do", trigger.job.id)
            summary.skipped = True
        else:
            summary.result = execute_job(ctx, trigger.job)

    summary.completed_at = datetime.now(timezone.utc)
    logger.info("Attribution run {} finished (job {})", summary.run_id, summary.job_id)
    if args.summary_path:
        _write_summary(args.summary_path, summary)
        logger.info("Wrote run summary to {}", args.summary_path)
    return summary


def _write_summary(path: Path, summary: RunSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True, default=str) + "\n",
        encoding="utf-8",
    )


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    run_attribution(args, get_settings())


if __name__ == "__main__":
    main()
