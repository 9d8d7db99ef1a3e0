from __future__ import annotations

import json
from contextlib import nullcontext
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app.domain import (
    AttributionStatus,
    CountingMode,
    EventType,
    JobStatus,
    JobType,
    MatchClassification,
    MatchOutcome,
    MatchType,
)
from app.models import DomainEvent
from app.repositories import ProcessingRepository, SourceRepository, domain_state_from_record
from ingestion.send_index import SendIndexUnavailableError
from pipelines import attribution_run
from pipelines.aggregator import DomainAggregator
from pipelines.attribution_run import (
    ClientNotFoundError,
    ClientRunStats,
    run_all_clients_job,
    run_attribution,
    run_client_job,
    run_create_indexes_job,
    run_job,
    run_sync_clients_job,
)
from pipelines.context import PipelineContext

NOW = datetime(2024, 4, 1, 8, tzinfo=timezone.utc)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def scenario(seeder):
    """Send history and events covering each match outcome."""
    jane = seeder.prospect("jane@acme.com", company_domain="acme.com")
    seeder.sent(jane, _utc(2024, 1, 20))
    seeder.sent(jane, _utc(2024, 1, 1))
    bob = seeder.prospect("bob@beta.io", company_domain="beta.io")
    seeder.sent(bob, _utc(2024, 1, 1))
    seeder.prospect("carol@gamma.com", company_domain="gamma.com", positive_at=_utc(2024, 1, 5))

    seeder.event("sign_up", _utc(2024, 2, 1), email="jane@acme.com", event_id="evt-1")
    seeder.event("meeting_booked", _utc(2024, 2, 2), email="other@acme.com", event_id="evt-2")
    seeder.event("paying_customer", _utc(2024, 3, 10), email="bob@beta.io", event_id="evt-3")
    seeder.event("sign_up", _utc(2024, 2, 1), email="nobody@delta.com", event_id="evt-4")
    seeder.event("sign_up", None, email="jane@acme.com", event_id="evt-5")
    seeder.event("sign_up", _utc(2023, 12, 15), email="jane@acme.com", event_id="evt-6")
    return seeder


@pytest.fixture
def ctx(test_settings, session, source_session) -> PipelineContext:
    return PipelineContext.build(test_settings, session, source_session, clock=lambda: NOW, sleep=lambda _: None)


def _client_job(ctx, client_config):
    job = ctx.processing_repo.create_job(
        job_type=JobType.SINGLE_CLIENT,
        client_config_id=client_config.id,
        batch_size=ctx.settings.processing_batch_size,
    )
    ctx.session.commit()
    return job


def _domains(ctx, client_config) -> dict:
    return {record.domain: record for record in ctx.repo.list_domains(client_config.id)}


def _snapshot(ctx, client_config):
    ctx.session.expire_all()
    records = ctx.repo.list_domains(client_config.id)
    timeline = ctx.session.execute(select(func.count()).select_from(DomainEvent)).scalar_one()
    return (
        [(domain_state_from_record(record), record.status, record.updated_at) for record in records],
        timeline,
    )


def test_client_run_matches_and_folds_domains(ctx, scenario, client_config):
    """Verify a full client run produces one attributed domain per matched organisation."""
    job = _client_job(ctx, client_config)

    result = run_client_job(ctx, job)

    domains = _domains(ctx, client_config)
    assert sorted(domains) == ["acme.com", "beta.io", "gamma.com"]

    acme = domains["acme.com"]
    assert acme.match_type == MatchType.HARD_MATCH.value
    assert acme.status == AttributionStatus.ATTRIBUTED.value
    assert acme.has_sign_up and acme.has_meeting_booked
    assert acme.is_within_window is True
    assert acme.matched_emails == ["jane@acme.com"]
    state = domain_state_from_record(acme)
    assert state.first_email_sent_at == _utc(2024, 1, 1)
    assert state.first_event_at == _utc(2024, 2, 1)
    assert state.last_event_at == _utc(2024, 2, 2)

    beta = domains["beta.io"]
    assert beta.status == AttributionStatus.OUTSIDE_WINDOW.value
    assert beta.has_paying_customer is True
    assert beta.is_within_window is False

    gamma = domains["gamma.com"]
    assert gamma.status == AttributionStatus.ATTRIBUTED.value
    assert gamma.has_positive_reply is True

    assert result["processed_events"] == 5
    assert result["matched_hard"] == 2
    assert result["matched_soft"] == 1
    assert result["no_match"] == 2
    assert result["errors"] == 1
    assert result["domains_created"] == 3
    assert result["classifications"] == {
        "MATCHED": 4,
        "NO_SEND_HISTORY": 1,
        "SENT_AFTER_EVENT": 1,
    }


def test_client_run_updates_job_and_counters(ctx, scenario, client_config):
    """Verify the job row and client counters reflect the run."""
    job = _client_job(ctx, client_config)

    run_client_job(ctx, job)

    assert job.status == JobStatus.COMPLETED.value
    assert job.total_events == 6
    assert job.processed_events == 5
    assert (job.matched_hard, job.matched_soft, job.no_match) == (2, 1, 2)
    assert job.error_count == 1
    assert job.last_processed_event_id == "evt-6"
    assert job.current_batch == 3

    errors = ctx.processing_repo.list_job_errors(job.id)
    assert [error.attribution_event_id for error in errors] == ["evt-5"]

    config = client_config
    assert config.total_emails_sent == 3
    assert (config.total_sign_ups, config.attributed_sign_ups) == (3, 1)
    assert (config.hard_match_sign_ups, config.not_matched_sign_ups) == (1, 2)
    assert (config.total_meetings_booked, config.soft_match_meetings, config.outside_window_meetings) == (1, 1, 1)
    assert (config.total_paying_customers, config.hard_match_paying, config.outside_window_paying) == (1, 1, 1)
    assert (config.total_positive_replies, config.attributed_positive_replies) == (1, 1)
    assert config.domains_with_multiple_events == 1
    assert config.domains_with_replies == 1
    assert config.last_processed_at is not None


def test_client_run_records_timeline(ctx, scenario, client_config):
    """Verify matched events and the initial status are written to the domain timeline."""
    run_client_job(ctx, _client_job(ctx, client_config))

    acme = _domains(ctx, client_config)["acme.com"]
    events = ctx.repo.list_domain_events(acme.id)

    sources = sorted(event.event_source for event in events)
    assert sources == ["MEETING_BOOKED", "SIGN_UP", "STATUS_CHANGE"]
    sign_up = next(event for event in events if event.event_source == "SIGN_UP")
    assert sign_up.source_id == "evt-1"
    assert sign_up.event_metadata["match_type"] == "HARD_MATCH"
    assert sign_up.event_metadata["days_since_send"] == 31


def test_rerun_is_idempotent(ctx, scenario, client_config):
    """Verify a second run over unchanged events leaves every domain untouched."""
    run_client_job(ctx, _client_job(ctx, client_config))
    before = _snapshot(ctx, client_config)

    result = run_client_job(ctx, _client_job(ctx, client_config))

    assert _snapshot(ctx, client_config) == before
    assert result["domains_created"] == 0
    assert result["status_changes"] == 0
    assert result["timeline_entries"] == 0
    assert client_config.total_sign_ups == 3


def test_rerun_keeps_client_promoted_status(ctx, scenario, client_config):
    """Verify automatic reprocessing never downgrades a promoted domain."""
    run_client_job(ctx, _client_job(ctx, client_config))
    beta = _domains(ctx, client_config)["beta.io"]
    beta.status = AttributionStatus.CLIENT_PROMOTED.value
    ctx.session.commit()

    run_client_job(ctx, _client_job(ctx, client_config))

    assert _domains(ctx, client_config)["beta.io"].status == AttributionStatus.CLIENT_PROMOTED.value


def test_new_events_only_add_flags(ctx, scenario, client_config):
    """Verify a later run with more events widens the domain without resetting it."""
    run_client_job(ctx, _client_job(ctx, client_config))
    scenario.event("paying_customer", _utc(2024, 3, 20), email="jane@acme.com", event_id="evt-7")

    run_client_job(ctx, _client_job(ctx, client_config))

    acme = _domains(ctx, client_config)["acme.com"]
    assert acme.has_sign_up and acme.has_meeting_booked and acme.has_paying_customer
    assert acme.is_within_window is True
    assert domain_state_from_record(acme).last_event_at == _utc(2024, 3, 20)


def test_resume_continues_after_checkpoint(ctx, scenario, client_config):
    """Verify a resumed job skips checkpointed events and keeps its saved counts."""
    saved = ClientRunStats()
    saved.processed_events = 2
    saved.events[EventType.SIGN_UP].total = 1
    saved.events[EventType.SIGN_UP].hard_match = 1
    saved.events[EventType.SIGN_UP].within_window = 1
    saved.events[EventType.MEETING_BOOKED].total = 1
    saved.events[EventType.MEETING_BOOKED].soft_match = 1
    saved.events[EventType.MEETING_BOOKED].outside_window = 1
    job = _client_job(ctx, client_config)
    job.status = JobStatus.RUNNING.value
    job.last_processed_event_id = "evt-2"
    job.current_batch = 1
    job.stats = saved.to_dict()
    ctx.session.commit()

    result = run_client_job(ctx, job)

    assert sorted(_domains(ctx, client_config)) == ["beta.io"]
    assert result["processed_events"] == 5
    assert (result["matched_hard"], result["matched_soft"]) == (2, 1)
    assert job.current_batch == 3
    assert job.status == JobStatus.COMPLETED.value
    assert client_config.total_sign_ups == 3


def test_domain_write_failure_is_isolated(ctx, scenario, client_config, monkeypatch):
    """Verify one failing domain upsert is recorded and the run carries on."""
    original = DomainAggregator.apply

    def flaky_apply(self, client_config_id, state, outcomes=()):
        if state.domain == "beta.io":
            raise SQLAlchemyError("deadlock detected")
        return original(self, client_config_id, state, outcomes)

    monkeypatch.setattr(DomainAggregator, "apply", flaky_apply)
    job = _client_job(ctx, client_config)

    run_client_job(ctx, job)

    assert sorted(_domains(ctx, client_config)) == ["acme.com", "gamma.com"]
    assert job.status == JobStatus.COMPLETED.value
    errors = ctx.processing_repo.list_job_errors(job.id)
    assert {error.domain for error in errors} == {None, "beta.io"}


def test_unavailable_source_fails_job(ctx, scenario, client_config, monkeypatch):
    """Verify exhausted lookups fail the job without corrupting committed domains."""

    original = SourceRepository.earliest_sends_by_email

    def broken_lookup(self, client_id, emails):
        if "carol@gamma.com" in emails:
            return original(self, client_id, emails)
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(SourceRepository, "earliest_sends_by_email", broken_lookup)
    job = _client_job(ctx, client_config)

    with pytest.raises(SendIndexUnavailableError):
        run_client_job(ctx, job)

    assert job.status == JobStatus.FAILED.value
    assert "failed after 2 attempts" in job.error_message
    assert sorted(_domains(ctx, client_config)) == ["gamma.com"]


def test_unknown_client_fails_job(ctx, client_config):
    """Verify a job pointing at a deleted client config fails cleanly."""
    job = _client_job(ctx, client_config)
    job.client_config_id = None
    ctx.session.commit()

    with pytest.raises(ClientNotFoundError):
        run_client_job(ctx, job)
    assert job.status == JobStatus.FAILED.value


def test_sync_clients_job(ctx, scenario, make_seeder):
    """Verify the sync job creates configs for eligible source clients."""
    make_seeder("client-2", "Dormant Co", op_status="9 - Churned")
    job = ctx.processing_repo.create_job(job_type=JobType.SYNC_CLIENTS)

    result = run_sync_clients_job(ctx, job)

    assert result == {"created": ["Acme Outreach"], "created_count": 1}
    assert [config.client_name for config in ctx.repo.list_client_configs()] == ["Acme Outreach"]
    assert job.status == JobStatus.COMPLETED.value


def test_all_clients_job_runs_child_jobs(ctx, scenario):
    """Verify the full run syncs clients and processes each under its own job."""
    job = ctx.processing_repo.create_job(job_type=JobType.FULL_PROCESS)
    ctx.session.commit()

    result = run_all_clients_job(ctx, job)

    assert result["clients_created"] == ["Acme Outreach"]
    assert result["clients_processed"] == 1
    assert result["clients_failed"] == 0
    assert result["clients"]["Acme Outreach"]["processed_events"] == 5
    children = ctx.processing_repo.list_jobs(job_type=JobType.SINGLE_CLIENT)
    assert [child.status for child in children] == [JobStatus.COMPLETED.value]
    assert job.status == JobStatus.COMPLETED.value
    assert (job.progress_current, job.progress_total) == (1, 1)


def test_all_clients_job_continues_past_failures(ctx, scenario, make_seeder, monkeypatch):
    """Verify one failing client is logged on the parent while others complete."""
    make_seeder("client-0", "Broken Co")
    original = attribution_run.process_client

    def process_client(run_ctx, config, tracker):
        if config.client_name == "Broken Co":
            raise RuntimeError("source timeout")
        return original(run_ctx, config, tracker)

    monkeypatch.setattr(attribution_run, "process_client", process_client)
    job = ctx.processing_repo.create_job(job_type=JobType.FULL_PROCESS)
    ctx.session.commit()

    result = run_all_clients_job(ctx, job)

    assert result["clients_processed"] == 1
    assert result["clients_failed"] == 1
    assert result["failures"][0]["client"] == "Broken Co"
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_count == 1
    statuses = sorted(child.status for child in ctx.processing_repo.list_jobs(job_type=JobType.SINGLE_CLIENT))
    assert statuses == [JobStatus.COMPLETED.value, JobStatus.FAILED.value]


def _running_child(ctx, client_config, last_checkpoint_at):
    child = ctx.processing_repo.create_job(job_type=JobType.SINGLE_CLIENT, client_config_id=client_config.id)
    child.status = JobStatus.RUNNING.value
    child.started_at = last_checkpoint_at
    child.last_checkpoint_at = last_checkpoint_at
    ctx.session.commit()
    return child


def test_all_clients_job_leaves_live_child_alone(ctx, scenario, client_config):
    """Verify a client whose job is still checkpointing is skipped, not run twice."""
    child = _running_child(ctx, client_config, NOW)
    job = ctx.processing_repo.create_job(job_type=JobType.FULL_PROCESS)
    ctx.session.commit()

    result = run_all_clients_job(ctx, job)

    assert child.status == JobStatus.RUNNING.value
    assert result["clients_processed"] == 0
    assert result["clients_skipped"] == 1
    assert result["skipped"] == [{"client": "Acme Outreach", "job_id": child.id}]
    assert len(ctx.processing_repo.list_jobs(job_type=JobType.SINGLE_CLIENT)) == 1
    assert job.status == JobStatus.COMPLETED.value


def test_all_clients_job_resumes_stale_child(ctx, scenario, client_config):
    """Verify an abandoned client job is picked up and finished by the full run."""
    child = _running_child(ctx, client_config, _utc(2024, 4, 1, 6))
    job = ctx.processing_repo.create_job(job_type=JobType.FULL_PROCESS)
    ctx.session.commit()

    result = run_all_clients_job(ctx, job)

    assert child.status == JobStatus.COMPLETED.value
    assert result["clients_processed"] == 1
    assert result["skipped"] == []
    assert [item.id for item in ctx.processing_repo.list_jobs(job_type=JobType.SINGLE_CLIENT)] == [child.id]


def test_reply_domain_gets_first_send_time(ctx, seeder, client_config):
    """Verify a domain known only from a positive reply is dated by its earliest send."""
    carol = seeder.prospect("carol@gamma.com", company_domain="gamma.com", positive_at=_utc(2024, 1, 5))
    seeder.sent(carol, _utc(2024, 1, 2))

    run_client_job(ctx, _client_job(ctx, client_config))

    gamma = _domains(ctx, client_config)["gamma.com"]
    assert domain_state_from_record(gamma).first_email_sent_at == _utc(2024, 1, 2)
    assert gamma.status == AttributionStatus.ATTRIBUTED.value
    assert client_config.hard_match_positive_replies == 1
    assert client_config.soft_match_positive_replies == 0


def test_counting_modes(ctx, seeder, client_config):
    """Verify per-domain types count each domain once while per-event types count every event."""
    for name in ("ann", "ben"):
        prospect = seeder.prospect(f"{name}@acme.com", company_domain="acme.com")
        seeder.sent(prospect, _utc(2024, 1, 1))
    for event_type in ("sign_up", "paying_customer"):
        seeder.event(event_type, _utc(2024, 1, 10), email="ann@acme.com", event_id=f"{event_type}-1")
        seeder.event(event_type, _utc(2024, 1, 12), email="ben@acme.com", event_id=f"{event_type}-2")
        seeder.event(event_type, _utc(2024, 1, 15), email="cy@acme.com", event_id=f"{event_type}-3")

    run_client_job(ctx, _client_job(ctx, client_config))

    assert (client_config.sign_ups_mode, client_config.paying_mode) == ("per_event", "per_domain")
    assert client_config.total_sign_ups == 3
    assert client_config.attributed_sign_ups == 3
    assert (client_config.hard_match_sign_ups, client_config.soft_match_sign_ups) == (2, 1)
    assert client_config.total_paying_customers == 3
    assert client_config.attributed_paying_customers == 1
    assert (client_config.hard_match_paying, client_config.soft_match_paying) == (1, 0)

    client_config.sign_ups_mode = "per_domain"
    client_config.paying_mode = "per_event"
    ctx.session.commit()
    run_client_job(ctx, _client_job(ctx, client_config))

    assert (client_config.attributed_sign_ups, client_config.hard_match_sign_ups) == (1, 1)
    assert (client_config.attributed_paying_customers, client_config.hard_match_paying) == (3, 2)


def test_per_domain_counts_survive_resume():
    """Verify the domains already counted are kept in the checkpointed stats."""
    stats = ClientRunStats(modes={EventType.PAYING_CUSTOMER: CountingMode.PER_DOMAIN})
    outcome = MatchOutcome(
        event_id="evt-1",
        event_type=EventType.PAYING_CUSTOMER,
        event_time=_utc(2024, 1, 10),
        classification=MatchClassification.MATCHED,
        match_type=MatchType.HARD_MATCH,
        domain="acme.com",
        send_time=_utc(2024, 1, 1),
        is_within_window=True,
    )
    stats.record(outcome)

    resumed = ClientRunStats.from_dict(json.loads(json.dumps(stats.to_dict())))
    resumed.modes = dict(stats.modes)
    resumed.record(outcome)

    counters = resumed.client_counters()
    assert counters["total_paying_customers"] == 2
    assert counters["attributed_paying_customers"] == 1
    assert counters["hard_match_paying"] == 1


def test_create_indexes_job(ctx, source_engine):
    """Verify missing source indexes are created and existing ones skipped."""
    from app.repositories.source_repository import SOURCE_INDEXES

    SOURCE_INDEXES[0].drop(bind=source_engine)
    job = ctx.processing_repo.create_job(job_type=JobType.CREATE_INDEXES)

    result = run_create_indexes_job(ctx, job)

    assert result == {"created": [SOURCE_INDEXES[0].name]}
    assert job.status == JobStatus.COMPLETED.value


def test_run_job_loads_persisted_job(test_settings, session, source_session, scenario, client_config):
    """Verify a job can be executed by id with injected sessions."""
    job_id = ProcessingRepository(session).create_job(
        job_type=JobType.SINGLE_CLIENT, client_config_id=client_config.id
    ).id
    session.commit()

    result = run_job(
        job_id,
        settings=test_settings,
        session_factory=lambda: nullcontext(session),
        source_session_factory=lambda: nullcontext(source_session),
        clock=lambda: NOW,
        sleep=lambda _: None,
    )

    assert result["client"] == "Acme Outreach"
    with pytest.raises(LookupError):
        run_job(
            "missing",
            settings=test_settings,
            session_factory=lambda: nullcontext(session),
            source_session_factory=lambda: nullcontext(source_session),
        )


def test_cli_run_writes_summary(test_settings, session, source_session, scenario, client_config, tmp_path):
    """Verify the CLI resolves a client by source id and writes a JSON summary."""
    summary_path = tmp_path / "summary.json"
    args = attribution_run._parse_args(["--client", "client-1", "--summary-path", str(summary_path)])

    summary = run_attribution(
        args,
        test_settings,
        session_factory=lambda: nullcontext(session),
        source_session_factory=lambda: nullcontext(source_session),
        clock=lambda: NOW,
    )

    assert summary.skipped is False
    assert summary.job_type == JobType.SINGLE_CLIENT.value
    payload = json.loads(summary_path.read_text(encoding="utf-8"))
    assert payload["job_id"] == summary.job_id
    assert payload["result"]["processed_events"] == 5


def test_cli_unknown_client(test_settings, session, source_session):
    """Verify an unknown client is reported before any job is created."""
    args = attribution_run._parse_args(["--client", "nope"])

    with pytest.raises(ClientNotFoundError):
        run_attribution(
            args,
            test_settings,
            session_factory=lambda: nullcontext(session),
            source_session_factory=lambda: nullcontext(source_session),
        )


def test_cli_requires_a_target():
    """Verify one of --client or --all must be given."""
    with pytest.raises(SystemExit):
        attribution_run._parse_args([])
    with pytest.raises(SystemExit):
        attribution_run._parse_args(["--client", "x", "--all"])
