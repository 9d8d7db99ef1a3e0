from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from . import crud, schemas
from .core.config import settings
from .db import engine, get_db, init_db, ping, source_engine
from .domain import AttributionStatus, JobStatus, JobType
from .repositories import AttributionRepository
from .services.attribution_service import AttributionService
from .services.billing_periods import BillingService, current_billing_period
from .services.job_service import JobService
from pipelines.attribution_run import run_job

app = FastAPI(title="Outreach Attribution API", version="0.1.0", debug=settings.debug)

JobRunner = Callable[[str], None]


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _store_health() -> tuple[bool, bool]:
    results = []
    for bind in (engine, source_engine):
        try:
            results.append(ping(bind))
        except SQLAlchemyError:
            logger.exception("Health check failed for {}", bind.url.render_as_string(hide_password=True))
            results.append(False)
    return results[0], results[1]


@app.get("/health", response_model=schemas.HealthStatus, tags=["system"])
def health(stores: tuple[bool, bool] = Depends(_store_health)):
    """Ping the engine store and the source store."""

    engine_ok, source_ok = stores
    return schemas.HealthStatus(
        status="ok" if engine_ok and source_ok else "degraded",
        engine_store=engine_ok,
        source_store=source_ok,
    )


# ----------------------------------------------------------------------
# Dependencies


def _run_job_in_background(job_id: str) -> None:
    try:
        run_job(job_id)
    except Exception:  # noqa: BLE001
        # The job row already records the failure.
        logger.exception("Background job {} failed", job_id)


def _job_runner() -> JobRunner:
    return _run_job_in_background


def _job_service(db=Depends(get_db)) -> JobService:
    return JobService(db, settings)


def _attribution_service(db=Depends(get_db)) -> AttributionService:
    return AttributionService(AttributionRepository(db), settings)


def _billing_service(db=Depends(get_db)) -> BillingService:
    return BillingService(AttributionRepository(db))


def _today():
    return datetime.now(timezone.utc).date()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# ----------------------------------------------------------------------
# Jobs


def _trigger(
    service: JobService,
    background_tasks: BackgroundTasks,
    runner: JobRunner,
    job_type: JobType,
    client_config_id: str | None = None,
) -> schemas.JobTriggerResponse:
    try:
        trigger = service.trigger(job_type, client_config_id=client_config_id)
    except LookupError as exc:
        raise _http_error(exc) from exc
    service.commit()
    if trigger.should_run:
        background_tasks.add_task(runner, trigger.job.id)
    return schemas.JobTriggerResponse(
        job_id=trigger.job.id,
        status=trigger.job.status,
        already_running=not trigger.should_run,
        resumed=trigger.resumed,
    )


@app.post("/jobs/sync-clients", response_model=schemas.JobTriggerResponse, status_code=202, tags=["jobs"])
def trigger_sync_clients(
    background_tasks: BackgroundTasks,
    service: JobService = Depends(_job_service),
    runner: JobRunner = Depends(_job_runner),
):
    """Create client configurations for newly eligible source clients."""

    return _trigger(service, background_tasks, runner, JobType.SYNC_CLIENTS)


@app.post(
    "/jobs/process-client/{client_config_id}",
    response_model=schemas.JobTriggerResponse,
    status_code=202,
    tags=["jobs"],
)
def trigger_process_client(
    client_config_id: str,
    background_tasks: BackgroundTasks,
    service: JobService = Depends(_job_service),
    runner: JobRunner = Depends(_job_runner),
):
    return _trigger(service, background_tasks, runner, JobType.SINGLE_CLIENT, client_config_id)


@app.post("/jobs/process-all", response_model=schemas.JobTriggerResponse, status_code=202, tags=["jobs"])
def trigger_process_all(
    background_tasks: BackgroundTasks,
    service: JobService = Depends(_job_service),
    runner: JobRunner = Depends(_job_runner),
):
    return _trigger(service, background_tasks, runner, JobType.FULL_PROCESS)


@app.post("/jobs/create-indexes", response_model=schemas.JobTriggerResponse, status_code=202, tags=["jobs"])
def trigger_create_indexes(
    background_tasks: BackgroundTasks,
    service: JobService = Depends(_job_service),
    runner: JobRunner = Depends(_job_runner),
):
    return _trigger(service, background_tasks, runner, JobType.CREATE_INDEXES)


@app.get("/jobs", response_model=schemas.ProcessingJobList, tags=["jobs"])
def list_jobs(
    *,
    status: Annotated[JobStatus | None, Query(description="Job status filter")] = None,
    job_type: Annotated[JobType | None, Query(description="Job type filter")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    db=Depends(get_db),
):
    jobs = crud.list_jobs(db, status=status, job_type=job_type, limit=limit)
    return schemas.ProcessingJobList(total=len(jobs), items=jobs)


@app.get("/jobs/{job_id}", response_model=schemas.ProcessingJob, tags=["jobs"])
def get_job(job_id: str, db=Depends(get_db)):
    job = crud.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    payload = schemas.ProcessingJob.model_validate(job)
    return payload.model_copy(update={"error_count": crud.count_job_errors(db, job_id)})


@app.get("/jobs/{job_id}/errors", response_model=list[schemas.JobError], tags=["jobs"])
def list_job_errors(
    job_id: str,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    db=Depends(get_db),
):
    if crud.get_job(db, job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return crud.list_job_errors(db, job_id, limit=limit)


# ----------------------------------------------------------------------
# Clients and domains


@app.get("/clients", response_model=list[schemas.ClientConfig], tags=["clients"])
def list_clients(db=Depends(get_db)):
    return crud.list_client_configs(db)


@app.get("/clients/{client_config_id}", response_model=schemas.ClientConfig, tags=["clients"])
def get_client(client_config_id: str, db=Depends(get_db)):
    config = crud.get_client_config(db, client_config_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return config


@app.get(
    "/clients/{client_config_id}/domains",
    response_model=schemas.AttributedDomainList,
    tags=["domains"],
)
def list_domains(
    client_config_id: str,
    status: Annotated[list[str] | None, Query(description="Status filter (repeatable)")] = None,
    service: AttributionService = Depends(_attribution_service),
):
    try:
        statuses = [AttributionStatus.parse(value) for value in status] if status else None
        domains = service.list_domains(client_config_id, statuses=statuses)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return schemas.AttributedDomainList(total=len(domains), items=domains)


@app.get(
    "/clients/{client_config_id}/domains/{domain}/events",
    response_model=schemas.DomainTimeline,
    tags=["domains"],
)
def domain_timeline(
    client_config_id: str,
    domain: str,
    service: AttributionService = Depends(_attribution_service),
):
    try:
        events = service.domain_timeline(client_config_id, domain)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return schemas.DomainTimeline(domain=domain, items=events)


def _write(service: AttributionService, action: Callable[[], object]):
    try:
        record = action()
    except ValueError as exc:
        raise _http_error(exc) from exc
    service.commit()
    return record


@app.post(
    "/clients/{client_config_id}/domains/manual-event",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def add_manual_event(
    client_config_id: str,
    payload: schemas.ManualEventRequest,
    service: AttributionService = Depends(_attribution_service),
):
    """Record an event reported by the client and re-evaluate the domain."""

    return _write(
        service,
        lambda: service.add_manual_event(
            client_config_id,
            domain=payload.domain,
            event_source=payload.event_source,
            event_time=payload.event_time,
            email=payload.email,
            notes=payload.notes,
            actor=payload.actor,
        ),
    )


@app.post(
    "/clients/{client_config_id}/domains/{domain}/promote",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def promote_domain(
    client_config_id: str,
    domain: str,
    payload: schemas.PromoteRequest,
    service: AttributionService = Depends(_attribution_service),
):
    return _write(
        service,
        lambda: service.promote_domain(client_config_id, domain, actor=payload.actor, notes=payload.notes),
    )


@app.post(
    "/clients/{client_config_id}/domains/{domain}/send-for-review",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def send_for_review(
    client_config_id: str,
    domain: str,
    payload: schemas.SendForReviewRequest,
    service: AttributionService = Depends(_attribution_service),
):
    return _write(
        service,
        lambda: service.send_for_review(client_config_id, domain, actor=payload.actor, notes=payload.notes),
    )


@app.post(
    "/clients/{client_config_id}/domains/{domain}/review-response",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def respond_to_review(
    client_config_id: str,
    domain: str,
    payload: schemas.ReviewResponseRequest,
    service: AttributionService = Depends(_attribution_service),
):
    return _write(
        service,
        lambda: service.respond_to_review(
            client_config_id,
            domain,
            response=payload.response,
            actor=payload.actor,
            notes=payload.notes,
        ),
    )


@app.post(
    "/clients/{client_config_id}/domains/{domain}/dispute",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def submit_dispute(
    client_config_id: str,
    domain: str,
    payload: schemas.DisputeRequest,
    service: AttributionService = Depends(_attribution_service),
):
    return _write(
        service,
        lambda: service.submit_dispute(client_config_id, domain, reason=payload.reason, actor=payload.actor),
    )


@app.post(
    "/clients/{client_config_id}/domains/{domain}/dispute/resolve",
    response_model=schemas.AttributedDomain,
    tags=["domains"],
)
def resolve_dispute(
    client_config_id: str,
    domain: str,
    payload: schemas.DisputeResolutionRequest,
    service: AttributionService = Depends(_attribution_service),
):
    return _write(
        service,
        lambda: service.resolve_dispute(
            client_config_id,
            domain,
            upheld=payload.upheld,
            actor=payload.actor,
            notes=payload.notes,
        ),
    )


@app.post(
    "/clients/{client_config_id}/reviews/auto-confirm",
    response_model=schemas.AutoConfirmResult,
    tags=["domains"],
)
def auto_confirm_reviews(
    client_config_id: str,
    service: AttributionService = Depends(_attribution_service),
    db=Depends(get_db),
):
    """Confirm reviews the client left unanswered past the response window."""

    if crud.get_client_config(db, client_config_id) is None:
        raise HTTPException(status_code=404, detail="Client not found")
    confirmed = _write(service, lambda: service.auto_confirm_expired_reviews(client_config_id=client_config_id))
    return schemas.AutoConfirmResult(confirmed=len(confirmed), domains=[record.domain for record in confirmed])


# ----------------------------------------------------------------------
# Billing


def _period_payload(period, estimate=None) -> schemas.BillingPeriod:
    return schemas.BillingPeriod(
        period_number=period.period_number,
        period_name=period.period_name,
        start_date=period.start_date,
        end_date=period.end_date,
        review_deadline=period.review_deadline,
        status=period.status.value,
        estimated_revenue=estimate.estimated_revenue if estimate else None,
        amount_owed=estimate.amount_owed if estimate else None,
        billable_domains=estimate.billable_domains if estimate else None,
    )


@app.get(
    "/clients/{client_config_id}/billing-periods",
    response_model=schemas.BillingPeriodList,
    tags=["billing"],
)
def list_billing_periods(
    client_config_id: str,
    service: BillingService = Depends(_billing_service),
    db=Depends(get_db),
):
    """Reconciliation periods from contract start, with auto-bill estimates for overdue ones."""

    config = crud.get_client_config(db, client_config_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Client not found")
    today = _today()
    periods = service.periods_for_client(client_config_id, today=today)
    estimates = service.auto_bill_estimates(client_config_id, today=today)
    return schemas.BillingPeriodList(
        client_config_id=client_config_id,
        billing_cycle=config.billing_cycle,
        items=[_period_payload(period, estimates.get(period.period_number)) for period in periods],
    )


@app.get(
    "/clients/{client_config_id}/billing-periods/current",
    response_model=schemas.BillingPeriod,
    tags=["billing"],
)
def get_current_billing_period(
    client_config_id: str,
    service: BillingService = Depends(_billing_service),
):
    try:
        periods = service.periods_for_client(client_config_id, today=_today())
    except LookupError as exc:
        raise _http_error(exc) from exc
    period = current_billing_period(periods)
    if period is None:
        raise HTTPException(status_code=404, detail="Client has no contract start date")
    return _period_payload(period)
