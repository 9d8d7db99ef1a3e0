"""Processing job persistence helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.domain import ACTIVE_JOB_STATUSES, JobStatus, JobType
from app.models import EventProcessingError, ProcessingJob

from .pipeline_models import EventErrorInput, JobCheckpointInput


class ProcessingRepository:
    """Encapsulate job tracking persistence logic."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Jobs

    def create_job(
        self,
        *,
        job_type: JobType,
        client_config_id: str | None = None,
        batch_size: int = 1000,
    ) -> ProcessingJob:
        record = ProcessingJob(
            job_type=job_type.value,
            client_config_id=client_config_id,
            status=JobStatus.PENDING.value,
            batch_size=batch_size,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_job(self, job_id: str) -> ProcessingJob | None:
        return self._session.get(ProcessingJob, job_id)

    def find_active_job(
        self, *, job_type: JobType, client_config_id: str | None = None
    ) -> ProcessingJob | None:
        query = select(ProcessingJob).where(
            ProcessingJob.job_type == job_type.value,
            ProcessingJob.status.in_([status.value for status in ACTIVE_JOB_STATUSES]),
        )
        if client_config_id is None:
            query = query.where(ProcessingJob.client_config_id.is_(None))
        else:
            query = query.where(ProcessingJob.client_config_id == client_config_id)
        query = query.order_by(ProcessingJob.created_at.desc())
        return self._session.execute(query).scalars().first()

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[ProcessingJob]:
        query = select(ProcessingJob)
        if status is not None:
            query = query.where(ProcessingJob.status == status.value)
        if job_type is not None:
            query = query.where(ProcessingJob.job_type == job_type.value)
        query = query.order_by(ProcessingJob.created_at.desc()).limit(limit)
        return list(self._session.execute(query).scalars().all())

    def mark_running(
        self,
        job: ProcessingJob,
        *,
        started_at: datetime,
        total_events: int | None = None,
        progress_total: int | None = None,
    ) -> None:
        job.status = JobStatus.RUNNING.value
        if job.started_at is None:
            job.started_at = started_at
        job.last_checkpoint_at = started_at
        if total_events is not None:
            job.total_events = total_events
        if progress_total is not None:
            job.progress_total = progress_total
        job.error_message = None
        self._session.flush()

    def record_checkpoint(
        self, job: ProcessingJob, payload: JobCheckpointInput, *, checkpoint_at: datetime
    ) -> None:
        job.processed_events = payload.processed_events
        job.matched_hard = payload.matched_hard
        job.matched_soft = payload.matched_soft
        job.no_match = payload.no_match
        job.error_count = payload.error_count
        job.last_processed_event_id = payload.last_processed_event_id
        job.current_batch = payload.current_batch
        job.stats = dict(payload.stats)
        job.last_checkpoint_at = checkpoint_at
        self._session.flush()

    def record_progress(
        self,
        job: ProcessingJob,
        *,
        current: int,
        total: int,
        current_client: str | None,
        checkpoint_at: datetime,
    ) -> None:
        job.progress_current = current
        job.progress_total = total
        job.current_client = current_client
        job.last_checkpoint_at = checkpoint_at
        self._session.flush()

    def finalize_job(
        self,
        job: ProcessingJob,
        *,
        status: JobStatus,
        completed_at: datetime,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        job.status = status.value
        job.completed_at = completed_at
        job.current_client = None
        if result is not None:
            job.result = result
        job.error_message = error_message
        self._session.flush()

    # ------------------------------------------------------------------
    # Errors

    def record_event_error(self, payload: EventErrorInput) -> EventProcessingError:
        record = EventProcessingError(
            processing_job_id=payload.processing_job_id,
            client_config_id=payload.client_config_id,
            attribution_event_id=payload.attribution_event_id,
            domain=payload.domain,
            error_message=payload.error_message,
            error_stack=payload.error_stack,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def count_job_errors(self, job_id: str) -> int:
        query = (
            select(func.count())
            .select_from(EventProcessingError)
            .where(EventProcessingError.processing_job_id == job_id)
        )
        return int(self._session.execute(query).scalar_one())

    def list_job_errors(self, job_id: str, *, limit: int = 100) -> list[EventProcessingError]:
        query = (
            select(EventProcessingError)
            .where(EventProcessingError.processing_job_id == job_id)
            .order_by(EventProcessingError.created_at)
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())
