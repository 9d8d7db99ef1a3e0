from __future__ import annotations

import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.domain import JobStatus
from app.models import ProcessingJob
from app.repositories.pipeline_models import EventErrorInput, JobCheckpointInput
from app.repositories.processing_repository import ProcessingRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingJobTracker:
    """Drive one persisted job through PENDING -> RUNNING -> COMPLETED/FAILED.

    Writes go through the caller's session; the caller commits at each
    checkpoint so progress is visible to pollers and survives restarts.
    """

    def __init__(
        self,
        repo: ProcessingRepository,
        job: ProcessingJob,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self._job = job
        self._clock = clock

    @property
    def job(self) -> ProcessingJob:
        return self._job

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def is_resuming(self) -> bool:
        return self._job.last_processed_event_id is not None

    @property
    def last_processed_event_id(self) -> str | None:
        return self._job.last_processed_event_id

    @property
    def current_batch(self) -> int:
        return self._job.current_batch or 0

    @property
    def saved_stats(self) -> dict[str, Any]:
        return dict(self._job.stats or {})

    @property
    def error_count(self) -> int:
        return self._job.error_count or 0

    def start(self, *, total_events: int | None = None, progress_total: int | None = None) -> None:
        if self.is_resuming:
            logger.info(
                "Resuming job {} after event {} (batch {})",
                self.job_id,
                self.last_processed_event_id,
                self.current_batch,
            )
        self._repo.mark_running(
            self._job,
            started_at=self._clock(),
            total_events=total_events,
            progress_total=progress_total,
        )

    def checkpoint(self, payload: JobCheckpointInput) -> None:
        self._repo.record_checkpoint(self._job, payload, checkpoint_at=self._clock())

    def progress(self, *, current: int, total: int, current_client: str | None) -> None:
        self._repo.record_progress(
            self._job,
            current=current,
            total=total,
            current_client=current_client,
            checkpoint_at=self._clock(),
        )

    def record_error(
        self,
        message: str,
        *,
        client_config_id: str | None = None,
        event_id: str | None = None,
        domain: str | None = None,
        exc: BaseException | None = None,
    ) -> None:
        stack = None
        if exc is not None:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._repo.record_event_error(
            EventErrorInput(
                processing_job_id=self.job_id,
                error_message=message,
                client_config_id=client_config_id,
                attribution_event_id=event_id,
                domain=domain,
                error_stack=stack,
            )
        )
        self._job.error_count = self.error_count + 1

    def complete(self, result: dict[str, Any] | None = None) -> None:
        self._repo.finalize_job(
            self._job,
            status=JobStatus.COMPLETED,
            completed_at=self._clock(),
            result=result,
        )
        logger.info("Job {} completed", self.job_id)

    def fail(self, message: str, result: dict[str, Any] | None = None) -> None:
        self._repo.finalize_job(
            self._job,
            status=JobStatus.FAILED,
            completed_at=self._clock(),
            result=result,
            error_message=message,
        )
        logger.error("Job {} failed: {}", self.job_id, message)
