from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.domain import JobType, ensure_utc
from app.models import ProcessingJob
from app.repositories.attribution_repository import AttributionRepository
from app.repositories.processing_repository import ProcessingRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class JobTrigger:
    job: ProcessingJob
    should_run: bool
    resumed: bool = False


class JobService:
    """Create or reuse processing jobs for the control surface."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock
        self._jobs = ProcessingRepository(session)
        self._attribution = AttributionRepository(session)

    def trigger(self, job_type: JobType, *, client_config_id: str | None = None) -> JobTrigger:
        if job_type == JobType.SINGLE_CLIENT:
            if client_config_id is None or self._attribution.get_client_config(client_config_id) is None:
                raise LookupError(f"Unknown client config {client_config_id!r}")

        active = self._jobs.find_active_job(job_type=job_type, client_config_id=client_config_id)
        if active is not None:
            if not self.is_stale(active):
                logger.info("Job {} ({}) already active", active.id, job_type.value)
                return JobTrigger(job=active, should_run=False)
            logger.warning(
                "Job {} ({}) has not checkpointed since {}; resuming",
                active.id,
                job_type.value,
                active.last_checkpoint_at or active.created_at,
            )
            return JobTrigger(job=active, should_run=True, resumed=True)

        job = self._jobs.create_job(
            job_type=job_type,
            client_config_id=client_config_id,
            batch_size=self._settings.processing_batch_size,
        )
        logger.info("Created job {} ({})", job.id, job_type.value)
        return JobTrigger(job=job, should_run=True)

    def is_stale(self, job: ProcessingJob) -> bool:
        last_seen = ensure_utc(job.last_checkpoint_at or job.started_at or job.created_at)
        if last_seen is None:
            return True
        threshold = timedelta(minutes=self._settings.job_stale_after_minutes)
        return self._clock() - last_seen > threshold

    def commit(self) -> None:
        self._session.commit()
