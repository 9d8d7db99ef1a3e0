from __future__ import annotations

from sqlalchemy.orm import Session

from app.domain import JobStatus, JobType
from app.repositories import AttributionRepository, ProcessingRepository

from .models import ClientConfig, EventProcessingError, ProcessingJob


def get_client_config(session: Session, client_config_id: str) -> ClientConfig | None:
    return AttributionRepository(session).get_client_config(client_config_id)


def list_client_configs(session: Session) -> list[ClientConfig]:
    return AttributionRepository(session).list_client_configs()


def get_job(session: Session, job_id: str) -> ProcessingJob | None:
    return ProcessingRepository(session).get_job(job_id)


def list_jobs(
    session: Session,
    *,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[ProcessingJob]:
    return ProcessingRepository(session).list_jobs(status=status, job_type=job_type, limit=limit)


def count_job_errors(session: Session, job_id: str) -> int:
    return ProcessingRepository(session).count_job_errors(job_id)


def list_job_errors(session: Session, job_id: str, *, limit: int = 100) -> list[EventProcessingError]:
    return ProcessingRepository(session).list_job_errors(job_id, limit=limit)
