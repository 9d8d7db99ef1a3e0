from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.repositories.attribution_repository import AttributionRepository
from app.repositories.processing_repository import ProcessingRepository
from app.repositories.source_repository import SourceRepository
from ingestion.normalize import DomainNormalizer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PipelineContext:
    """Runtime context shared by the job handlers of one run."""

    settings: Settings
    session: Session
    source_session: Session
    repo: AttributionRepository
    source_repo: SourceRepository
    processing_repo: ProcessingRepository
    normalizer: DomainNormalizer
    clock: Callable[[], datetime] = _utcnow
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def build(
        cls,
        settings: Settings,
        session: Session,
        source_session: Session,
        *,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> PipelineContext:
        return cls(
            settings=settings,
            session=session,
            source_session=source_session,
            repo=AttributionRepository(session),
            source_repo=SourceRepository(source_session),
            processing_repo=ProcessingRepository(session),
            normalizer=DomainNormalizer.from_settings(settings),
            clock=clock or _utcnow,
            sleep=sleep or time.sleep,
        )
