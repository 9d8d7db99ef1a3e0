from __future__ import annotations

import re
from contextlib import contextmanager

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.db import SessionLocal, SourceSessionLocal
from app.repositories.attribution_repository import AttributionRepository
from app.repositories.source_repository import SourceRepository
from app.repositories.types import SourceClientRecord

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_-]+")


@contextmanager
def session_scope() -> Session:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def source_session_scope() -> Session:
    session = SourceSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def slugify(name: str) -> str:
    slug = _SLUG_STRIP_RE.sub("", name.strip().lower())
    slug = _SLUG_SPACE_RE.sub("-", slug).strip("-")
    return slug or "client"


def is_client_eligible(client: SourceClientRecord, settings: Settings) -> bool:
    if client.client_name in settings.skip_clients:
        return False
    if client.client_name in settings.always_include_clients:
        return True
    return (client.op_status or "") in settings.eligible_op_statuses


def eligible_clients(source_repo: SourceRepository, settings: Settings) -> list[SourceClientRecord]:
    return [client for client in source_repo.list_active_clients() if is_client_eligible(client, settings)]


def _unique_slug(repo: AttributionRepository, name: str) -> str:
    base = slugify(name)
    candidate = base
    suffix = 2
    while repo.slug_exists(candidate):
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def sync_clients(
    repo: AttributionRepository,
    source_repo: SourceRepository,
    settings: Settings,
) -> list[str]:
    """Create a client configuration for every eligible client that lacks one."""

    created: list[str] = []
    for client in eligible_clients(source_repo, settings):
        if repo.get_client_config_by_client_id(client.client_id) is not None:
            continue
        repo.create_client_config(
            client_id=client.client_id,
            client_name=client.client_name,
            slug=_unique_slug(repo, client.client_name),
            rev_share_rate=settings.default_rev_share_rate,
            estimated_acv=settings.default_estimated_acv,
            attribution_window_days=settings.attribution_window_days,
            billing_cycle=settings.default_billing_cycle,
            review_window_days=settings.review_window_days,
        )
        created.append(client.client_name)
        logger.info("Created client config for {}", client.client_name)

    logger.info("Client sync complete: {} created", len(created))
    return created
