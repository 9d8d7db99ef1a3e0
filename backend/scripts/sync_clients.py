import argparse

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from app.repositories import AttributionRepository, SourceRepository
from ingestion.service import eligible_clients, session_scope, source_session_scope, sync_clients


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create client configurations for eligible source clients")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List eligible clients without writing configurations",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    with session_scope() as session, source_session_scope() as source_session:
        repo = AttributionRepository(session)
        source_repo = SourceRepository(source_session)
        if args.dry_run:
            for client in eligible_clients(source_repo, settings):
                configured = repo.get_client_config_by_client_id(client.client_id) is not None
                logger.info(
                    "{} ({}){}",
                    client.client_name,
                    client.op_status or "no status",
                    " [configured]" if configured else "",
                )
            return
        created = sync_clients(repo, source_repo, settings)

    logger.info("Created {} client configurations", len(created))


if __name__ == "__main__":
    main()
