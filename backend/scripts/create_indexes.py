from loguru import logger

from app.db import source_engine
from app.repositories import create_source_indexes


def main() -> None:
    created = create_source_indexes(source_engine)
    if created:
        logger.info("Created source indexes: {}", ", ".join(created))
    else:
        logger.info("All source indexes already exist")


if __name__ == "__main__":
    main()
