"""Repository abstractions for database interactions."""

from .attribution_repository import AttributionRepository, domain_state_from_record
from .processing_repository import ProcessingRepository
from .source_repository import SourceRepository, create_source_indexes
from .types import PositiveReplyRecord, SourceClientRecord

__all__ = [
    "AttributionRepository",
    "ProcessingRepository",
    "SourceRepository",
    "PositiveReplyRecord",
    "SourceClientRecord",
    "create_source_indexes",
    "domain_state_from_record",
]
