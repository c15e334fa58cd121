"""KycFlow service layer -- ingestion, verification, stats and persistence."""

from __future__ import annotations

from kycflow.services.cache import CacheManager, InMemoryCacheBackend, RedisCacheBackend
from kycflow.services.errors import (
    DuplicateRecordError,
    FileRejectedError,
    FileTooLargeError,
    IngestionFailedError,
    InvalidTransitionError,
    KycFlowError,
    ProviderError,
    RecordNotFoundError,
)
from kycflow.services.records import RecordService
from kycflow.services.stats import StatsAggregator
from kycflow.services.store import InMemoryRecordStore, RecordStore
from kycflow.services.usage import ApiUsageTracker

__all__ = [
    "ApiUsageTracker",
    "CacheManager",
    "DuplicateRecordError",
    "FileRejectedError",
    "FileTooLargeError",
    "InMemoryCacheBackend",
    "IngestionFailedError",
    "InvalidTransitionError",
    "KycFlowError",
    "ProviderError",
    "RecordNotFoundError",
    "RecordService",
    "RecordStore",
    "RedisCacheBackend",
    "StatsAggregator",
    "InMemoryRecordStore",
]
