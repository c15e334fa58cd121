from kycflow.models.enums import (
    BatchStatus,
    CanonicalField,
    ErrorCategory,
    RecordState,
    VerificationType,
)
from kycflow.models.record import (
    NOT_AVAILABLE,
    ApiUsage,
    BatchStats,
    CanonicalRecord,
    NaturalKey,
    Page,
    RowRejection,
    StateCounts,
    UploadBatch,
    UploadReport,
    UserStats,
    natural_key,
)

__all__ = [
    "NOT_AVAILABLE",
    "ApiUsage",
    "BatchStats",
    "BatchStatus",
    "CanonicalField",
    "CanonicalRecord",
    "ErrorCategory",
    "NaturalKey",
    "Page",
    "RecordState",
    "RowRejection",
    "StateCounts",
    "UploadBatch",
    "UploadReport",
    "UserStats",
    "VerificationType",
    "natural_key",
]
