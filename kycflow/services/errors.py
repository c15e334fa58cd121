"""Exceptions raised by the ingestion and verification services.

Row-level problems are reported as :class:`~kycflow.models.RowRejection`
values; only whole-file and infrastructure problems are exceptions.
"""

from __future__ import annotations

from kycflow.models.enums import ErrorCategory, RecordState


class KycFlowError(Exception):
    """Base class for service-level failures."""


class FileRejectedError(KycFlowError):
    """The whole submission is refused before any record is written."""

    def __init__(self, message: str, *, detected_columns: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detected_columns = detected_columns or []


class FileTooLargeError(FileRejectedError):
    pass


class IngestionFailedError(KycFlowError):
    """Bulk insert or another infrastructure step failed; nothing was applied."""


class DuplicateRecordError(KycFlowError):
    """The record store refused an insert that would break key uniqueness."""

    def __init__(self, keys: list[tuple[str, ...]]) -> None:
        super().__init__(f"{len(keys)} natural key(s) already exist")
        self.keys = keys


class RecordNotFoundError(KycFlowError):
    pass


class InvalidTransitionError(KycFlowError):
    def __init__(self, current: RecordState, target: RecordState) -> None:
        super().__init__(f"cannot move record from {current} to {target}")
        self.current = current
        self.target = target


class ProviderError(KycFlowError):
    """A call to the verification provider failed.

    ``category`` decides retry eligibility (see :attr:`ErrorCategory.retryable`).
    """

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category.retryable
