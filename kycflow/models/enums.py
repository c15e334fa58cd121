from __future__ import annotations

from enum import StrEnum


class VerificationType(StrEnum):
    """Kind of identity check a record is submitted for."""

    __slots__ = ()

    PAN_KYC = "pan_kyc"
    AADHAAR_PAN = "aadhaar_pan"


class RecordState(StrEnum):
    """Lifecycle of a single identity record.

    ``pending -> processing -> verified | failed``; ``failed -> pending`` is
    the only way back in.  ``verified`` is terminal.
    """

    __slots__ = ()

    PENDING = "pending"
    PROCESSING = "processing"
    VERIFIED = "verified"
    FAILED = "failed"


class BatchStatus(StrEnum):
    __slots__ = ()

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CanonicalField(StrEnum):
    """Normalized column names, independent of a file's header text."""

    __slots__ = ()

    AADHAAR_NUMBER = "aadhaar_number"
    PAN_NUMBER = "pan_number"
    NAME = "name"
    FATHER_NAME = "father_name"
    DATE_OF_BIRTH = "date_of_birth"


class ErrorCategory(StrEnum):
    """Classification of verification-call failures."""

    __slots__ = ()

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.RATE_LIMIT_ERROR,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.NETWORK_ERROR,
    }
)
