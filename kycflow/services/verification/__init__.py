"""Identity verification against an external KYC provider.

Public API::

    from kycflow.services.verification import (
        BatchScheduler,
        SandboxClient,
        VerificationStateMachine,
        VerificationWorker,
    )
"""

from __future__ import annotations

from kycflow.services.verification.provider import (
    Determination,
    ProviderResult,
    VerificationProvider,
    categorize_exception,
    categorize_status,
)
from kycflow.services.verification.sandbox_client import SandboxClient
from kycflow.services.verification.scheduler import (
    BatchScheduler,
    SchedulerReport,
    VerificationJob,
    VerificationWorker,
)
from kycflow.services.verification.state_machine import (
    ALLOWED_TRANSITIONS,
    VerificationOutcome,
    VerificationStateMachine,
    refresh_batch_counts,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BatchScheduler",
    "Determination",
    "ProviderResult",
    "SandboxClient",
    "SchedulerReport",
    "VerificationJob",
    "VerificationOutcome",
    "VerificationProvider",
    "VerificationStateMachine",
    "VerificationWorker",
    "categorize_exception",
    "categorize_status",
    "refresh_batch_counts",
]
