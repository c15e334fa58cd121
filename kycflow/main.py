"""KycFlow FastAPI application entry point.

Builds the service graph on startup (record store, stats cache, provider
client, state machine, scheduler, background worker, ingest engine) and
tears it down on shutdown.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import Settings, settings
from kycflow import __version__
from kycflow.api.router import api_router
from kycflow.middleware.privacy import PrivacyHeadersMiddleware, redact_identifiers
from kycflow.services.cache import CacheManager
from kycflow.services.ingestion import IngestEngine
from kycflow.services.records import RecordService
from kycflow.services.stats import StatsAggregator
from kycflow.services.store import InMemoryRecordStore, RecordStore
from kycflow.services.usage import ApiUsageTracker
from kycflow.services.verification import (
    BatchScheduler,
    SandboxClient,
    VerificationProvider,
    VerificationStateMachine,
    VerificationWorker,
)
from kycflow.services.verification.state_machine import Sleep

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging(config: Settings = settings) -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_identifiers,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(config.log_level.upper(), logging.INFO),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    *,
    config: Settings = settings,
    store: RecordStore | None = None,
    provider: VerificationProvider | None = None,
    sleep: Sleep | None = None,
) -> FastAPI:
    """Build the application.

    Parameters
    ----------
    config:
        Settings to wire services from.
    store:
        Record store; a fresh :class:`InMemoryRecordStore` by default.
    provider:
        Verification provider; a :class:`SandboxClient` built from
        *config* by default.
    sleep:
        Delay function shared by retry backoff, status polling and the
        scheduler's inter-group pause.  Defaults to :func:`asyncio.sleep`.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _configure_logging(config)
        logger.info("app.startup", env=config.env, version=__version__)
        app.state.start_time = time.time()

        record_store = store if store is not None else InMemoryRecordStore()
        stats_cache = CacheManager.for_namespace(
            "kycflow:stats:",
            redis_url=config.redis_url or None,
        )
        stats = StatsAggregator(
            record_store,
            stats_cache,
            staleness_seconds=config.stats_staleness_seconds,
        )
        usage = ApiUsageTracker(record_store)

        owns_provider = provider is None
        verification_provider: VerificationProvider = provider or SandboxClient(
            api_key=config.sandbox_api_key,
            api_secret=config.sandbox_api_secret,
            base_url=config.sandbox_base_url,
            timeout=config.sandbox_timeout_seconds,
        )
        if owns_provider and not config.sandbox_api_key:
            logger.warning("app.sandbox_credentials_missing")

        delay_kwargs = {"sleep": sleep} if sleep is not None else {}
        state_machine = VerificationStateMachine(
            record_store,
            verification_provider,
            usage=usage,
            stats=stats,
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_seconds,
            status_poll_attempts=config.status_poll_attempts,
            status_poll_interval=config.status_poll_interval_seconds,
            **delay_kwargs,
        )
        scheduler = BatchScheduler(
            state_machine,
            batch_size=config.batch_size,
            batch_delay=config.batch_delay_seconds,
            **delay_kwargs,
        )
        worker = VerificationWorker(scheduler)
        worker.start()

        app.state.store = record_store
        app.state.stats = stats
        app.state.usage = usage
        app.state.state_machine = state_machine
        app.state.worker = worker
        app.state.ingest_engine = IngestEngine(
            record_store, max_upload_bytes=config.max_upload_bytes
        )
        app.state.record_service = RecordService(record_store, state_machine, stats)
        logger.info("app.services_initialised")

        yield

        logger.info("app.shutdown")
        await worker.stop()
        if owns_provider:
            await verification_provider.close()  # type: ignore[attr-defined]
        await stats_cache.close()
        logger.info("app.shutdown_complete")

    application = FastAPI(
        title="KycFlow API",
        description=(
            "Bulk PAN and Aadhaar-PAN verification from uploaded spreadsheets."
        ),
        version=__version__,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if not config.is_production else None,
        redoc_url="/redoc" if not config.is_production else None,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Owner-Id"],
    )
    application.add_middleware(PrivacyHeadersMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
