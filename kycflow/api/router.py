"""Aggregates the v1 route modules under ``/api/v1``."""

from __future__ import annotations

from fastapi import APIRouter

from kycflow.api.v1 import batches, health, records, stats, uploads

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(uploads.router)
api_router.include_router(batches.router)
api_router.include_router(records.router)
api_router.include_router(stats.router)
api_router.include_router(health.router)
