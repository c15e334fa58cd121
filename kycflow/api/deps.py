"""Accessors for services stored on ``app.state`` by the lifespan."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request


def _state(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialised.")
    return service


def get_ingest_engine(request: Request):
    return _state(request, "ingest_engine")


def get_record_service(request: Request):
    return _state(request, "record_service")


def get_stats(request: Request):
    return _state(request, "stats")


def get_usage(request: Request):
    return _state(request, "usage")


def get_worker(request: Request):
    return _state(request, "worker")
