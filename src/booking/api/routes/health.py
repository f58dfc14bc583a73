"""Liveness probes. ``worker_router`` is mounted only for APP_ROLE=worker."""

from fastapi import APIRouter

public_router = APIRouter(tags=["health"])
worker_router = APIRouter(prefix="/tasks", tags=["health"])


@public_router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@worker_router.get("/health")
def tasks_health() -> dict:
    return {"status": "ok", "subsystem": "tasks"}
