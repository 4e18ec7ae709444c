"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery

from marketsync.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery(
    "marketsync",
    broker=broker_url,
    backend=backend_url,
    include=["marketsync.jobs.sync", "marketsync.jobs.operations"],
)
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "sync-stale-items": {
        "task": "marketsync.jobs.sync.run_sync_stale",
        "schedule": float(os.environ.get("SYNC_INTERVAL_SECONDS", "3600")),
    },
    "poll-operations": {
        "task": "marketsync.jobs.operations.run_poll_operations",
        "schedule": float(os.environ.get("OPERATION_POLL_INTERVAL_SECONDS", "30")),
    },
}


@celery_app.task(name="marketsync.jobs.sync.run_sync_stale")
def run_sync_stale_task(provider_name: str | None = None):  # pragma: no cover - executed by worker
    import asyncio

    from marketsync.jobs.sync import run_sync_stale

    return asyncio.run(run_sync_stale(provider_name))


@celery_app.task(name="marketsync.jobs.operations.run_poll_operations")
def run_poll_operations_task():  # pragma: no cover - executed by worker
    import asyncio

    from marketsync.jobs.operations import run_poll_operations

    return asyncio.run(run_poll_operations())
