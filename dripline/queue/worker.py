"""RQ jobs and worker for the drip scheduler tick."""
from __future__ import annotations

import os
import sys
from datetime import datetime
from typing import Any

import redis
from rq import Queue, Worker

from dripline.core.config import settings
from dripline.db.session import session_scope
from dripline.services import automations, scheduler
from dripline.services.ses import default_transports
from dripline.utils.logger import configure_logging, logger

_queue: Queue | None = None


def get_queue() -> Queue:
    global _queue
    if _queue is None:
        connection = redis.Redis.from_url(settings.redis_url)
        _queue = Queue(settings.rq_queue_name, connection=connection)
    return _queue


def run_tick_job(now: datetime | None = None) -> dict[str, Any]:
    """Background job: one full scheduler tick against live transports."""

    with session_scope() as db:
        report = scheduler.run_tick(db, default_transports(), now=now)
    logger.info("Tick job finished: %s", report.as_dict()["drips"])
    return report.as_dict()


def business_event_job(project_id: int, trigger_type: str) -> dict[str, Any]:
    with session_scope() as db:
        report = automations.handle_business_event(db, project_id, trigger_type, default_transports())
    return report.as_dict()


def enqueue_tick():
    queue = get_queue()
    job = queue.enqueue(run_tick_job)
    logger.info("Enqueued tick job %s", job.id)
    return job


def enqueue_business_event(project_id: int, trigger_type: str):
    return get_queue().enqueue(business_event_job, kwargs={"project_id": project_id, "trigger_type": trigger_type})


def run_worker() -> None:
    """Entry point called by `python -m dripline.queue.worker`."""

    configure_logging()
    if (
        settings.environment == "development"
        and sys.platform == "darwin"
        and not os.environ.get("OBJC_DISABLE_INITIALIZE_FORK_SAFETY")
    ):
        logger.warning(
            "OBJC_DISABLE_INITIALIZE_FORK_SAFETY=YES is recommended on macOS to avoid fork-related crashes with RQ workers. "
            "Applying it for this process."
        )
        os.environ["OBJC_DISABLE_INITIALIZE_FORK_SAFETY"] = "YES"

    queue = get_queue()
    worker = Worker([queue], connection=queue.connection)
    worker.work()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run_worker()
