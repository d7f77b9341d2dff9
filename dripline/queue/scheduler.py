"""Registers the periodic tick with rq-scheduler."""
from __future__ import annotations

import redis
from rq_scheduler import Scheduler

from dripline.core.config import settings
from dripline.queue.worker import run_tick_job
from dripline.utils.datetime import utcnow
from dripline.utils.logger import configure_logging, logger


def get_scheduler() -> Scheduler:
    connection = redis.Redis.from_url(settings.redis_url)
    return Scheduler(settings.rq_queue_name, connection=connection, interval=settings.scheduler_poll_seconds)


def schedule_tick(scheduler: Scheduler | None = None):
    """Replace any existing tick registration with one every ``scheduler_interval_seconds``."""

    scheduler = scheduler or get_scheduler()
    for job in scheduler.get_jobs():
        if job.id == settings.scheduler_job_id:
            scheduler.cancel(job)
            logger.info("Cancelled previous tick registration %s", job.id)

    job = scheduler.schedule(
        scheduled_time=utcnow(),
        func=run_tick_job,
        interval=settings.scheduler_interval_seconds,
        repeat=None,
        id=settings.scheduler_job_id,
        result_ttl=settings.scheduler_interval_seconds * 2,
    )
    logger.info("Scheduled tick %s every %ss", job.id, settings.scheduler_interval_seconds)
    return job


def run_scheduler(scheduler: Scheduler | None = None) -> None:
    """Register the tick, then keep moving due jobs onto the queue.

    RQ workers never read rq-scheduler's registry, so this process must run
    next to the workers for the tick to fire.
    """

    configure_logging()
    scheduler = scheduler or get_scheduler()
    schedule_tick(scheduler)
    scheduler.run()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run_scheduler()
