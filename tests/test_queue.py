"""Tests for the RQ job wrappers and tick registration."""
from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

from dripline.core.config import settings
from dripline.queue import scheduler as tick_scheduler
from dripline.queue import worker

from conftest import T0


class _FakeScheduler:
    def __init__(self, existing):
        self.jobs = list(existing)
        self.cancelled = []
        self.scheduled = []
        self.runs = 0

    def get_jobs(self):
        return list(self.jobs)

    def cancel(self, job):
        self.cancelled.append(job.id)
        self.jobs.remove(job)

    def run(self):
        self.runs += 1

    def schedule(self, **kwargs):
        self.scheduled.append(kwargs)
        job = SimpleNamespace(id=kwargs["id"])
        self.jobs.append(job)
        return job


def test_schedule_tick_replaces_previous_registration():
    stale = SimpleNamespace(id=settings.scheduler_job_id)
    unrelated = SimpleNamespace(id="nightly-report")
    fake = _FakeScheduler([stale, unrelated])

    job = tick_scheduler.schedule_tick(fake)

    assert job.id == settings.scheduler_job_id
    assert fake.cancelled == [settings.scheduler_job_id]
    [registration] = fake.scheduled
    assert registration["func"] is worker.run_tick_job
    assert registration["interval"] == settings.scheduler_interval_seconds
    assert registration["repeat"] is None
    assert [j.id for j in fake.jobs] == ["nightly-report", settings.scheduler_job_id]


def test_run_scheduler_registers_the_tick_and_polls():
    fake = _FakeScheduler([])

    tick_scheduler.run_scheduler(fake)

    assert [registration["id"] for registration in fake.scheduled] == [settings.scheduler_job_id]
    assert fake.runs == 1


def test_run_tick_job_uses_a_session_and_transports(db, world, make_campaign, transports, transport, monkeypatch):
    make_campaign()

    @contextmanager
    def fake_scope():
        yield db
        db.commit()

    monkeypatch.setattr(worker, "session_scope", fake_scope)
    monkeypatch.setattr(worker, "default_transports", lambda: transports)

    result = worker.run_tick_job(now=T0)

    assert result["enrolled"] == 1
    assert result["drips"]["sent"] == 1
    assert len(transport.sent) == 1


def test_business_event_job(db, world, make_automation, transports, monkeypatch):
    make_automation("STAGE_CHANGE", trigger_type="CONTRACT_SIGNED", target_stage_id=world.booked.id)

    @contextmanager
    def fake_scope():
        yield db

    monkeypatch.setattr(worker, "session_scope", fake_scope)
    monkeypatch.setattr(worker, "default_transports", lambda: transports)

    result = worker.business_event_job(world.project.id, "CONTRACT_SIGNED")

    assert result["executed"] == 1


def test_enqueue_tick_uses_the_configured_queue(monkeypatch):
    enqueued = []

    class _Queue:
        def enqueue(self, func, **kwargs):
            enqueued.append((func, kwargs))
            return SimpleNamespace(id="job-1")

    monkeypatch.setattr(worker, "get_queue", lambda: _Queue())

    assert worker.enqueue_tick().id == "job-1"
    worker.enqueue_business_event(7, "DEPOSIT_PAID")

    assert enqueued[0][0] is worker.run_tick_job
    assert enqueued[1] == (worker.business_event_job, {"kwargs": {"project_id": 7, "trigger_type": "DEPOSIT_PAID"}})
