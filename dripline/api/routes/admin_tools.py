"""Admin utilities for manual triggers."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dripline.db.session import get_db
from dripline.queue.worker import enqueue_business_event, enqueue_tick
from dripline.services import automations, scheduler
from dripline.services.ses import default_transports

router = APIRouter(prefix="/admin", tags=["admin"])


class BusinessEvent(BaseModel):
    project_id: int
    trigger_type: str


class TickRequest(BaseModel):
    now: datetime | None = None


@router.post("/run-tick")
def run_tick_now(payload: TickRequest | None = None, db: Session = Depends(get_db)) -> dict:
    """Run one scheduler tick synchronously."""

    now = payload.now if payload else None
    return scheduler.run_tick(db, default_transports(), now=now).as_dict()


@router.post("/enqueue-tick")
def enqueue_tick_job() -> dict[str, str]:
    """Enqueue a tick for background processing."""

    job = enqueue_tick()
    return {"job_id": job.id}


@router.post("/business-events")
def business_event(payload: BusinessEvent, db: Session = Depends(get_db)) -> dict:
    """Report an external event such as DEPOSIT_PAID; duplicates are no-ops."""

    try:
        report = automations.handle_business_event(
            db, payload.project_id, payload.trigger_type.upper(), default_transports()
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return report.as_dict()


@router.post("/business-events/enqueue")
def enqueue_business_event_job(payload: BusinessEvent) -> dict[str, str]:
    job = enqueue_business_event(payload.project_id, payload.trigger_type.upper())
    return {"job_id": job.id}
