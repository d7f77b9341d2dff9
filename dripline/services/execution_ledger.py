"""Exactly-once fence for automation side effects.

Each automation kind dedupes on its own key. The reservation row is inserted
and committed before the effect runs; whoever loses the insert skips the effect.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dripline.db import models
from dripline.db.models import AutomationType
from dripline.utils.datetime import utcnow
from dripline.utils.logger import logger


@dataclass(frozen=True)
class CommunicationKey:
    step_id: int

    def columns(self) -> dict[str, Any]:
        return {"automation_type": AutomationType.COMMUNICATION, "automation_step_id": self.step_id}


@dataclass(frozen=True)
class StageChangeKey:
    trigger_type: str

    def columns(self) -> dict[str, Any]:
        return {"automation_type": AutomationType.STAGE_CHANGE, "trigger_type": self.trigger_type}


@dataclass(frozen=True)
class CountdownKey:
    # Tenant-local calendar date, so the key cannot drift across UTC midnight.
    event_date: date
    days_before: int

    def columns(self) -> dict[str, Any]:
        return {
            "automation_type": AutomationType.COUNTDOWN,
            "event_date": self.event_date,
            "days_before": self.days_before,
        }


ExecutionKey = Union[CommunicationKey, StageChangeKey, CountdownKey]


@dataclass(frozen=True)
class ExecutionResult:
    executed: bool
    value: Any = None


def reserve(
    db: Session,
    project_id: int,
    automation_id: int,
    key: ExecutionKey,
    channel: Optional[str] = None,
) -> bool:
    """Insert the execution row. Commits; returns False if the key is taken."""

    db.add(
        models.AutomationExecution(
            project_id=project_id,
            automation_id=automation_id,
            channel=channel,
            executed_at=utcnow(),
            **key.columns(),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def try_execute(
    db: Session,
    project_id: int,
    automation_id: int,
    key: ExecutionKey,
    effect: Callable[[], Any],
    channel: Optional[str] = None,
) -> ExecutionResult:
    """Run ``effect`` at most once per key.

    If the effect raises after the reservation, the reservation stays; the
    failure is logged and re-raised, and the effect is not retried.
    """

    if not reserve(db, project_id, automation_id, key, channel):
        logger.info("Automation %s already executed for project %s (%s)", automation_id, project_id, key)
        return ExecutionResult(executed=False)

    try:
        value = effect()
    except Exception:
        logger.exception("Automation %s effect failed for project %s after reservation (%s)", automation_id, project_id, key)
        raise
    return ExecutionResult(executed=True, value=value)
