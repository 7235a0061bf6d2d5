"""
Read side of the process-step ledger.

``query_process_steps`` lists the stays of one work in begin order.
``state_durations`` folds them into time spent per state; the open step
is measured up to ``now``.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone

from trackflow.models import db, utcnow
from trackflow.models.work import Work, WorkProcessStep
from trackflow.services.actor import Actor

logger = logging.getLogger(__name__)


def query_process_steps(work_id: str, actor: Actor) -> list[WorkProcessStep]:
    """Ledger of ``work_id``; unknown works and invisible projects yield ``[]``."""
    work = db.session.get(Work, work_id)
    if work is None or not actor.has_project_view_perm(work.project_id):
        return []
    return (
        WorkProcessStep.query
        .filter_by(work_id=work_id)
        .order_by(
            WorkProcessStep.begin_time.asc(),
            WorkProcessStep.end_time.is_(None).asc(),
            WorkProcessStep.end_time.asc(),
        )
        .all()
    )


def _naive_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; compare everything naive in UTC
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def state_durations(
    steps: list[WorkProcessStep],
    now: datetime | None = None,
) -> "OrderedDict[str, float]":
    """Seconds spent per state name, in order of first visit."""
    end_of_open = _naive_utc(now or utcnow())
    durations: OrderedDict[str, float] = OrderedDict()
    for step in steps:
        begin = _naive_utc(step.begin_time)
        end = _naive_utc(step.end_time) if step.end_time else end_of_open
        durations[step.state_name] = (
            durations.get(step.state_name, 0.0) + max((end - begin).total_seconds(), 0.0)
        )
    return durations
