"""Schedule arithmetic and the task operations exposed to callers.

These are the operations interactive callers use (the ``schedule_task``
family of capabilities, the CLI).  They write directly to the database and
are not serialised against a running scheduler tick; pausing only affects
future eligibility.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from croniter import croniter

from nexusagent.db import (
    DbConnection,
    create_task,
    delete_task,
    get_all_tasks,
    get_task,
    get_tasks_for_conversation,
    update_task,
)
from nexusagent.models import ScheduledTask

SCHEDULE_TYPES = ("once", "interval", "cron")

# Cron tasks are re-polled this far ahead unless exact computation is on;
# the next tick after that picks the task up again.
COARSE_CRON_DELAY = timedelta(minutes=1)


class ScheduleError(ValueError):
    pass


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be local time.
    """
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ScheduleError(f"Invalid ISO 8601 timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(timezone.utc)


def validate_schedule(schedule_type: str, schedule_value: str) -> None:
    if schedule_type not in SCHEDULE_TYPES:
        raise ScheduleError("schedule_type must be 'cron', 'once', or 'interval'")
    if schedule_type == "once":
        parse_timestamp(schedule_value)
    elif schedule_type == "interval":
        try:
            period = int(schedule_value)
        except ValueError as exc:
            raise ScheduleError(
                f"Interval must be a whole number of milliseconds: {schedule_value}"
            ) from exc
        if period <= 0:
            raise ScheduleError(f"Interval must be positive: {schedule_value}")
    elif not croniter.is_valid(schedule_value):
        raise ScheduleError(f"Invalid cron expression: {schedule_value}")


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    base: datetime | None = None,
    *,
    exact_cron: bool = False,
) -> str | None:
    """Compute the next run time for a scheduled task.

    Returns an ISO 8601 UTC string:
    - "once": the scheduled timestamp itself
    - "interval": *base* + the period in milliseconds
    - "cron": *base* + one minute, or the real next occurrence when
      *exact_cron* is set
    - unknown types: None
    """
    if base is None:
        base = datetime.now(timezone.utc)

    if schedule_type == "once":
        return parse_timestamp(schedule_value).isoformat()
    if schedule_type == "interval":
        return (base + timedelta(milliseconds=int(schedule_value))).isoformat()
    if schedule_type == "cron":
        if exact_cron:
            return croniter(schedule_value, base).get_next(datetime).isoformat()
        return (base + COARSE_CRON_DELAY).isoformat()
    return None


def schedule_task(
    db: DbConnection,
    *,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    conversation_id: str | None = None,
    notify: bool = True,
    exact_cron: bool = False,
) -> ScheduledTask:
    """Validate and persist a new active task.

    Raises:
        ScheduleError: if the schedule kind or value is invalid.
    """
    if not prompt.strip():
        raise ScheduleError("prompt must not be empty")
    validate_schedule(schedule_type, schedule_value)
    next_run = compute_next_run(schedule_type, schedule_value, exact_cron=exact_cron)

    task_id = uuid.uuid4().hex[:8]
    create_task(
        db,
        task_id=task_id,
        conversation_id=conversation_id,
        prompt=prompt,
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        next_run=next_run,
        notify=notify,
    )
    task = get_task(db, task_id)
    assert task is not None
    return task


def list_tasks(db: DbConnection, conversation_id: str | None = None) -> list[ScheduledTask]:
    if conversation_id is None:
        return get_all_tasks(db)
    return get_tasks_for_conversation(db, conversation_id)


def pause_task(db: DbConnection, task_id: str) -> ScheduledTask | None:
    if get_task(db, task_id) is None:
        return None
    update_task(db, task_id, status="paused")
    return get_task(db, task_id)


def resume_task(
    db: DbConnection, task_id: str, *, exact_cron: bool = False
) -> ScheduledTask | None:
    """Reactivate a paused or errored task with a freshly computed next run.

    Completed tasks cannot be resumed; schedule a new task instead.
    """
    task = get_task(db, task_id)
    if task is None:
        return None
    if task.status == "completed":
        raise ScheduleError(f"Task #{task_id} has already completed")
    validate_schedule(task.schedule_type, task.schedule_value)
    next_run = compute_next_run(
        task.schedule_type, task.schedule_value, exact_cron=exact_cron
    )
    update_task(db, task_id, status="active", next_run=next_run)
    return get_task(db, task_id)


def cancel_task(db: DbConnection, task_id: str) -> bool:
    """Delete the task and its run log. Returns False if it did not exist."""
    if get_task(db, task_id) is None:
        return False
    delete_task(db, task_id)
    return True
