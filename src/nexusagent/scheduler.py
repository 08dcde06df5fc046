import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from nexusagent.config import Settings
from nexusagent.db import (
    DbConnection,
    get_due_tasks,
    get_task,
    log_task_run,
    update_task_after_run,
)
from nexusagent.executor import StepExecutor
from nexusagent.models import ScheduledTask
from nexusagent.scheduling import compute_next_run, validate_schedule

log = logging.getLogger(__name__)

RUN_LOG_LIMIT = 5000
LAST_RESULT_LIMIT = 2000
NOTIFY_LIMIT = 1000

Listener = Callable[[str, str], Awaitable[None] | None]


def notification_message(task: ScheduledTask, result: str) -> str:
    return f"⏰ Scheduled task #{task.id} completed:\n\n{result[:NOTIFY_LIMIT]}"


class Scheduler:
    """Polls for due tasks and runs each one through the step executor.

    A tick that is still running when the next one fires is skipped rather
    than queued, so a slow task never causes duplicate runs of itself.
    """

    def __init__(
        self, db: DbConnection, executor: StepExecutor, settings: Settings
    ) -> None:
        self._db = db
        self._executor = executor
        self._settings = settings
        self._listeners: list[Listener] = []
        self._ticking = False
        self._timer: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a ``(conversation_id, message)`` notification listener.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._loop(), name="nexusagent-scheduler")
        log.info("Scheduler started (tick every %ss)", self._settings.tick_interval)

    async def stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        try:
            await self._timer
        except asyncio.CancelledError:
            pass
        self._timer = None
        log.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self._settings.tick_interval)

    async def tick(self, now: datetime | None = None) -> int:
        """Run every due task once. Returns the number of tasks run."""
        if self._ticking:
            log.debug("Previous tick still running, skipping")
            return 0
        self._ticking = True
        try:
            due_tasks = get_due_tasks(self._db, now)
            if due_tasks:
                log.info("Found %d due task(s)", len(due_tasks))
            for task in due_tasks:
                try:
                    await self.run_task(task)
                except Exception:
                    log.exception("Scheduled task %s could not be recorded", task.id)
            return len(due_tasks)
        except Exception:
            log.exception("Scheduler tick failed")
            return 0
        finally:
            self._ticking = False

    async def run_now(self, task_id: str) -> str | None:
        """Run one task immediately, whatever its status or next run time."""
        task = get_task(self._db, task_id)
        if task is None:
            return None
        return await self.run_task(task)

    async def run_task(self, task: ScheduledTask) -> str:
        log.info("Running scheduled task %s: %s", task.id, task.prompt[:80])
        start_time = datetime.now(timezone.utc)
        conversation_id = task.conversation_id or uuid.uuid4().hex

        result_text = ""
        error_msg = None
        try:
            result_text = await self._executor.run(
                conversation_id, task.prompt, title=f"Task: {task.prompt[:40]}"
            )
        except Exception as e:
            log.warning("Scheduled task %s failed", task.id, exc_info=True)
            error_msg = str(e) or type(e).__name__
            result_text = f"Error: {error_msg}"

        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

        log_task_run(
            self._db,
            task_id=task.id,
            run_at=start_time.isoformat(),
            duration_ms=duration_ms,
            status="error" if error_msg else "success",
            result=result_text[:RUN_LOG_LIMIT],
            error=error_msg,
        )

        failed = error_msg is not None
        next_run = None
        if task.schedule_type != "once":
            try:
                validate_schedule(task.schedule_type, task.schedule_value)
                next_run = compute_next_run(
                    task.schedule_type,
                    task.schedule_value,
                    exact_cron=self._settings.exact_cron,
                )
            except ValueError:
                log.exception("Task %s has an invalid schedule", task.id)
                failed = True
        update_task_after_run(
            self._db,
            task.id,
            next_run=next_run,
            last_result=result_text[:LAST_RESULT_LIMIT],
            status="error" if failed else None,
        )

        if task.notify and task.conversation_id:
            await self._notify(task.conversation_id, notification_message(task, result_text))

        log.info("Task %s finished in %d ms", task.id, duration_ms)
        return result_text

    async def _notify(self, conversation_id: str, message: str) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(conversation_id, message)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                log.exception("Notification listener failed")
