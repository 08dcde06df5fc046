"""Router → Planner → Executor pipeline for one user turn.

Every turn ends with exactly one ``done`` event, whatever happened before
it; failures surface as ``error`` events rather than exceptions.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from nexusagent.config import Settings
from nexusagent.db import DbConnection, add_message, ensure_conversation
from nexusagent.events import AgentEvent, EventCallback
from nexusagent.executor import StepExecutor, conversation_title
from nexusagent.llm import LLMError
from nexusagent.models import Plan, PlanStep
from nexusagent.planner import Planner
from nexusagent.prompts import StepFocus
from nexusagent.router import classify_intent

log = logging.getLogger(__name__)

STEP_RETRIES = 1


class Pipeline:
    def __init__(
        self,
        executor: StepExecutor,
        planner: Planner,
        db: DbConnection,
        settings: Settings,
    ) -> None:
        self._executor = executor
        self._planner = planner
        self._db = db
        self._settings = settings

    async def run_turn(
        self,
        conversation_id: str,
        message: str,
        on_event: EventCallback,
        model: str | None = None,
    ) -> str:
        """Handle one user message, streaming events to *on_event*.

        Returns the last final answer text (also carried by the ``done``
        event).
        """
        answer = ""
        try:
            answer = await self._run(conversation_id, message, on_event, model)
        except Exception as e:
            log.exception("Turn failed for conversation %s", conversation_id)
            await on_event(AgentEvent("error", str(e) or type(e).__name__))
        await on_event(AgentEvent("done", answer))
        return answer

    async def stream_turn(
        self,
        conversation_id: str,
        message: str,
        model: str | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Same as :meth:`run_turn`, as an async iterator ending at ``done``."""
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        turn = asyncio.create_task(
            self.run_turn(conversation_id, message, queue.put, model)
        )
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type == "done":
                    break
            await turn
        finally:
            if not turn.done():
                turn.cancel()
                try:
                    await turn
                except asyncio.CancelledError:
                    pass

    async def _run(
        self,
        conversation_id: str,
        message: str,
        on_event: EventCallback,
        model: str | None,
    ) -> str:
        category = classify_intent(message)
        log.info("Conversation %s: classified as %s", conversation_id, category)
        await on_event(
            AgentEvent("router_result", category, payload={"taskType": category})
        )

        if category == "SIMPLE_QA":
            return await self._direct(conversation_id, message, on_event, model)

        async def on_reasoning(text: str) -> None:
            await on_event(AgentEvent("reasoning", text))

        plan = await self._planner.plan(message, category, on_reasoning=on_reasoning)
        if plan is None:
            log.info("No plan produced, running direct execution")
            return await self._direct(conversation_id, message, on_event, model)

        payload = plan.model_dump()
        await on_event(AgentEvent("timeline", json.dumps(payload), payload=payload))
        return await self._run_plan(conversation_id, message, plan, on_event, model)

    async def _direct(
        self,
        conversation_id: str,
        message: str,
        on_event: EventCallback,
        model: str | None,
    ) -> str:
        try:
            return await self._executor.run(
                conversation_id, message, on_event=on_event, model=model
            )
        except LLMError as e:
            log.error("Direct execution failed: %s", e)
            await on_event(AgentEvent("error", str(e)))
            return ""

    async def _run_plan(
        self,
        conversation_id: str,
        message: str,
        plan: Plan,
        on_event: EventCallback,
        model: str | None,
    ) -> str:
        ensure_conversation(self._db, conversation_id, conversation_title(message))
        add_message(self._db, conversation_id, "user", message)

        answer = ""
        for step in plan.steps:
            await on_event(
                AgentEvent(
                    "step_start",
                    step.title,
                    payload={"stepId": step.id, "title": step.title},
                )
            )
            result = await self._run_step(conversation_id, message, step, on_event, model)
            if result is not None:
                answer = result
        return answer

    async def _run_step(
        self,
        conversation_id: str,
        message: str,
        step: PlanStep,
        on_event: EventCallback,
        model: str | None,
    ) -> str | None:
        focus = StepFocus.from_step(step, message)
        for attempt in range(STEP_RETRIES + 1):
            try:
                return await self._executor.run(
                    conversation_id,
                    focus.instruction,
                    on_event=on_event,
                    step=focus,
                    record_user_message=False,
                    model=model,
                )
            except LLMError as e:
                if attempt < STEP_RETRIES:
                    log.warning("Step %d failed, retrying: %s", step.id, e)
                    continue
                log.error("Step %d failed after retry: %s", step.id, e)
                await on_event(
                    AgentEvent(
                        "error",
                        f'Step {step.id} ("{step.title}") failed: {e}. Continuing...',
                    )
                )
        return None
