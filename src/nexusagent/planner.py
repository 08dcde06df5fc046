"""Plan generator, the second pipeline stage.

One model call without tools: the model streams its reasoning and then
emits a ``{"steps": [...]}`` JSON object.  Anything that goes wrong,
transport or parsing, yields ``None`` and the caller falls back to a single
direct executor run.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from nexusagent.config import Settings
from nexusagent.executor import ChatModel
from nexusagent.llm import LLMError
from nexusagent.models import Message, Plan, PlanStep
from nexusagent.prompts import PLANNER_SYSTEM_PROMPT, planner_user_prompt
from nexusagent.stream import DecodedEvent, ReasoningToken

log = logging.getLogger(__name__)

_STEPS_OBJECT_RE = re.compile(r'\{[\s\S]*"steps"\s*:\s*\[[\s\S]*\]\s*\}')
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_START_RE = re.compile(r"\{")


def _valid_steps(items: Any) -> list[PlanStep]:
    if not isinstance(items, list):
        return []
    steps = []
    for item in items:
        if not isinstance(item, dict):
            continue
        step_id = item.get("id")
        if isinstance(step_id, bool) or not isinstance(step_id, int):
            continue
        if not all(
            isinstance(item.get(key), str) for key in ("title", "action", "description")
        ):
            continue
        steps.append(
            PlanStep(
                id=step_id,
                title=item["title"],
                action=item["action"],
                description=item["description"],
            )
        )
    return steps


def _first_steps_object(content: str) -> dict[str, Any] | None:
    match = _STEPS_OBJECT_RE.search(content)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and "steps" in parsed:
            return parsed

    # Greedy match swallowed stray braces from the reasoning text; decode
    # object by object instead.
    decoder = json.JSONDecoder()
    for start in _OBJECT_START_RE.finditer(content):
        try:
            parsed, _ = decoder.raw_decode(content, start.start())
        except ValueError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("steps"), list):
            return parsed
    return None


def parse_plan(content: str) -> Plan | None:
    """Extract a plan from the planner's assembled output text."""
    obj = _first_steps_object(content)
    if obj is not None:
        steps = _valid_steps(obj.get("steps"))
        if steps:
            return Plan(steps=steps)

    match = _ARRAY_RE.search(content)
    if match:
        try:
            steps = _valid_steps(json.loads(match.group(0)))
        except ValueError:
            steps = []
        if steps:
            return Plan(steps=steps)

    log.warning("Could not parse a plan from planner output: %r", content[:500])
    return None


class Planner:
    def __init__(self, client: ChatModel, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    async def plan(
        self,
        message: str,
        category: str,
        *,
        on_reasoning: Callable[[str], Awaitable[None]] | None = None,
        model: str | None = None,
    ) -> Plan | None:
        async def forward(event: DecodedEvent) -> None:
            if isinstance(event, ReasoningToken) and on_reasoning is not None:
                await on_reasoning(event.text)

        messages = [
            Message(role="system", content=PLANNER_SYSTEM_PROMPT),
            Message(role="user", content=planner_user_prompt(message, category)),
        ]
        try:
            turn = await self._client.stream_chat(
                messages,
                tools=None,
                model=model or self._settings.resolve_planner_model(),
                on_event=forward,
            )
        except LLMError as exc:
            log.error("Planner call failed: %s", exc)
            return None

        return parse_plan(turn.content or "")
