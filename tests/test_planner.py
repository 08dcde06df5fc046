import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from nexusagent.config import Settings
from nexusagent.llm import LLMError
from nexusagent.models import PlanStep
from nexusagent.planner import Planner, parse_plan
from nexusagent.stream import AssistantTurn, ContentToken, ReasoningToken

TWO_STEPS = (
    '{"steps":[{"id":1,"title":"Search","action":"search","description":"find X"},'
    '{"id":2,"title":"Answer","action":"final_answer","description":"reply"}]}'
)


@dataclass
class FakeClient:
    turn: AssistantTurn | None = None
    error: Exception | None = None
    events: list[Any] = field(default_factory=list)
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def stream_chat(self, messages, *, tools=None, model=None, on_event=None):
        self.calls.append({"messages": messages, "tools": tools, "model": model})
        for event in self.events:
            if on_event is not None:
                await on_event(event)
        if self.error is not None:
            raise self.error
        return self.turn


def test_parse_plan_with_leading_reasoning() -> None:
    plan = parse_plan(f"First I will search, then answer.\n\n{TWO_STEPS}")

    assert plan is not None
    assert plan.steps == [
        PlanStep(id=1, title="Search", action="search", description="find X"),
        PlanStep(id=2, title="Answer", action="final_answer", description="reply"),
    ]


def test_parse_plan_with_stray_braces_in_reasoning() -> None:
    content = f"Maybe use {{curly}} things, or {{not}}.\n{TWO_STEPS}\nDone {{really}}"
    plan = parse_plan(content)
    assert plan is not None
    assert [s.id for s in plan.steps] == [1, 2]


def test_parse_plan_in_code_fence() -> None:
    plan = parse_plan(f"```json\n{TWO_STEPS}\n```")
    assert plan is not None
    assert len(plan.steps) == 2


def test_parse_plan_drops_malformed_steps() -> None:
    content = (
        '{"steps": ['
        '{"id": "1", "title": "bad id", "action": "search", "description": "d"},'
        '{"id": true, "title": "bool id", "action": "search", "description": "d"},'
        '{"id": 2, "title": "no action", "description": "d"},'
        '{"id": 3, "title": "ok", "action": "final_answer", "description": "d"}'
        "]}"
    )
    plan = parse_plan(content)
    assert plan is not None
    assert [s.id for s in plan.steps] == [3]


def test_parse_plan_falls_back_to_bare_array() -> None:
    content = (
        'Plan: [{"id": 1, "title": "Answer", "action": "final_answer", '
        '"description": "reply"}]'
    )
    plan = parse_plan(content)
    assert plan is not None
    assert plan.steps[0].action == "final_answer"


@pytest.mark.parametrize(
    "content",
    [
        "",
        "no json here",
        '{"steps": []}',
        '{"steps": [{"id": 1}]}',
        '{"steps": [1, 2, 3]',
        "[1, 2, 3]",
    ],
)
def test_parse_plan_returns_none(content: str) -> None:
    assert parse_plan(content) is None


def test_planner_streams_reasoning_without_tools(tmp_path: Path) -> None:
    client = FakeClient(
        turn=AssistantTurn(content=TWO_STEPS, reasoning="thinking"),
        events=[ReasoningToken("think"), ReasoningToken("ing"), ContentToken("{")],
    )
    settings = Settings(data=tmp_path, model="default/model", planner_model="plan/model")
    reasoning: list[str] = []

    async def on_reasoning(text: str) -> None:
        reasoning.append(text)

    plan = asyncio.run(
        Planner(client, settings).plan("find X", "RESEARCH_TASK", on_reasoning=on_reasoning)
    )

    assert plan is not None
    assert len(plan.steps) == 2
    assert reasoning == ["think", "ing"]
    call = client.calls[0]
    assert call["tools"] is None
    assert call["model"] == "plan/model"
    assert [m.role for m in call["messages"]] == ["system", "user"]
    assert "RESEARCH_TASK" in call["messages"][1].content
    assert "find X" in call["messages"][1].content


def test_planner_returns_none_on_transport_error(tmp_path: Path) -> None:
    client = FakeClient(error=LLMError("down", 503))
    plan = asyncio.run(Planner(client, Settings(data=tmp_path)).plan("x", "TOOL_TASK"))
    assert plan is None


def test_planner_returns_none_on_unparseable_output(tmp_path: Path) -> None:
    client = FakeClient(turn=AssistantTurn(content="I could not decide."))
    plan = asyncio.run(Planner(client, Settings(data=tmp_path)).plan("x", "TOOL_TASK"))
    assert plan is None
