import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from nexusagent.config import Settings
from nexusagent.db import ThreadSafeConnection, get_messages, init_db
from nexusagent.events import AgentEvent
from nexusagent.executor import StepExecutor
from nexusagent.llm import LLMError
from nexusagent.pipeline import Pipeline
from nexusagent.planner import Planner
from nexusagent.registry import CapabilityRegistry
from nexusagent.stream import AssistantTurn, ContentToken, ReasoningToken

PLAN = (
    '{"steps":[{"id":1,"title":"Search","action":"search","description":"find X"},'
    '{"id":2,"title":"Answer","action":"final_answer","description":"reply"}]}'
)


@dataclass
class ScriptedClient:
    """Planner calls (no tools) get ``plan``; executor calls pop ``answers``."""

    plan: AssistantTurn | Exception = field(
        default_factory=lambda: AssistantTurn(content=PLAN, reasoning="hmm")
    )
    answers: list[AssistantTurn | Exception] = field(default_factory=list)
    planner_calls: int = 0
    executor_calls: list[dict[str, Any]] = field(default_factory=list)

    async def stream_chat(self, messages, *, tools=None, model=None, on_event=None):
        if tools is None:
            self.planner_calls += 1
            turn = self.plan
        else:
            self.executor_calls.append({"messages": list(messages), "model": model})
            turn = self.answers.pop(0)
        if isinstance(turn, Exception):
            raise turn
        if on_event is not None:
            if turn.reasoning:
                await on_event(ReasoningToken(turn.reasoning))
            if turn.content and tools is not None:
                await on_event(ContentToken(turn.content))
        return turn


@pytest.fixture
def db(tmp_path: Path) -> ThreadSafeConnection:
    return init_db(tmp_path / "test.db")


def _pipeline(db, tmp_path: Path, client: ScriptedClient) -> Pipeline:
    settings = Settings(data=tmp_path, model="test/model")
    executor = StepExecutor(db, client, CapabilityRegistry(), settings)
    return Pipeline(executor, Planner(client, settings), db, settings)


def _run(pipeline: Pipeline, message: str, **kwargs) -> tuple[str, list[AgentEvent]]:
    events: list[AgentEvent] = []

    async def on_event(event: AgentEvent) -> None:
        events.append(event)

    answer = asyncio.run(pipeline.run_turn("c1", message, on_event, **kwargs))
    return answer, events


def _types(events: list[AgentEvent]) -> list[str]:
    return [e.type for e in events]


def test_simple_question_skips_planner(db, tmp_path) -> None:
    client = ScriptedClient(answers=[AssistantTurn(content="4")])

    answer, events = _run(_pipeline(db, tmp_path, client), "What is 2+2?")

    assert answer == "4"
    assert _types(events) == ["router_result", "token", "done"]
    assert events[0].payload == {"taskType": "SIMPLE_QA"}
    assert events[-1].data == "4"
    assert client.planner_calls == 0
    assert [m.role for m in get_messages(db, "c1")] == ["user", "assistant"]


def test_plan_runs_each_step_and_records_user_message_once(db, tmp_path) -> None:
    client = ScriptedClient(
        answers=[AssistantTurn(content="found X"), AssistantTurn(content="X is great")]
    )

    answer, events = _run(_pipeline(db, tmp_path, client), "Find the latest on X")

    assert answer == "X is great"
    assert _types(events) == [
        "router_result",
        "reasoning",
        "timeline",
        "step_start",
        "token",
        "step_start",
        "token",
        "done",
    ]
    assert events[2].payload["steps"][1]["action"] == "final_answer"
    assert [e.payload for e in events if e.type == "step_start"] == [
        {"stepId": 1, "title": "Search"},
        {"stepId": 2, "title": "Answer"},
    ]
    assert events[-1].data == "X is great"

    messages = get_messages(db, "c1")
    assert [(m.role, m.content) for m in messages] == [
        ("user", "Find the latest on X"),
        ("assistant", "found X"),
        ("assistant", "X is great"),
    ]
    final_system = client.executor_calls[1]["messages"][0].content
    assert "STEP 2: Answer" in final_system
    assert "comprehensive final answer" in final_system


def test_no_plan_falls_back_to_direct_execution(db, tmp_path) -> None:
    client = ScriptedClient(
        plan=AssistantTurn(content="I refuse to plan."),
        answers=[AssistantTurn(content="direct answer")],
    )

    answer, events = _run(_pipeline(db, tmp_path, client), "Explain monads to me")

    assert answer == "direct answer"
    assert "timeline" not in _types(events)
    assert "step_start" not in _types(events)
    assert [m.role for m in get_messages(db, "c1")] == ["user", "assistant"]


def test_planner_transport_error_falls_back(db, tmp_path) -> None:
    client = ScriptedClient(
        plan=LLMError("planner down"), answers=[AssistantTurn(content="direct")]
    )

    answer, events = _run(_pipeline(db, tmp_path, client), "Explain monads to me")

    assert answer == "direct"
    assert "error" not in _types(events)


def test_failed_step_is_retried_once_then_skipped(db, tmp_path) -> None:
    client = ScriptedClient(
        answers=[
            LLMError("boom 1"),
            LLMError("boom 2"),
            AssistantTurn(content="final"),
        ]
    )

    answer, events = _run(_pipeline(db, tmp_path, client), "Find the latest on X")

    assert answer == "final"
    errors = [e for e in events if e.type == "error"]
    assert len(errors) == 1
    assert errors[0].data.startswith('Step 1 ("Search") failed: boom 2')
    assert _types(events)[-1] == "done"
    assert len(client.executor_calls) == 3


def test_retry_succeeds_without_error_event(db, tmp_path) -> None:
    client = ScriptedClient(
        answers=[
            LLMError("flaky"),
            AssistantTurn(content="found"),
            AssistantTurn(content="final"),
        ]
    )

    answer, events = _run(_pipeline(db, tmp_path, client), "Find the latest on X")

    assert answer == "final"
    assert "error" not in _types(events)


def test_direct_transport_error_emits_error_then_done(db, tmp_path) -> None:
    client = ScriptedClient(answers=[LLMError("provider down", 502)])

    answer, events = _run(_pipeline(db, tmp_path, client), "What is 2+2?")

    assert answer == ""
    assert _types(events) == ["router_result", "error", "done"]
    assert events[1].data == "provider down"


def test_unexpected_error_emits_single_error_and_done(db, tmp_path) -> None:
    client = ScriptedClient(answers=[RuntimeError("bug")])

    _, events = _run(_pipeline(db, tmp_path, client), "What is 2+2?")

    assert _types(events) == ["router_result", "error", "done"]
    assert events[1].data == "bug"


def test_model_override_reaches_executor(db, tmp_path) -> None:
    client = ScriptedClient(answers=[AssistantTurn(content="ok")])

    _run(_pipeline(db, tmp_path, client), "What is 2+2?", model="other/model")

    assert client.executor_calls[0]["model"] == "other/model"


@pytest.mark.asyncio
async def test_stream_turn_yields_until_done(db, tmp_path) -> None:
    client = ScriptedClient(answers=[AssistantTurn(content="4")])
    pipeline = _pipeline(db, tmp_path, client)

    events = [event async for event in pipeline.stream_turn("c1", "What is 2+2?")]

    assert _types(events) == ["router_result", "token", "done"]
    assert events[-1].to_sse() == 'data: {"type": "done", "data": "4"}\n\n'
