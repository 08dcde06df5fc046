from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]
ScheduleType = Literal["once", "interval", "cron"]
TaskStatus = Literal["active", "paused", "completed", "error"]
RunStatus = Literal["success", "error"]
TaskCategory = Literal[
    "SIMPLE_QA", "TOOL_TASK", "RESEARCH_TASK", "COMPLEX_REASONING", "LONG_RUNNING"
]

PLAN_ACTIONS = ("search", "browse", "http", "schedule", "memory", "final_answer")


class Conversation(BaseModel):
    id: str
    title: str | None = None
    created_at: str
    updated_at: str


class FunctionCall(BaseModel):
    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class Message(BaseModel):
    id: int | None = None
    conversation_id: str | None = None
    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    created_at: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Shape the message the way chat-completion endpoints expect it."""
        wire: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        if self.tool_call_id:
            wire["tool_call_id"] = self.tool_call_id
        return wire


class PlanStep(BaseModel):
    id: int
    title: str
    action: str
    description: str


class Plan(BaseModel):
    steps: list[PlanStep] = Field(min_length=1)


class ScheduledTask(BaseModel):
    id: str
    conversation_id: str | None = None
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    status: TaskStatus = "active"
    notify: bool = True
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    created_at: str


class TaskRunLog(BaseModel):
    id: int
    task_id: str
    run_at: str
    duration_ms: int
    status: RunStatus
    result: str | None = None
    error: str | None = None
