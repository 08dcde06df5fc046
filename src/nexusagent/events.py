"""Events streamed to whoever drives a turn (chat UI, CLI, SSE endpoint)."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

EventType = Literal[
    "token",
    "reasoning",
    "tool_start",
    "tool_end",
    "error",
    "done",
    "router_result",
    "timeline",
    "step_start",
]


@dataclass(frozen=True)
class AgentEvent:
    type: EventType
    data: str = ""
    tool_name: str | None = None
    tool_args: str | None = None
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "data": self.data}
        if self.tool_name is not None:
            out["toolName"] = self.tool_name
        if self.tool_args is not None:
            out["toolArgs"] = self.tool_args
        if self.payload is not None:
            out["payload"] = self.payload
        return out

    def to_sse(self) -> str:
        """Encode as one server-sent-event frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"


EventCallback = Callable[[AgentEvent], Awaitable[None]]
