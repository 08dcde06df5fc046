"""Tool-calling loop shared by chat turns, plan steps and scheduled tasks."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from nexusagent.config import Settings
from nexusagent.db import (
    DbConnection,
    add_message,
    ensure_conversation,
    get_recent_messages,
)
from nexusagent.events import AgentEvent, EventCallback
from nexusagent.models import Message
from nexusagent.prompts import StepFocus, build_system_prompt, load_skills, read_memory
from nexusagent.registry import CapabilityRegistry, ToolContext
from nexusagent.stream import (
    AssistantTurn,
    ContentToken,
    DecodedEvent,
    ReasoningToken,
)

log = logging.getLogger(__name__)

LIMIT_NOTICE = "\n\n[Reached maximum tool call limit. Stopping here.]"


class ChatModel(Protocol):
    async def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        model: str | None = None,
        on_event: Any = None,
    ) -> AssistantTurn: ...


def conversation_title(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class StepExecutor:
    """Runs the model/tool loop for one prompt against one conversation.

    Every assistant and tool message is written to the database as soon as
    it exists, so an interrupted run leaves a replayable history.  Model
    transport errors (:class:`nexusagent.llm.LLMError`) propagate to the
    caller; failed tool calls do not, they are fed back to the model.
    """

    def __init__(
        self,
        db: DbConnection,
        client: ChatModel,
        registry: CapabilityRegistry,
        settings: Settings,
    ) -> None:
        self._db = db
        self._client = client
        self._registry = registry
        self._settings = settings

    def system_prompt(self, step: StepFocus | None = None) -> str:
        return build_system_prompt(
            memory=read_memory(self._settings.memory_path),
            catalogue=self._registry.catalogue(),
            skills=load_skills(self._settings.skills_dir),
            step=step,
        )

    async def run(
        self,
        conversation_id: str,
        prompt: str,
        *,
        on_event: EventCallback | None = None,
        step: StepFocus | None = None,
        record_user_message: bool = True,
        model: str | None = None,
        title: str | None = None,
    ) -> str:
        """Run the loop and return the final answer text.

        With ``record_user_message=False`` the caller has already stored the
        user turn (plan steps share one recorded request).
        """

        async def emit(event: AgentEvent) -> None:
            if on_event is not None:
                await on_event(event)

        async def forward(event: DecodedEvent) -> None:
            if isinstance(event, ContentToken):
                await emit(AgentEvent("token", event.text))
            elif isinstance(event, ReasoningToken):
                await emit(AgentEvent("reasoning", event.text))

        if record_user_message:
            ensure_conversation(
                self._db, conversation_id, title or conversation_title(prompt)
            )
            add_message(self._db, conversation_id, "user", prompt)

        history = [Message(role="system", content=self.system_prompt(step))]
        history.extend(
            get_recent_messages(
                self._db, conversation_id, self._settings.history_limit
            )
        )
        tools = self._registry.list_definitions()
        context = ToolContext(conversation_id=conversation_id)
        model = model or self._settings.resolve_executor_model()

        turn = AssistantTurn()
        for iteration in range(1, self._settings.max_tool_loops + 1):
            log.debug(
                "Conversation %s: model call %d with %d messages",
                conversation_id,
                iteration,
                len(history),
            )
            turn = await self._client.stream_chat(
                history, tools=tools, model=model, on_event=forward
            )

            add_message(
                self._db, conversation_id, "assistant", turn.content, turn.tool_calls
            )
            history.append(
                Message(role="assistant", content=turn.content, tool_calls=turn.tool_calls)
            )

            if not turn.tool_calls:
                return turn.content or ""

            for call in turn.tool_calls:
                name = call.function.name
                await emit(
                    AgentEvent(
                        "tool_start",
                        name,
                        tool_name=name,
                        tool_args=call.function.arguments,
                    )
                )
                result = await self._registry.dispatch(
                    name, call.function.arguments, context
                )
                if not result.success:
                    log.info("Tool %s failed: %s", name, result.result[:200])
                await emit(AgentEvent("tool_end", result.result, tool_name=name))

                add_message(
                    self._db, conversation_id, "tool", result.result, tool_call_id=call.id
                )
                history.append(
                    Message(role="tool", content=result.result, tool_call_id=call.id)
                )

        log.warning(
            "Conversation %s hit the tool loop limit (%d)",
            conversation_id,
            self._settings.max_tool_loops,
        )
        await emit(AgentEvent("token", LIMIT_NOTICE))
        return (turn.content or "") + LIMIT_NOTICE
