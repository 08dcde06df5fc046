"""Streaming chat-completion client.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint and hands the
response body to :func:`nexusagent.stream.decode_stream`.  Model names pick
the provider:

* ``ollama/<name>``  -> local Ollama server, no auth, no tool calling
* ``copilot/<name>`` -> GitHub Models, bearer token
* anything else      -> OpenRouter, bearer API key
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from nexusagent.config import Settings
from nexusagent.models import Message
from nexusagent.stream import AssistantTurn, DecodedEvent, decode_stream

log = logging.getLogger(__name__)

COPILOT_CHAT_URL = "https://models.github.ai/inference/chat/completions"

# Models known to reject tool/function definitions.
NO_TOOL_SUPPORT_PATTERNS = (
    "deepseek-r1",
    "perplexity",
    "o1-mini",
    "o1-preview",
    "o3-mini",
    "qwen/qwen3-235b-a22b:free",
)


class LLMError(Exception):
    """Network failure or non-success response from the model provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ToolsUnsupportedError(LLMError):
    """The provider refused the request because the model cannot call tools."""


@dataclass(frozen=True)
class Endpoint:
    provider: str
    url: str
    model: str
    supports_tools: bool
    headers: dict[str, str] = field(default_factory=dict)


def model_supports_tools(model: str) -> bool:
    if model.startswith("ollama/"):
        return False
    if model.startswith("copilot/"):
        return True
    lower = model.lower()
    return not any(pattern in lower for pattern in NO_TOOL_SUPPORT_PATTERNS)


def resolve_endpoint(model: str, settings: Settings) -> Endpoint:
    if model.startswith("ollama/"):
        return Endpoint(
            provider="Ollama",
            url=f"{settings.ollama_url.rstrip('/')}/v1/chat/completions",
            model=model.removeprefix("ollama/"),
            supports_tools=False,
        )

    if model.startswith("copilot/"):
        if not settings.github_token:
            raise LLMError("GitHub token not configured (NEXUSAGENT_GITHUB_TOKEN).")
        return Endpoint(
            provider="GitHub Models",
            url=COPILOT_CHAT_URL,
            model=model.removeprefix("copilot/"),
            supports_tools=True,
            headers={"Authorization": f"Bearer {settings.github_token}"},
        )

    if not settings.api_key:
        raise LLMError("OpenRouter API key not configured (NEXUSAGENT_API_KEY).")
    return Endpoint(
        provider="OpenRouter",
        url=settings.base_url,
        model=model,
        supports_tools=model_supports_tools(model),
        headers={
            "Authorization": f"Bearer {settings.api_key}",
            "HTTP-Referer": "http://localhost:3000",
            "X-Title": "NexusAgent",
        },
    )


def build_request_body(
    endpoint: Endpoint,
    messages: Sequence[Message],
    tools: Sequence[dict[str, Any]] | None,
    *,
    max_tokens: int,
    strip_tool_history: bool = False,
) -> dict[str, Any]:
    """Assemble the JSON body for a streaming completion request.

    When the model cannot use tools, tool definitions are omitted and so is
    every message that only makes sense alongside them (tool results and
    assistant turns that requested tools).
    """
    keep_tools = endpoint.supports_tools and not strip_tool_history
    wire = [
        m.to_wire()
        for m in messages
        if keep_tools or (m.role != "tool" and not m.tool_calls)
    ]
    body: dict[str, Any] = {
        "model": endpoint.model,
        "messages": wire,
        "stream": True,
        "max_tokens": max_tokens,
    }
    if keep_tools and tools:
        body["tools"] = list(tools)
    return body


class ChatClient:
    """Streaming model client; one instance per process.

    Use as an async context manager, or call :meth:`aclose` on shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            timeout=settings.request_timeout, transport=transport
        )

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        model: str | None = None,
        on_event: Callable[[DecodedEvent], Awaitable[None]] | None = None,
    ) -> AssistantTurn:
        """Run one model call and return the assembled assistant turn.

        Raises:
            LLMError: on missing credentials, network failure or a
                non-success response.
        """
        endpoint = resolve_endpoint(model or self._settings.model, self._settings)
        body = build_request_body(
            endpoint, messages, tools, max_tokens=self._settings.max_tokens
        )
        try:
            return await self._post(endpoint, body, on_event)
        except ToolsUnsupportedError:
            log.warning(
                "Model %s does not support tools, retrying without tools",
                endpoint.model,
            )
            body = build_request_body(
                endpoint,
                messages,
                None,
                max_tokens=self._settings.max_tokens,
                strip_tool_history=True,
            )
            return await self._post(endpoint, body, on_event)

    async def _post(
        self,
        endpoint: Endpoint,
        body: dict[str, Any],
        on_event: Callable[[DecodedEvent], Awaitable[None]] | None,
    ) -> AssistantTurn:
        try:
            async with self._client.stream(
                "POST", endpoint.url, json=body, headers=endpoint.headers
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", "replace")
                    if (
                        response.status_code == 404
                        and "tool use" in detail
                        and "tools" in body
                    ):
                        raise ToolsUnsupportedError(detail, response.status_code)
                    raise LLMError(
                        f"{endpoint.provider} error ({response.status_code}): {detail}",
                        response.status_code,
                    )
                return await decode_stream(response.aiter_bytes(), on_event)
        except httpx.HTTPError as exc:
            raise LLMError(f"Network error calling {endpoint.provider}: {exc}") from exc
