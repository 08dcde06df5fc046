import html
import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from textwrap import dedent
from urllib.parse import urlparse

import httpx

from nexusagent import scheduling
from nexusagent.config import Settings
from nexusagent.db import DbConnection
from nexusagent.models import ScheduledTask
from nexusagent.prompts import read_memory
from nexusagent.registry import (
    Capability,
    CapabilityArgs,
    CapabilityRegistry,
    CapabilityResult,
    ToolContext,
    capability,
)

log = logging.getLogger(__name__)

HTTP_TIMEOUT = 30.0
HTTP_RESPONSE_LIMIT = 10000
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_RESULTS = 20
BROWSE_DEFAULT_CHARS = 20000
BROWSE_MIN_CHARS = 100
BROWSER_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36"

_SCRIPT_RE = re.compile(r"<(head|script|style|noscript)\b[\s\S]*?</\1\s*>", re.I)
_BLOCK_RE = re.compile(r"<\s*(br|/p|/div|/li|/h[1-6]|/tr|/section|/article)\b[^>]*>", re.I)
_TAG_RE = re.compile(r"<[^>]+>")
_TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.I)


class ScheduleTaskArgs(CapabilityArgs):
    prompt: str
    schedule_type: str
    schedule_value: str
    notify: bool = True


class ListTasksArgs(CapabilityArgs):
    all: bool = False


class TaskIdArgs(CapabilityArgs):
    task_id: str


class WriteMemoryArgs(CapabilityArgs):
    content: str


class HttpRequestArgs(CapabilityArgs):
    url: str
    method: str = "GET"
    headers: str | dict[str, str] | None = None
    body: str | None = None


class WebSearchArgs(CapabilityArgs):
    query: str
    count: int | None = None


class BrowsePageArgs(CapabilityArgs):
    url: str
    max_chars: int | None = None


_TASK_ID_SCHEMA = {
    "type": "object",
    "properties": {
        "task_id": {"type": "string", "description": "The task ID."},
    },
    "required": ["task_id"],
}


def _format_task(task: ScheduledTask, *, show_conversation: bool = False) -> str:
    line = f"- **Task #{task.id}** [{task.status.upper()}]"
    if show_conversation:
        line += f" (conversation {task.conversation_id or 'none'})"
    return (
        f"{line}\n"
        f'  Prompt: "{task.prompt}"\n'
        f"  Type: {task.schedule_type} ({task.schedule_value})\n"
        f"  Next run: {task.next_run or 'N/A'}\n"
        f"  Last run: {task.last_run or 'Never'}"
    )


def make_task_capabilities(db: DbConnection, settings: Settings) -> list[Capability]:
    @capability(
        "schedule_task",
        dedent("""\
        Schedule a task to run later as a full agent run with all tools available.
        Use 'once' for one-time actions ("after 1 min", "at 3pm", "again after X"); \
        schedule_value is a future ISO 8601 timestamp.
        Use 'interval' only for explicitly repeating actions ("every 5 minutes"); \
        schedule_value is milliseconds.
        Use 'cron' only for calendar schedules ("every day at 8am"); \
        schedule_value is a cron expression.
        Default to 'once' when in doubt."""),
        {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "What the agent should do when the task runs.",
                },
                "schedule_type": {
                    "type": "string",
                    "enum": ["cron", "once", "interval"],
                    "description": (
                        '"once": one-shot at an ISO 8601 timestamp (e.g. "2026-02-09T18:31:00Z"). '
                        '"interval": repeating every N milliseconds (e.g. "60000"). '
                        '"cron": calendar recurring via cron expression (e.g. "0 8 * * *").'
                    ),
                },
                "schedule_value": {
                    "type": "string",
                    "description": (
                        "An ISO 8601 timestamp, milliseconds, or a cron expression, "
                        "depending on schedule_type."
                    ),
                },
                "notify": {
                    "type": "boolean",
                    "description": "Send the result to this conversation (default true).",
                },
            },
            "required": ["prompt", "schedule_type", "schedule_value"],
        },
        ScheduleTaskArgs,
    )
    async def schedule_task(args: ScheduleTaskArgs, ctx: ToolContext) -> CapabilityResult:
        try:
            task = scheduling.schedule_task(
                db,
                prompt=args.prompt,
                schedule_type=args.schedule_type,
                schedule_value=args.schedule_value,
                conversation_id=ctx.conversation_id,
                notify=args.notify,
                exact_cron=settings.exact_cron,
            )
        except scheduling.ScheduleError as e:
            return CapabilityResult(False, str(e))

        return CapabilityResult(
            True,
            f"Task scheduled successfully!\n"
            f"- ID: {task.id}\n"
            f"- Type: {task.schedule_type}\n"
            f"- Schedule: {task.schedule_value}\n"
            f"- Next run: {task.next_run}\n"
            f'- Prompt: "{task.prompt}"',
        )

    @capability(
        "list_tasks",
        "List scheduled tasks with their status, next run time and last run. "
        "By default lists tasks for the current conversation only. "
        "Set all=true to list tasks across all conversations.",
        {
            "type": "object",
            "properties": {
                "all": {
                    "type": "boolean",
                    "description": "List tasks from all conversations, not just this one.",
                },
            },
        },
        ListTasksArgs,
    )
    async def list_tasks(args: ListTasksArgs, ctx: ToolContext) -> CapabilityResult:
        show_all = args.all or ctx.conversation_id is None
        tasks = scheduling.list_tasks(
            db, None if show_all else ctx.conversation_id
        )
        if not tasks:
            return CapabilityResult(True, "No scheduled tasks.")
        formatted = "\n\n".join(
            _format_task(task, show_conversation=show_all) for task in tasks
        )
        return CapabilityResult(True, f"Scheduled tasks:\n\n{formatted}")

    @capability(
        "pause_task",
        "Pause a scheduled task. It will not run until resumed.",
        _TASK_ID_SCHEMA,
        TaskIdArgs,
    )
    async def pause_task(args: TaskIdArgs, ctx: ToolContext) -> CapabilityResult:
        if scheduling.pause_task(db, args.task_id) is None:
            return CapabilityResult(False, f"Task #{args.task_id} not found")
        return CapabilityResult(True, f"Task #{args.task_id} has been paused.")

    @capability(
        "resume_task",
        "Resume a paused task.",
        _TASK_ID_SCHEMA,
        TaskIdArgs,
    )
    async def resume_task(args: TaskIdArgs, ctx: ToolContext) -> CapabilityResult:
        try:
            task = scheduling.resume_task(
                db, args.task_id, exact_cron=settings.exact_cron
            )
        except scheduling.ScheduleError as e:
            return CapabilityResult(False, str(e))
        if task is None:
            return CapabilityResult(False, f"Task #{args.task_id} not found")
        return CapabilityResult(
            True, f"Task #{task.id} has been resumed. Next run: {task.next_run}"
        )

    @capability(
        "cancel_task",
        "Cancel and delete a scheduled task.",
        _TASK_ID_SCHEMA,
        TaskIdArgs,
    )
    async def cancel_task(args: TaskIdArgs, ctx: ToolContext) -> CapabilityResult:
        if not scheduling.cancel_task(db, args.task_id):
            return CapabilityResult(False, f"Task #{args.task_id} not found")
        return CapabilityResult(
            True, f"Task #{args.task_id} has been cancelled and deleted."
        )

    return [schedule_task, list_tasks, pause_task, resume_task, cancel_task]


def make_memory_capabilities(memory_path: Path) -> list[Capability]:
    @capability(
        "read_memory",
        "Read the persistent memory file. "
        "Use this to recall information the user asked you to remember.",
    )
    async def read_memory_tool(args: CapabilityArgs, ctx: ToolContext) -> CapabilityResult:
        return CapabilityResult(True, read_memory(memory_path))

    @capability(
        "write_memory",
        "Update the persistent memory file. "
        "Use this when the user asks you to remember something.",
        {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": (
                        "The new content for the memory file (full replacement). "
                        "Include all existing content you want to keep plus new additions."
                    ),
                },
            },
            "required": ["content"],
        },
        WriteMemoryArgs,
    )
    async def write_memory_tool(args: WriteMemoryArgs, ctx: ToolContext) -> CapabilityResult:
        if not args.content:
            return CapabilityResult(False, "Content is required")
        try:
            memory_path.parent.mkdir(parents=True, exist_ok=True)
            memory_path.write_text(args.content, encoding="utf-8")
        except OSError as e:
            return CapabilityResult(False, f"Failed to write memory: {e}")
        return CapabilityResult(True, "Memory updated successfully.")

    return [read_memory_tool, write_memory_tool]


def _truncate(text: str, limit: int = HTTP_RESPONSE_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def page_text(markup: str) -> str:
    """Readable text of an HTML page, without scripts, styles or markup."""
    text = _SCRIPT_RE.sub("", markup)
    text = _BLOCK_RE.sub("\n", text)
    text = html.unescape(_TAG_RE.sub("", text))
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _looks_like_html(text: str) -> bool:
    return text[:256].lstrip().lower().startswith(("<!doctype", "<html"))


def _page_title(markup: str) -> str:
    match = _TITLE_RE.search(markup)
    if match is None:
        return ""
    return " ".join(html.unescape(match.group(1)).split())


def make_web_capabilities(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> list[Capability]:
    @capability(
        "http_request",
        "Make an HTTP request to any URL. Use this for calling APIs "
        "(REST, webhooks, bot APIs like Telegram, Discord, Slack). "
        "Returns the status line and the response body as text.",
        {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The full URL to send the request to.",
                },
                "method": {
                    "type": "string",
                    "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"],
                    "description": "HTTP method (default: GET).",
                },
                "headers": {
                    "type": "string",
                    "description": (
                        'JSON object of headers, e.g. \'{"Content-Type": "application/json"}\'.'
                    ),
                },
                "body": {
                    "type": "string",
                    "description": "Request body. For JSON APIs, pass a JSON string.",
                },
            },
            "required": ["url"],
        },
        HttpRequestArgs,
    )
    async def http_request(args: HttpRequestArgs, ctx: ToolContext) -> CapabilityResult:
        method = (args.method or "GET").upper()
        headers = args.headers or {}
        if isinstance(headers, str):
            try:
                headers = json.loads(headers)
            except ValueError:
                return CapabilityResult(False, f"Invalid headers JSON: {args.headers}")
            if not isinstance(headers, dict):
                return CapabilityResult(False, f"Invalid headers JSON: {args.headers}")

        content = args.body if args.body and method not in ("GET", "HEAD") else None
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT, follow_redirects=True, transport=transport
            ) as client:
                response = await client.request(
                    method,
                    args.url,
                    headers={str(k): str(v) for k, v in headers.items()},
                    content=content,
                )
        except httpx.HTTPError as e:
            return CapabilityResult(False, f"HTTP request failed: {e}")

        summary = (
            f"HTTP {response.status_code} {response.reason_phrase}\n\n"
            f"{_truncate(response.text)}"
        )
        return CapabilityResult(response.is_success, summary)

    @capability(
        "brave_web_search",
        "Search the web using the Brave Search API. Use this for finding current "
        "information, facts, news, URLs or any real-time data.",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query."},
                "count": {
                    "type": "integer",
                    "description": "Number of results to return (default 5, max 20).",
                },
            },
            "required": ["query"],
        },
        WebSearchArgs,
    )
    async def brave_web_search(args: WebSearchArgs, ctx: ToolContext) -> CapabilityResult:
        if not settings.brave_api_key:
            return CapabilityResult(
                False,
                "Brave Search API key not configured. "
                "Set NEXUSAGENT_BRAVE_API_KEY.",
            )
        count = min(max(args.count or 5, 1), BRAVE_MAX_RESULTS)
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT, transport=transport
            ) as client:
                response = await client.get(
                    BRAVE_SEARCH_URL,
                    params={"q": args.query, "count": count},
                    headers={
                        "Accept": "application/json",
                        "X-Subscription-Token": settings.brave_api_key,
                    },
                )
        except httpx.HTTPError as e:
            return CapabilityResult(False, f"Brave Search error: {e}")

        if not response.is_success:
            return CapabilityResult(
                False, f"Brave Search error ({response.status_code}): {response.text}"
            )

        results = (response.json().get("web") or {}).get("results") or []
        if not results:
            return CapabilityResult(True, "No search results found.")

        formatted = "\n\n".join(
            f"{i}. **{item.get('title', '')}**\n"
            f"   URL: {item.get('url', '')}\n"
            f"   {item.get('description', '')}"
            for i, item in enumerate(results[:count], 1)
        )
        return CapabilityResult(True, f'Search results for "{args.query}":\n\n{formatted}')

    @capability(
        "browse_page",
        "Open a web page and return its readable text (scripts, styles and markup "
        "removed). Use this to read articles, documentation or any site content.",
        {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The http(s) URL of the page to open.",
                },
                "max_chars": {
                    "type": "integer",
                    "description": (
                        f"Maximum characters of text to return "
                        f"(default {BROWSE_DEFAULT_CHARS}, min {BROWSE_MIN_CHARS})."
                    ),
                },
            },
            "required": ["url"],
        },
        BrowsePageArgs,
    )
    async def browse_page(args: BrowsePageArgs, ctx: ToolContext) -> CapabilityResult:
        parsed = urlparse(args.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return CapabilityResult(
                False, f"Cannot browse {args.url!r}: only http(s) URLs are supported"
            )
        max_chars = max(args.max_chars or BROWSE_DEFAULT_CHARS, BROWSE_MIN_CHARS)
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT,
                follow_redirects=True,
                max_redirects=5,
                transport=transport,
            ) as client:
                response = await client.get(
                    args.url, headers={"User-Agent": BROWSER_USER_AGENT}
                )
        except httpx.HTTPError as e:
            return CapabilityResult(False, f"Failed to open {args.url}: {e}")

        if not response.is_success:
            return CapabilityResult(
                False,
                f"Failed to open {args.url}: "
                f"HTTP {response.status_code} {response.reason_phrase}",
            )

        content_type = response.headers.get("content-type", "")
        title = ""
        if "application/json" in content_type:
            try:
                text = json.dumps(response.json(), indent=2, ensure_ascii=False)
            except ValueError:
                text = response.text
        elif "text/html" in content_type or _looks_like_html(response.text):
            title = _page_title(response.text)
            text = page_text(response.text)
        else:
            text = response.text

        header = f"Page: {response.url}\n"
        if title:
            header += f"Title: {title}\n"
        return CapabilityResult(True, f"{header}\n{_truncate(text, max_chars)}")

    return [http_request, brave_web_search, browse_page]


def build_registry(
    db: DbConnection,
    settings: Settings,
    *,
    extra: Iterable[Capability] = (),
    transport: httpx.AsyncBaseTransport | None = None,
) -> CapabilityRegistry:
    """Registry with the built-in capabilities plus *extra* (e.g. from plugins)."""
    registry = CapabilityRegistry()
    registry.add(*make_task_capabilities(db, settings))
    registry.add(*make_memory_capabilities(settings.memory_path))
    registry.add(*make_web_capabilities(settings, transport))
    registry.add(*extra)
    log.debug("Registered capabilities: %s", ", ".join(registry.names))
    return registry
