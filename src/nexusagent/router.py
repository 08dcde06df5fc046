"""Keyword intent classifier, the first pipeline stage.

Cheap and deterministic: no model call, never fails.  Categories are
checked in a fixed order and the first match wins.  Scheduling phrasing
comes first because it usually overlaps with tool phrasing ("every day,
send a message").
"""

from __future__ import annotations

from nexusagent.models import TaskCategory

LONG_RUNNING_KEYWORDS = (
    "monitor",
    "every day",
    "every hour",
    "every minute",
    "recurring",
    "keep checking",
    "daily",
    "weekly",
    "cron",
)

TOOL_KEYWORDS = (
    "send",
    "schedule",
    "post",
    "create task",
    "remind",
    "telegram",
    "discord",
    "slack",
    "webhook",
    "http request",
    "api call",
    "set a reminder",
    "cancel task",
    "pause task",
    "resume task",
    "remember",
    "save to memory",
)

RESEARCH_KEYWORDS = (
    "search",
    "find",
    "latest",
    "news",
    "price",
    "look up",
    "browse",
    "open the page",
    "go to",
    "visit",
    "what is the current",
    "who won",
    "trending",
)

QUESTION_PREFIXES = (
    "what",
    "who",
    "how",
    "why",
    "when",
    "where",
    "is ",
    "are ",
    "can ",
    "does ",
    "do ",
)

SIMPLE_QA_MAX_LENGTH = 120


def classify_intent(message: str) -> TaskCategory:
    lower = message.lower().strip()

    if any(keyword in lower for keyword in LONG_RUNNING_KEYWORDS):
        return "LONG_RUNNING"
    if any(keyword in lower for keyword in TOOL_KEYWORDS):
        return "TOOL_TASK"
    if any(keyword in lower for keyword in RESEARCH_KEYWORDS):
        return "RESEARCH_TASK"

    is_question = lower.endswith("?") or lower.startswith(QUESTION_PREFIXES)
    if is_question and len(message) < SIMPLE_QA_MAX_LENGTH:
        return "SIMPLE_QA"

    return "COMPLEX_REASONING"
