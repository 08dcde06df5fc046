"""System prompts and per-step user messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from nexusagent.models import PlanStep

NO_MEMORY = "(No memory stored yet)"


@dataclass(frozen=True)
class StepFocus:
    """Restricts one executor run to a single plan step."""

    step_id: int
    title: str
    description: str
    instruction: str = ""

    @classmethod
    def from_step(cls, step: PlanStep, original_message: str) -> StepFocus:
        return cls(
            step_id=step.id,
            title=step.title,
            description=step.description,
            instruction=step_user_message(step, original_message),
        )


def read_memory(memory_path: Path) -> str:
    try:
        content = memory_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return NO_MEMORY
    return content if content.strip() else NO_MEMORY


def load_skills(skills_dir: Path) -> list[tuple[str, str]]:
    """``(name, markdown)`` for every ``*.md`` file in *skills_dir*."""
    if not skills_dir.is_dir():
        return []
    skills = []
    for path in sorted(skills_dir.glob("*.md")):
        try:
            skills.append((path.stem, path.read_text(encoding="utf-8")))
        except OSError:
            continue
    return skills


def _skills_section(skills: list[tuple[str, str]]) -> str:
    if not skills:
        return ""
    sections = "\n\n---\n\n".join(f"### Skill: {name}\n{body}" for name, body in skills)
    return (
        "\n## Learned Skills\n"
        "You have the following skills that teach you HOW to accomplish specific "
        "tasks. When a request matches a skill, follow its instructions using your "
        "available tools (especially http_request for API calls).\n\n"
        f"{sections}\n"
    )


SCHEDULING_RULES = dedent("""\
    ## Scheduling Rules
    Decide whether the user wants a ONE-TIME or a RECURRING action.

    ### ONE-TIME (schedule_type: "once")
    "after 1 minute", "in 2 hours", "at 3pm", "tomorrow at 8", "again after 1 min",
    "remind me in 30 minutes". schedule_value is an ISO 8601 timestamp computed
    from the current date/time.

    ### RECURRING (schedule_type: "interval")
    Only for "every 5 minutes", "every hour", "repeatedly".
    schedule_value is milliseconds, e.g. "60000" for one minute.

    ### RECURRING CRON (schedule_type: "cron")
    Only for calendar schedules: "every day at 8am", "every Monday", "weekly".
    schedule_value is a cron expression, e.g. "0 8 * * *".

    When in doubt, use "once". "after", "in", "at" and "again" almost always
    mean one-time.""")


def build_system_prompt(
    *,
    memory: str,
    catalogue: list[tuple[str, str]],
    skills: list[tuple[str, str]] | None = None,
    step: StepFocus | None = None,
    now: datetime | None = None,
) -> str:
    current = (now or datetime.now().astimezone()).strftime("%A, %B %d, %Y %H:%M %Z")
    tools = "\n".join(f"- {name}: {summary}" for name, summary in catalogue)

    prompt = (
        "You are NexusAgent, a personal AI assistant that can search the web, "
        "call external APIs, remember things and schedule tasks.\n\n"
        f"Current date/time: {current}\n\n"
        f"## Your Memory\n{memory}\n\n"
        f"## Capabilities\n{tools or '(none)'}\n"
        f"{_skills_section(skills or [])}\n"
        "## Guidelines\n"
        "- Use web search for live or current information, then browse_page to "
        "read the pages it finds.\n"
        "- To remember something, read_memory first, then write_memory with the "
        "full updated content.\n"
        "- Tell the user what you are doing while you use tools.\n"
        "- Be concise but thorough. Use markdown.\n\n"
        f"{SCHEDULING_RULES}"
    )

    if step is not None:
        prompt += (
            "\n\n## CURRENT EXECUTION STEP\n"
            f"STEP {step.step_id}: {step.title}\n"
            f"GOAL OF THIS STEP: {step.description}\n"
        )
        if step.instruction:
            prompt += f"INSTRUCTION: {step.instruction}\n"
        prompt += (
            "\nFocus ONLY on completing this specific step. "
            "Be concise and action-oriented."
        )
    return prompt


PLANNER_SYSTEM_PROMPT = dedent("""\
    You are a concise, structured reasoning planner.
    First, think step-by-step inside <think>...</think> tags.
    Then produce a JSON timeline with this exact schema:

    {
      "steps": [
        {
          "id": 1,
          "title": "Short step title",
          "action": "search | browse | http | schedule | memory | final_answer",
          "description": "What you will do in this step"
        }
      ]
    }

    Keep between 2 and 6 steps.
    The last step should almost always be "final_answer", where you synthesize
    everything.

    Actions:
    - "search" = use web search to find information
    - "browse" = open a website with browse_page and extract data
    - "http" = make an API call (REST, webhook, bot API)
    - "schedule" = create a scheduled or recurring task
    - "memory" = read or write persistent memory
    - "final_answer" = synthesize and respond to the user

    Output ONLY the <think>...</think> block followed by the JSON. No other text.""")


def planner_user_prompt(message: str, category: str) -> str:
    return (
        f"Task type classified as: {category}\n\n"
        f'User message: "{message}"\n\n'
        "Think step-by-step, then output a JSON timeline."
    )


def step_user_message(step: PlanStep, original_message: str) -> str:
    if step.action == "final_answer":
        return (
            "Based on the information gathered above, provide a comprehensive final "
            f'answer to the user\'s original request: "{original_message}"'
        )
    return f"Execute step {step.id}: {step.title} - {step.description}"
