from dataclasses import dataclass
from pathlib import Path

import pytest
from click.testing import CliRunner

from nexusagent.__main__ import main
from nexusagent.config import Settings
from nexusagent.db import get_task, init_db
from nexusagent.plugins import NexusAgentPluginBase
from nexusagent.registry import CapabilityResult, capability
from nexusagent.runtime import Runtime
from nexusagent.scheduling import schedule_task
from nexusagent.stream import AssistantTurn


@dataclass
class FakeClient:
    answer: str = "hello"

    async def stream_chat(self, messages, *, tools=None, model=None, on_event=None):
        return AssistantTurn(content=self.answer)


@capability("weather", "Get the weather.")
async def weather(args, ctx) -> CapabilityResult:
    return CapabilityResult(True, "sunny")


class WeatherPlugin(NexusAgentPluginBase):
    def get_capabilities(self, db):
        return [weather]

    def get_db_migrations(self) -> list[str]:
        return ["CREATE TABLE IF NOT EXISTS weather_cache (city TEXT PRIMARY KEY)"]


@pytest.mark.asyncio
async def test_runtime_wires_components(tmp_path: Path) -> None:
    settings = Settings(data=tmp_path / "data", tick_interval=60)
    async with Runtime(settings, client=FakeClient(), plugins=[WeatherPlugin()]) as runtime:
        assert runtime.scheduler.running
        assert "weather" in runtime.registry
        assert "schedule_task" in runtime.registry
        assert runtime.db.execute(
            "SELECT name FROM sqlite_master WHERE name='weather_cache'"
        ).fetchone()

        events = [e async for e in runtime.pipeline.stream_turn("c1", "What is up?")]
        assert events[-1].data == "hello"

    assert not runtime.scheduler.running


def _cli_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    settings = Settings(data=tmp_path)
    monkeypatch.setattr("nexusagent.__main__.settings", settings)
    monkeypatch.setattr("nexusagent.__main__.load_plugins", lambda: [])
    return settings


def test_cli_task_commands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings = _cli_settings(tmp_path, monkeypatch)
    db = init_db(settings.db_path)
    task = schedule_task(
        db, prompt="water the plants", schedule_type="interval", schedule_value="60000"
    )
    runner = CliRunner()

    result = runner.invoke(main, ["tasks"])
    assert result.exit_code == 0
    assert task.id in result.output
    assert "water the plants" in result.output

    result = runner.invoke(main, ["task", "pause", task.id])
    assert result.exit_code == 0
    assert get_task(db, task.id).status == "paused"

    result = runner.invoke(main, ["task", "resume", task.id])
    assert result.exit_code == 0
    assert get_task(db, task.id).status == "active"

    result = runner.invoke(main, ["task", "cancel", task.id])
    assert result.exit_code == 0
    assert get_task(db, task.id) is None

    result = runner.invoke(main, ["task", "cancel", task.id])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_cli_tasks_empty(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _cli_settings(tmp_path, monkeypatch)

    result = CliRunner().invoke(main, ["tasks"])

    assert result.exit_code == 0
    assert "No scheduled tasks." in result.output
