"""Tests for Settings configuration and .env file loading."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from nexusagent.config import Settings

DEFAULT_MODEL = "arcee-ai/trinity-large-preview:free"


class TestSettingsDefaults:
    """Test Settings default values in isolated environment."""

    def test_settings_defaults_no_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.model == DEFAULT_MODEL
        assert settings.data == Path.home() / ".local" / "share" / "nexusagent"
        assert settings.max_tool_loops == 15
        assert settings.history_limit == 50
        assert settings.tick_interval == 15.0
        assert settings.exact_cron is False

    def test_settings_derived_paths(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        settings = Settings(data=tmp_path / "d")

        assert settings.db_path == tmp_path / "d" / "nexusagent.db"
        assert settings.memory_path == tmp_path / "d" / "memory.md"
        assert settings.skills_dir == tmp_path / "d" / "skills"

    def test_stage_models_fall_back_to_default_model(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        settings = Settings(model="base")
        assert settings.resolve_planner_model() == "base"
        assert settings.resolve_executor_model() == "base"

        settings = Settings(model="base", planner_model="p", executor_model="e")
        assert settings.resolve_planner_model() == "p"
        assert settings.resolve_executor_model() == "e"


class TestSettingsEnvFileLoading:
    """Test Settings loads from .env file in CWD."""

    def test_settings_loads_from_cwd_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("NEXUSAGENT_MODEL=ollama/llama3\n")
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.model == "ollama/llama3"

    def test_settings_loads_multiple_vars_from_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        custom_data = tmp_path / "my_data"
        custom_data.mkdir()
        (tmp_path / ".env").write_text(
            dedent(f"""\
                NEXUSAGENT_MODEL=copilot/gpt-4o
                NEXUSAGENT_DATA={custom_data}
                NEXUSAGENT_TICK_INTERVAL=2.5
                NEXUSAGENT_EXACT_CRON=true
                """)
        )
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.model == "copilot/gpt-4o"
        assert settings.data == custom_data
        assert settings.tick_interval == 2.5
        assert settings.exact_cron is True


class TestSettingsEnvVarOverride:
    """Test environment variables override .env file values."""

    def test_env_var_overrides_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("NEXUSAGENT_MODEL=from-env-file\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("NEXUSAGENT_MODEL", "from-env-var")

        settings = Settings()

        assert settings.model == "from-env-var"

    def test_settings_ignores_unprefixed_vars(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("MODEL=should-be-ignored\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("OTHER_MODEL", "should-be-ignored")

        settings = Settings()

        assert settings.model == DEFAULT_MODEL


class TestSettingsMissingEnvFile:
    """Test Settings handles missing or empty .env files gracefully."""

    def test_settings_works_with_comments_only_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("# This is a comment\n")
        monkeypatch.chdir(tmp_path)

        settings = Settings()

        assert settings.model == DEFAULT_MODEL
