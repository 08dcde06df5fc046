from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "NEXUSAGENT_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "nexusagent" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "nexusagent"
    model: str = "arcee-ai/trinity-large-preview:free"
    planner_model: str | None = None
    executor_model: str | None = None

    api_key: str = ""  # OpenRouter
    base_url: str = "https://openrouter.ai/api/v1/chat/completions"
    ollama_url: str = "http://localhost:11434"
    github_token: str = ""  # GitHub Models, used by "copilot/" models
    brave_api_key: str = ""

    max_tokens: int = 2048
    request_timeout: float = 120.0  # seconds
    max_tool_loops: int = 15
    history_limit: int = 50
    tick_interval: float = 15.0  # seconds between scheduler ticks
    exact_cron: bool = False

    @property
    def db_path(self) -> Path:
        return self.data / "nexusagent.db"

    @property
    def memory_path(self) -> Path:
        return self.data / "memory.md"

    @property
    def skills_dir(self) -> Path:
        return self.data / "skills"

    def resolve_planner_model(self) -> str:
        return self.planner_model or self.model

    def resolve_executor_model(self) -> str:
        return self.executor_model or self.model


settings = Settings()
