"""Wiring of one agent process: database, model client, registry and services."""

from __future__ import annotations

import logging

import httpx

from nexusagent.config import Settings
from nexusagent.db import ThreadSafeConnection, init_db
from nexusagent.executor import ChatModel, StepExecutor
from nexusagent.llm import ChatClient
from nexusagent.pipeline import Pipeline
from nexusagent.planner import Planner
from nexusagent.plugins import (
    NexusAgentPlugin,
    collect_capabilities,
    load_plugins,
    run_db_migrations,
)
from nexusagent.scheduler import Scheduler
from nexusagent.tools import build_registry

log = logging.getLogger(__name__)


class Runtime:
    """Owns every long-lived component of the agent.

    ``start()`` only starts the background scheduler; everything else is
    usable straight after construction.  ``stop()`` stops the scheduler and
    releases the model client and database connection.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: ChatModel | None = None,
        plugins: list[NexusAgentPlugin] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        settings.data.mkdir(parents=True, exist_ok=True)
        self.db: ThreadSafeConnection = init_db(settings.db_path)

        if plugins is None:
            plugins = load_plugins()
        run_db_migrations(self.db, plugins)

        self._owns_client = client is None
        self.client: ChatModel = client or ChatClient(settings, transport=transport)
        self.registry = build_registry(
            self.db,
            settings,
            extra=collect_capabilities(self.db, plugins),
            transport=transport,
        )
        self.executor = StepExecutor(self.db, self.client, self.registry, settings)
        self.planner = Planner(self.client, settings)
        self.pipeline = Pipeline(self.executor, self.planner, self.db, settings)
        self.scheduler = Scheduler(self.db, self.executor, settings)

    def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._owns_client and isinstance(self.client, ChatClient):
            await self.client.aclose()
        self.db.close()

    async def __aenter__(self) -> Runtime:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
