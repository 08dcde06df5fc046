"""Plugin framework: Protocol-based plugin system with entry point discovery."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Protocol, runtime_checkable

import click
from pydantic_settings import BaseSettings

from nexusagent.db import DbConnection
from nexusagent.registry import Capability

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "nexusagent.plugins"


@runtime_checkable
class NexusAgentPlugin(Protocol):
    """Protocol that all nexusagent plugins must satisfy."""

    def register_commands(self, group: click.Group) -> None:
        """Register CLI commands with the Click group."""
        ...

    def get_capabilities(self, db: DbConnection) -> list[Capability]:
        """Return extra capabilities to add to the registry."""
        ...

    def get_db_migrations(self) -> list[str]:
        """Return SQL statements for database migrations."""
        ...

    def get_config_class(self) -> type[BaseSettings] | None:
        """Return a Pydantic Settings class for plugin configuration."""
        ...


class NexusAgentPluginBase:
    """Base class with default no-op implementations for all plugin methods."""

    def register_commands(self, group: click.Group) -> None:
        pass

    def get_capabilities(self, db: DbConnection) -> list[Capability]:
        return []

    def get_db_migrations(self) -> list[str]:
        return []

    def get_config_class(self) -> type[BaseSettings] | None:
        return None


def load_plugins() -> list[NexusAgentPlugin]:
    plugins: list[NexusAgentPlugin] = []
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            plugin_cls = ep.load()
            plugin = plugin_cls()
            plugins.append(plugin)
            log.debug("Loaded plugin %r from %s", ep.name, ep.value)
        except Exception:
            log.exception("Failed to load plugin %r", ep.name)
    return plugins


def run_db_migrations(db: DbConnection, plugins: list[NexusAgentPlugin]) -> None:
    for plugin in plugins:
        for sql in plugin.get_db_migrations():
            try:
                db.executescript(sql)
            except Exception:
                log.exception("Failed to run migration from %s", type(plugin).__name__)


def collect_capabilities(
    db: DbConnection, plugins: list[NexusAgentPlugin]
) -> list[Capability]:
    capabilities: list[Capability] = []
    for plugin in plugins:
        try:
            capabilities.extend(plugin.get_capabilities(db))
        except Exception:
            log.exception("Failed to get capabilities from %s", type(plugin).__name__)
    return capabilities
