"""Capability registry: the closed set of tools the model may call.

Each capability pairs an OpenAI-style function definition with a pydantic
argument model and an async executor.  The registry is filled once at
startup; registration checks that the advertised JSON schema and the
argument model agree so a mismatch fails fast instead of at call time.

:meth:`CapabilityRegistry.dispatch` never raises.  Malformed JSON, unknown
names, invalid arguments and executor exceptions all come back as a failed
:class:`CapabilityResult`, which the tool-calling loop feeds back to the
model.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

log = logging.getLogger(__name__)


class CapabilityArgs(BaseModel):
    """Base for capability argument models.

    Models often send ``42`` where ``"42"`` is expected; numbers are coerced
    to strings and unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class NoArgs(CapabilityArgs):
    pass


@dataclass(frozen=True)
class ToolContext:
    """Per-dispatch context supplied by the caller, not by the model."""

    conversation_id: str | None = None


@dataclass(frozen=True)
class CapabilityResult:
    success: bool
    result: str


Executor = Callable[[Any, ToolContext], Awaitable[CapabilityResult]]


@dataclass(frozen=True)
class CapabilityDefinition:
    name: str
    description: str
    parameters: dict[str, Any]
    args_model: type[CapabilityArgs] = NoArgs

    def to_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class Capability:
    definition: CapabilityDefinition
    executor: Executor

    @property
    def name(self) -> str:
        return self.definition.name


def capability(
    name: str,
    description: str,
    parameters: dict[str, Any] | None = None,
    args_model: type[CapabilityArgs] = NoArgs,
) -> Callable[[Executor], Capability]:
    """Decorator turning an async executor into a :class:`Capability`."""

    def decorator(fn: Executor) -> Capability:
        definition = CapabilityDefinition(
            name=name,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            args_model=args_model,
        )
        return Capability(definition, fn)

    return decorator


class CapabilityRegistrationError(ValueError):
    pass


def _check_definition(definition: CapabilityDefinition) -> None:
    params = definition.parameters
    if params.get("type") != "object":
        raise CapabilityRegistrationError(
            f"{definition.name}: parameters must be a JSON object schema"
        )
    properties = set(params.get("properties", {}))
    required = set(params.get("required", []))
    fields = definition.args_model.model_fields

    if not required <= properties:
        raise CapabilityRegistrationError(
            f"{definition.name}: required {sorted(required - properties)} not in properties"
        )
    if not properties <= set(fields):
        raise CapabilityRegistrationError(
            f"{definition.name}: properties {sorted(properties - set(fields))} "
            f"missing from {definition.args_model.__name__}"
        )
    model_required = {n for n, f in fields.items() if f.is_required()}
    if not model_required <= required:
        raise CapabilityRegistrationError(
            f"{definition.name}: {sorted(model_required - required)} required by "
            f"{definition.args_model.__name__} but optional in the schema"
        )


class CapabilityRegistry:
    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, definition: CapabilityDefinition, executor: Executor) -> None:
        if not definition.name:
            raise CapabilityRegistrationError("capability name must not be empty")
        if definition.name in self._capabilities:
            raise CapabilityRegistrationError(
                f"capability {definition.name!r} is already registered"
            )
        if not definition.description.strip():
            raise CapabilityRegistrationError(
                f"capability {definition.name!r} needs a description"
            )
        _check_definition(definition)
        self._capabilities[definition.name] = Capability(definition, executor)

    def add(self, *capabilities: Capability) -> None:
        for cap in capabilities:
            self.register(cap.definition, cap.executor)

    def list_definitions(self) -> list[dict[str, Any]]:
        return [cap.definition.to_tool() for cap in self._capabilities.values()]

    def catalogue(self) -> list[tuple[str, str]]:
        """``(name, first line of description)`` for every capability."""
        return [
            (cap.name, cap.definition.description.strip().splitlines()[0])
            for cap in self._capabilities.values()
        ]

    @property
    def names(self) -> list[str]:
        return list(self._capabilities)

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    async def dispatch(
        self,
        name: str,
        raw_arguments: str,
        context: ToolContext | None = None,
    ) -> CapabilityResult:
        try:
            data = json.loads(raw_arguments or "{}")
        except ValueError:
            return CapabilityResult(False, f"Invalid tool arguments JSON: {raw_arguments}")
        if not isinstance(data, dict):
            return CapabilityResult(
                False, f"Tool arguments must be a JSON object: {raw_arguments}"
            )

        cap = self._capabilities.get(name)
        if cap is None:
            return CapabilityResult(False, f"Unknown tool: {name}")

        try:
            args = cap.definition.args_model.model_validate(data)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
                for err in exc.errors()
            )
            return CapabilityResult(False, f"Invalid arguments for {name}: {problems}")

        try:
            return await cap.executor(args, context or ToolContext())
        except Exception as exc:
            log.warning("Capability %s failed", name, exc_info=True)
            return CapabilityResult(False, f"Tool execution error: {exc}")
