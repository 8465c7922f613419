"""Tool registration, dispatch, and schema generation for the tool-call loop."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from hybridlm.errors import ToolExecutionError

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    """Schema definition for a tool, sent to the model with each completion."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object


# Handlers take the model's arguments as keywords and return a JSON value.
# Both plain and async callables are accepted.
ToolHandler = Callable[..., Any]


def tool(description: str, parameters: dict[str, Any] | None = None, name: str | None = None):
    """Attach a ``ToolDefinition`` to a handler so ``ToolRegistry.add`` can register it.

    >>> @tool("Add two numbers", {"type": "object", "properties": {"a": {}, "b": {}}})
    ... def add(a, b):
    ...     return a + b
    >>> add.definition.name
    'add'
    """

    def decorator(fn: ToolHandler) -> ToolHandler:
        fn.definition = ToolDefinition(
            name=name or fn.__name__,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
        )
        return fn

    return decorator


class ToolRegistry:
    """Manages tool registration, schema generation, and dispatch."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolHandler] = {}
        self._definitions: dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register a tool with its definition and handler."""
        self._tools[definition.name] = handler
        self._definitions[definition.name] = definition
        logger.debug("Registered tool: %s", definition.name)

    def add(self, handler: ToolHandler) -> ToolHandler:
        """Register a handler decorated with ``@tool``. Returns the handler."""
        definition = getattr(handler, "definition", None)
        if not isinstance(definition, ToolDefinition):
            raise TypeError(f"{handler!r} has no tool definition; decorate it with @tool")
        self.register(definition, handler)
        return handler

    def get_tool_schemas(self) -> list[dict[str, Any]]:
        """Generate OpenAI-compatible tool schemas for the model."""
        return [
            {
                "type": "function",
                "function": {
                    "name": defn.name,
                    "description": defn.description,
                    "parameters": defn.parameters,
                },
            }
            for defn in self._definitions.values()
        ]

    def get_definition(self, name: str) -> ToolDefinition | None:
        return self._definitions.get(name)

    async def execute(self, name: str, arguments: Any) -> Any:
        """Execute a tool by name and return its JSON-serializable output.

        Raises ToolExecutionError for unknown tools, handler failures and
        output that cannot be serialized to JSON.
        """
        handler = self._tools.get(name)
        if handler is None:
            raise ToolExecutionError(f"Tool {name!r} not found", tool_name=name)

        logger.info("Executing tool %s", name)
        try:
            output = await self._invoke(handler, arguments)
        except TypeError as type_error:
            # Models sometimes invent argument names. Retry with the values
            # mapped onto the schema's parameter names by position.
            remapped = self._remap_arguments(name, arguments)
            if remapped is None:
                raise ToolExecutionError(
                    f"Tool {name} failed: {type_error} (got {_arg_names(arguments)})",
                    tool_name=name,
                ) from type_error
            logger.warning(
                "Tool %s: remapped bad arg names %s → %s",
                name, _arg_names(arguments), list(remapped.keys()),
            )
            try:
                output = await self._invoke(handler, remapped)
            except Exception as e:
                raise ToolExecutionError(
                    f"Tool {name} failed: {type(e).__name__}: {e}", tool_name=name
                ) from e
        except Exception as e:
            raise ToolExecutionError(
                f"Tool {name} failed: {type(e).__name__}: {e}", tool_name=name
            ) from e

        try:
            json.dumps(output)
        except (TypeError, ValueError) as e:
            raise ToolExecutionError(
                f"Tool {name} returned output that is not JSON-serializable: {e}",
                tool_name=name,
            ) from e
        return output

    @staticmethod
    async def _invoke(handler: ToolHandler, arguments: Any) -> Any:
        if isinstance(arguments, dict):
            result = handler(**arguments)
        else:
            result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _remap_arguments(self, name: str, arguments: Any) -> dict[str, Any] | None:
        """Map argument values onto the schema's parameter names by position.

        Returns None when remapping isn't possible (e.g. count mismatch).
        """
        defn = self._definitions.get(name)
        if defn is None or not isinstance(arguments, dict):
            return None
        expected_keys = list(defn.parameters.get("properties", {}).keys())
        provided_values = list(arguments.values())
        if len(provided_values) != len(expected_keys) or list(arguments) == expected_keys:
            return None
        return dict(zip(expected_keys, provided_values))

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())


def _arg_names(arguments: Any) -> list[str]:
    return list(arguments.keys()) if isinstance(arguments, dict) else [type(arguments).__name__]
