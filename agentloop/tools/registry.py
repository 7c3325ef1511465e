"""Tool registry, base tool class and argument binding."""

import asyncio
import inspect
import json
import types
import typing
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any, Protocol, Union, runtime_checkable

from pydantic import BaseModel, model_validator

from agentloop.exceptions import ToolError, ToolExecutionError, UnknownCapabilityError
from agentloop.llm import ToolCall, ToolDefinition
from agentloop.logging import get_logger

log = get_logger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}

_PY_TO_JSON_TYPE: dict[Any, str] = {
    str: "string",
    int: "integer",
    bool: "boolean",
    float: "number",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    base64_image: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    timeout_seconds: float | None = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Bound tool arguments, one per declared property

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


@runtime_checkable
class ToolProvider(Protocol):
    """Anything that exposes a static table of tools."""

    def tools(self) -> list[Tool]:
        ...


# ---------------------------------------------------------------------------
# Argument parsing and coercion
# ---------------------------------------------------------------------------


def parse_arguments(raw: Any) -> dict[str, Any] | None:
    """Normalize a tool argument payload into a dict.

    Strings are decoded as JSON; other values go through a JSON round trip.
    Returns None when the payload cannot be understood at all.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return {}
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return None
    else:
        try:
            value = json.loads(json.dumps(raw, default=str))
        except (TypeError, ValueError):
            return None
    return value if isinstance(value, dict) else None


def default_for(schema: dict[str, Any]) -> Any:
    """Documented default for a schema property."""
    if "default" in schema:
        return schema["default"]
    if schema.get("type") == "boolean":
        return False
    return None


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return int(float(text))
            except ValueError:
                return None
    return None


def _to_float(value: Any) -> float | None:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _to_list(value: Any) -> list[Any] | None:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, list) else None
    return None


def _to_dict(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def coerce_value(value: Any, schema: dict[str, Any]) -> Any:
    """Best-effort conversion of a JSON value to the property's type.

    Unconvertible values fall back to the property default.
    """
    if value is None:
        return default_for(schema)

    kind = schema.get("type")
    if kind == "string":
        return _to_str(value)
    if kind == "integer":
        converted = _to_int(value)
    elif kind == "number":
        converted = _to_float(value)
    elif kind == "boolean":
        return _to_bool(value)
    elif kind == "array":
        converted = _to_list(value)
    elif kind == "object":
        converted = _to_dict(value)
    else:
        return value
    return default_for(schema) if converted is None else converted


def bind_arguments(parameters: dict[str, Any], payload: dict[str, Any] | None) -> dict[str, Any]:
    """Bind a payload to the declared properties.

    Every declared property gets a value; missing properties and a payload
    that could not be parsed (None) get defaults. Undeclared keys are dropped.
    """
    properties: dict[str, Any] = (parameters or {}).get("properties") or {}
    payload = payload or {}
    bound: dict[str, Any] = {}
    for prop_name, prop_schema in properties.items():
        schema = prop_schema if isinstance(prop_schema, dict) else {}
        if prop_name in payload:
            bound[prop_name] = coerce_value(payload[prop_name], schema)
        else:
            bound[prop_name] = default_for(schema)
    return bound


# ---------------------------------------------------------------------------
# Function-backed tools
# ---------------------------------------------------------------------------


def _json_type_for(annotation: Any) -> str:
    """Map a Python annotation to a JSON schema type name."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return "string"
    origin = typing.get_origin(annotation)
    if origin in (Union, types.UnionType):
        members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        return _json_type_for(members[0]) if len(members) == 1 else "string"
    if origin is not None:
        return _PY_TO_JSON_TYPE.get(origin, "string")
    return _PY_TO_JSON_TYPE.get(annotation, "string")


def _describe(func: Callable[..., Any]) -> str:
    doc = inspect.getdoc(func) or ""
    return doc.split("\n\n", 1)[0].strip()


def schema_from_signature(func: Callable[..., Any]) -> dict[str, Any]:
    """Build a JSON object schema from a callable's signature."""
    try:
        hints = typing.get_type_hints(func)
    except Exception:
        hints = {}
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in inspect.signature(func).parameters.values():
        if param.name in ("self", "cls"):
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        prop: dict[str, Any] = {"type": _json_type_for(hints.get(param.name, param.annotation))}
        if param.default is inspect.Parameter.empty:
            required.append(param.name)
        elif param.default is None or isinstance(param.default, (str, int, float, bool)):
            prop["default"] = param.default
        properties[param.name] = prop
    return {"type": "object", "properties": properties, "required": required}


class FunctionTool(Tool):
    """Tool backed by a plain function or bound method."""

    def __init__(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
        timeout_seconds: float | None = 30.0,
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description if description is not None else _describe(func)
        self.parameters = parameters or schema_from_signature(func)
        self.timeout_seconds = timeout_seconds

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.func(*args, **kwargs)

    async def execute(self, **kwargs: Any) -> ToolResult:
        accepted = set(inspect.signature(self.func).parameters)
        call_kwargs = {key: value for key, value in kwargs.items() if key in accepted}
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(**call_kwargs)
        else:
            result = await asyncio.to_thread(self.func, **call_kwargs)
        if isinstance(result, ToolResult):
            return result
        return ToolResult(content="" if result is None else str(result))


def tool(
    name: str | None = None,
    description: str | None = None,
    timeout_seconds: float | None = 30.0,
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator turning a function into a FunctionTool."""

    def wrap(func: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(func, name=name, description=description, timeout_seconds=timeout_seconds)

    return wrap


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, tools: Iterable[Any] | None = None):
        self._tools: dict[str, Tool] = {}
        if tools:
            self.register_all(*tools)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name in self._tools and self._tools[tool.name] is not tool:
            raise ValueError(f"Tool already registered: {tool.name}")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
    ) -> FunctionTool:
        """Register a plain callable as a tool."""
        wrapped = FunctionTool(func, name=name, description=description)
        self.register(wrapped)
        return wrapped

    def register_all(self, *items: Any) -> None:
        """Register tools, tool providers and plain callables."""
        for item in items:
            if item is None:
                continue
            if isinstance(item, Tool):
                self.register(item)
            elif isinstance(item, ToolProvider):
                for provided in item.tools():
                    self.register(provided)
            elif callable(item):
                self.register_function(item)
            else:
                raise TypeError(f"Unsupported tool type: {type(item)!r}")

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            UnknownCapabilityError if not found
        """
        if name not in self._tools:
            raise UnknownCapabilityError(name)
        return self._tools[name]

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def execute(
        self,
        name: str,
        arguments: Any = None,
        call_id: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Argument payload (dict, JSON string or JSON-serializable)
            call_id: Correlation id; generated when absent
            abort_event: Optional event that cancels the running tool

        Returns:
            ToolResult from execution

        Raises:
            UnknownCapabilityError if tool not found
            ToolError subclasses raised by the tool itself
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)

        payload = parse_arguments(arguments)
        if payload is None:
            log.warning("Unparseable tool arguments, using defaults", tool=name, arguments=arguments)
        call = ToolCall(id=call_id or f"call_{uuid.uuid4().hex[:12]}", name=name, arguments=payload or {})
        bound = bind_arguments(tool.parameters, payload)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name, call_id=call.id, args=bound)
            execute_task = asyncio.create_task(tool.execute(**bound))
            wait_tasks: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                wait_tasks.add(abort_wait_task)

            timeout_seconds = tool.timeout_seconds
            if timeout_seconds is not None:
                timeout_seconds = max(1.0, float(timeout_seconds))
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = execute_task.result()
                if not isinstance(result, ToolResult):
                    result = ToolResult(content="" if result is None else str(result))
                log.info("Tool executed", tool=name, call_id=call.id, success=result.success)
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(name, "Execution aborted")

            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, call_id=call.id, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)

    async def close_all(self) -> None:
        """Close every tool exposing a close() hook; failures are logged."""
        for name, tool in list(self._tools.items()):
            closer = getattr(tool, "close", None)
            if not callable(closer):
                continue
            try:
                outcome = closer()
                if inspect.isawaitable(outcome):
                    await outcome
                log.debug("Closed tool", tool=name)
            except Exception as e:
                log.error("Error cleaning up tool", tool=name, error=str(e))
