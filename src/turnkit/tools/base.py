"""Tool contract and function-backed tools."""
from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, get_type_hints

from turnkit.runtime.process import OutputCallback

if TYPE_CHECKING:
    from turnkit.steering import CancellationToken


@dataclass
class ToolOutput:
    """What a tool hands back to the dispatcher."""

    content: str
    is_error: bool = False
    exit_code: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Tool(ABC):
    """
    Base class for tools the model can call.

    ``execute`` receives arguments that already passed schema validation, a
    cancellation token it should honour at every await, and an optional
    callback for incremental output. It returns a :class:`ToolOutput` or a
    plain string, or raises :class:`~turnkit.errors.ToolExecutionError`.
    """

    timeout: float | None = None  # per-tool override of the dispatcher timeout

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]: ...

    @abstractmethod
    async def execute(
        self,
        args: dict[str, Any],
        cancel: CancellationToken,
        on_output: OutputCallback | None = None,
    ) -> ToolOutput | str: ...

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


_JSON_TYPES: dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}

_INJECTED = ("cancel", "on_output")


def schema_from_signature(fn: Callable[..., Any]) -> dict[str, Any]:
    """Derive a JSON schema from a function's annotated parameters."""
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for pname, param in sig.parameters.items():
        if pname in _INJECTED or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        hint = hints.get(pname, str)
        origin = getattr(hint, "__origin__", hint)
        prop: dict[str, Any] = {"type": _JSON_TYPES.get(origin, "string")}
        properties[pname] = prop
        if param.default is inspect.Parameter.empty:
            required.append(pname)

    return {"type": "object", "properties": properties, "required": required}


class FunctionTool(Tool):
    """
    Wrap a plain (sync or async) function as a tool.

    Arguments are passed as keyword arguments. If the function declares a
    ``cancel`` or ``on_output`` parameter, the dispatcher's token and output
    callback are passed through.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._fn = fn
        self._name = name or fn.__name__
        self._description = description or inspect.getdoc(fn) or ""
        self._parameters = parameters or schema_from_signature(fn)
        self.timeout = timeout
        self._accepts = set(inspect.signature(fn).parameters)

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict[str, Any]:
        return self._parameters

    async def execute(
        self,
        args: dict[str, Any],
        cancel: CancellationToken,
        on_output: OutputCallback | None = None,
    ) -> ToolOutput | str:
        kwargs = dict(args)
        if "cancel" in self._accepts:
            kwargs["cancel"] = cancel
        if "on_output" in self._accepts:
            kwargs["on_output"] = on_output

        if inspect.iscoroutinefunction(self._fn):
            result = await self._fn(**kwargs)
        else:
            result = await asyncio.to_thread(self._fn, **kwargs)

        if isinstance(result, ToolOutput):
            return result
        return result if isinstance(result, str) else str(result)


def tool(
    fn: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    parameters: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> Any:
    """
    Decorator turning a function into a :class:`FunctionTool`.

    Usage:
        @tool
        async def add(a: int, b: int) -> str:
            \"\"\"Add two integers.\"\"\"
            return str(a + b)

        @tool(name="search", timeout=10)
        def search_docs(query: str) -> str: ...
    """

    def wrap(f: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(
            f, name=name, description=description, parameters=parameters, timeout=timeout
        )

    if fn is not None:
        return wrap(fn)
    return wrap
