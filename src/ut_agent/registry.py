# registry.py
# Tool registry: turns collaborator objects into schema-described tools.
#
# Two metadata conventions feed one internal ToolSpec:
#   native: methods decorated with @tool, parameters typed as
#           Annotated[T, P("description")]
#   compat: a class-level __tools__ tuple naming plain methods whose
#           Google-style docstrings supply the descriptions
#
# invoke() is total: every failure comes back as an "Error: ..." string so
# the agent loop can feed it to the model as an ordinary tool result.

import inspect
import logging
import re
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Annotated, Callable, get_args, get_origin

from ut_agent.models import ParameterSchema, PropertySchema, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

NO_RETURN_VALUE = "Success (no return value)"

_JSON_TYPES: dict[type, str] = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolArgumentError(ValueError):
    """Raised when a tool call's arguments cannot satisfy the tool signature."""


# ---------------------------------------------------------------------------
# Native convention
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class P:
    """Parameter metadata for Annotated[...] hints on @tool methods."""

    description: str = ""
    required: bool | None = None


@dataclass(frozen=True)
class _ToolMarker:
    name: str | None
    description: str


def tool(description: str = "", name: str | None = None) -> Callable:
    """Mark a method as a tool. The method name is the tool name unless overridden."""

    def decorate(fn: Callable) -> Callable:
        fn.__tool__ = _ToolMarker(name=name, description=description)
        return fn

    return decorate


# ---------------------------------------------------------------------------
# Internal specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolParameter:
    name: str
    python_type: type
    description: str = ""
    required: bool = True
    default: Any = None

    @property
    def json_type(self) -> str:
        return _JSON_TYPES.get(self.python_type, "string")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=ParameterSchema(
                properties={
                    p.name: PropertySchema(type=p.json_type, description=p.description)
                    for p in self.parameters
                },
                required=[p.name for p in self.parameters if p.required],
            ),
        )


def _unwrap_optional(hint: Any) -> Any:
    args = get_args(hint)
    if get_origin(hint) in (typing.Union, types.UnionType):
        non_null = [arg for arg in args if arg is not type(None)]
        if len(non_null) == 1:
            return non_null[0]
    return hint


def _split_annotated(hint: Any) -> tuple[Any, P | None]:
    if get_origin(hint) is Annotated:
        base, *extras = get_args(hint)
        meta = next((item for item in extras if isinstance(item, P)), None)
        return _unwrap_optional(base), meta
    return _unwrap_optional(hint), None


def _signature_params(method: Callable) -> list[tuple[inspect.Parameter, Any]]:
    try:
        hints = typing.get_type_hints(method, include_extras=True)
    except (NameError, TypeError):
        hints = {}
    params = []
    for param in inspect.signature(method).parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        params.append((param, hints.get(param.name, param.annotation)))
    return params


def _python_type(hint: Any) -> type:
    return hint if hint in _JSON_TYPES else str


def native_spec(method: Callable) -> ToolSpec:
    """Build a ToolSpec from an @tool method with Annotated parameters."""
    marker: _ToolMarker = method.__tool__
    parameters = []
    for param, hint in _signature_params(method):
        base, meta = _split_annotated(hint)
        has_default = param.default is not inspect.Parameter.empty
        required = meta.required if meta is not None and meta.required is not None else not has_default
        parameters.append(
            ToolParameter(
                name=param.name,
                python_type=_python_type(base),
                description=meta.description if meta else "",
                required=required,
                default=param.default if has_default else None,
            )
        )
    return ToolSpec(
        name=marker.name or method.__name__,
        description=marker.description or _docstring_summary(inspect.getdoc(method) or ""),
        parameters=tuple(parameters),
    )


# ---------------------------------------------------------------------------
# Compatibility convention
# ---------------------------------------------------------------------------

_ARG_LINE = re.compile(r"^\s+(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")


def _docstring_summary(doc: str) -> str:
    summary = doc.split("\n\n", 1)[0]
    return " ".join(line.strip() for line in summary.splitlines()).strip()


def _docstring_args(doc: str) -> dict[str, str]:
    """Parameter descriptions from a Google-style ``Args:`` section."""
    descriptions: dict[str, str] = {}
    lines = doc.splitlines()
    stripped = [line.strip() for line in lines]
    if "Args:" not in stripped:
        return descriptions
    entry_indent: int | None = None
    current: str | None = None
    for line in lines[stripped.index("Args:") + 1:]:
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        if entry_indent is None:
            entry_indent = indent
        match = _ARG_LINE.match(line)
        if indent == entry_indent and match:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            descriptions[current] = f"{descriptions[current]} {line.strip()}"
    return descriptions


def compat_spec(method: Callable) -> ToolSpec:
    """Build a ToolSpec from a plain method listed in its class's __tools__."""
    doc = inspect.getdoc(method) or ""
    arg_docs = _docstring_args(doc)
    parameters = []
    for param, hint in _signature_params(method):
        has_default = param.default is not inspect.Parameter.empty
        base, _ = _split_annotated(hint)
        parameters.append(
            ToolParameter(
                name=param.name,
                python_type=_python_type(base),
                description=arg_docs.get(param.name, ""),
                required=not has_default,
                default=param.default if has_default else None,
            )
        )
    return ToolSpec(
        name=method.__name__,
        description=_docstring_summary(doc),
        parameters=tuple(parameters),
    )


# ---------------------------------------------------------------------------
# Coercion and execution
# ---------------------------------------------------------------------------


def coerce_argument(param: ToolParameter, value: Any) -> Any:
    target = param.python_type
    try:
        if target is bool:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() == "true"
        if target is int:
            if isinstance(value, int) and not isinstance(value, bool):
                return value
            if isinstance(value, float) and value.is_integer():
                return int(value)
            return int(str(value).strip())
        if target is float:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
            return float(str(value).strip())
    except ValueError as exc:
        raise ToolArgumentError(
            f"Invalid value for parameter '{param.name}': expected {param.json_type}, got {value!r}"
        ) from exc
    return value if isinstance(value, str) else str(value)


@dataclass(frozen=True)
class ToolExecutor:
    """Binds one ToolSpec to the callable that implements it."""

    spec: ToolSpec
    method: Callable[..., Any] = field(repr=False)

    def bind(self, arguments: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        for param in self.spec.parameters:
            value = arguments.get(param.name)
            if value is None:
                if param.required:
                    raise ToolArgumentError(f"Missing required parameter: {param.name}")
                kwargs[param.name] = param.default
                continue
            kwargs[param.name] = coerce_argument(param, value)
        return kwargs

    def __call__(self, arguments: dict[str, Any]) -> str:
        result = self.method(**self.bind(arguments))
        if result is None:
            return NO_RETURN_VALUE
        return result if isinstance(result, str) else str(result)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """
    Name → executor map built from registered collaborator objects.

    The dispatch path keeps no state beyond that map; any side effects
    belong to the wrapped collaborators.
    """

    def __init__(self) -> None:
        self._executors: dict[str, ToolExecutor] = {}

    def register(self, obj: object) -> list[str]:
        """Register every tool method on obj. Returns the registered names."""
        registered = []
        compat_names = set(getattr(type(obj), "__tools__", ()))
        for attr in dir(type(obj)):
            if attr.startswith("__"):
                continue
            method = getattr(obj, attr, None)
            if not callable(method):
                continue
            if hasattr(method, "__tool__"):
                spec = native_spec(method)
            elif attr in compat_names:
                spec = compat_spec(method)
            else:
                continue
            if spec.name in self._executors:
                logger.warning("Tool %r re-registered by %s", spec.name, type(obj).__name__)
            self._executors[spec.name] = ToolExecutor(spec=spec, method=method)
            registered.append(spec.name)
        logger.debug("Registered %d tool(s) from %s", len(registered), type(obj).__name__)
        return registered

    def register_all(self, objs: list[object]) -> list[str]:
        names = []
        for obj in objs:
            names.extend(self.register(obj))
        return names

    def clear(self) -> None:
        self._executors.clear()

    @property
    def names(self) -> list[str]:
        return sorted(self._executors)

    @property
    def definitions(self) -> list[ToolDefinition]:
        return [self._executors[name].spec.definition() for name in self.names]

    def has_tools(self) -> bool:
        return bool(self._executors)

    def __len__(self) -> int:
        return len(self._executors)

    def __contains__(self, name: object) -> bool:
        return name in self._executors

    def invoke(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        """Run a tool by name. Never raises; failures come back as 'Error: ...'."""
        executor = self._executors.get(name) if isinstance(name, str) else None
        if executor is None:
            logger.warning("Unknown tool requested: %s", name)
            return f"Error: Unknown tool: {name}"
        try:
            return executor(dict(arguments or {}))
        except Exception as exc:
            logger.debug("Tool %s failed", name, exc_info=True)
            return f"Error: {str(exc) or type(exc).__name__}"

    def invoke_call(self, call: ToolCall) -> str:
        return self.invoke(call.name, call.arguments)
