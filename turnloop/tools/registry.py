"""Tool registry: dict-based dispatch of registered handlers.

The catalog of tools lives with the embedding application; it registers
handlers here either explicitly::

    registry.register("Read", read_file, "Read a file",
                      {"path": string_prop("File path")}, ["path"],
                      needs_permission=False, parallel_safe=True)

or with the decorator, which derives the JSON schema from the signature::

    @registry.tool("Bash", "Execute a bash command.")
    def bash(command: str, timeout: int = 30) -> str:
        ...
"""

import inspect
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, get_type_hints

from ..errors import ToolError
from ..logger import get_logger
from ..messages import Message

_log = get_logger(__name__)

PermissionCallback = Callable[[str, Dict[str, Any]], bool]


@dataclass
class ToolOutcome:
    """Result of one tool execution."""
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    data: Any = None
    extra_messages: List[Message] = field(default_factory=list)

    @classmethod
    def ok(cls, output: str = "", **kwargs) -> "ToolOutcome":
        return cls(success=True, output=output, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs) -> "ToolOutcome":
        return cls(success=False, error=error, **kwargs)


class _ToolEntry:
    """Single tool registration: handler + schema + metadata."""
    __slots__ = ("handler", "schema", "needs_permission", "parallel_safe", "wants_callback")

    def __init__(self, handler: Callable, schema: dict,
                 needs_permission: bool = True, parallel_safe: bool = False):
        self.handler = handler
        self.schema = schema
        self.needs_permission = needs_permission
        self.parallel_safe = parallel_safe
        try:
            params = inspect.signature(handler).parameters
        except (TypeError, ValueError):
            params = {}
        self.wants_callback = "permission_callback" in params


def _schema(name: str, description: str, properties: dict,
            required: list) -> dict:
    """Build an OpenAI-compatible function schema."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def string_prop(desc: str, **kw) -> dict:
    return {"type": "string", "description": desc, **kw}


def integer_prop(desc: str, **kw) -> dict:
    return {"type": "integer", "description": desc, **kw}


# Python type -> JSON Schema type
_TYPE_MAP = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _schema_from_signature(func: Callable, name: str, description: str) -> dict:
    """Derive the parameters schema from ``func``'s signature and docstring."""
    sig = inspect.signature(func)
    try:
        hints = get_type_hints(func)
    except Exception:
        hints = {}

    properties: Dict[str, dict] = {}
    required = []
    for param_name, param in sig.parameters.items():
        if param_name in ("self", "permission_callback"):
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue

        hint = hints.get(param_name)
        args = getattr(hint, "__args__", None)
        if args and type(None) in args:
            hint = next((a for a in args if a is not type(None)), None)

        prop: Dict[str, Any] = {"type": _TYPE_MAP.get(hint, "string")}
        doc_desc = _param_doc(func, param_name)
        if doc_desc:
            prop["description"] = doc_desc

        if param.default is inspect.Parameter.empty:
            required.append(param_name)
        elif param.default is not None:
            prop["default"] = param.default
        properties[param_name] = prop

    return _schema(name, description, properties, required)


def _param_doc(func: Callable, param_name: str) -> str:
    """Parameter description from a ``name: text`` docstring line."""
    for line in (func.__doc__ or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(f"{param_name}:"):
            return stripped.partition(":")[2].strip()
    return ""


class ToolRegistry:
    """Name -> handler dispatch shared by every agent in the process.

    Registration is guarded by a lock; lookups and execution need none, so
    one registry may serve several sessions running in parallel threads.
    """

    def __init__(self):
        self._tools: Dict[str, _ToolEntry] = {}
        self._lock = threading.Lock()

    def register(self, name: str, handler: Callable, description: str = "",
                 properties: Optional[dict] = None, required: Optional[list] = None,
                 needs_permission: bool = True, parallel_safe: bool = False,
                 schema: Optional[dict] = None):
        """Register ``handler`` under ``name``, replacing any previous entry."""
        if schema is None:
            schema = _schema(name, description, properties or {}, required or [])
        with self._lock:
            self._tools[name] = _ToolEntry(handler, schema, needs_permission, parallel_safe)

    def tool(self, name: Optional[str] = None, description: str = "",
             needs_permission: bool = True, parallel_safe: bool = False):
        """Decorator form of :meth:`register`."""
        def decorator(func: Callable) -> Callable:
            tool_name = name or func.__name__
            schema = _schema_from_signature(func, tool_name, description or (func.__doc__ or "").strip())
            self.register(tool_name, func, needs_permission=needs_permission,
                          parallel_safe=parallel_safe, schema=schema)
            return func
        return decorator

    def unregister(self, name: str):
        with self._lock:
            self._tools.pop(name, None)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    @property
    def schemas(self) -> List[dict]:
        """Tool definitions sent with every model request."""
        return [entry.schema for entry in self._tools.values()]

    def requires_permission(self, tool_name: str) -> bool:
        entry = self._tools.get(tool_name)
        return entry.needs_permission if entry else False

    def can_parallelize(self, tool_name: str) -> bool:
        entry = self._tools.get(tool_name)
        return bool(entry and entry.parallel_safe and not entry.needs_permission)

    def execute(self, tool_name: str, arguments: Dict[str, Any],
                permission_callback: Optional[PermissionCallback] = None) -> ToolOutcome:
        """Dispatch a tool call by name.

        Handler failures never escape: they come back as an unsuccessful
        :class:`ToolOutcome` so the turn can carry on.
        """
        entry = self._tools.get(tool_name)
        if not entry:
            return ToolOutcome.fail(f"Unknown tool: {tool_name}")

        kwargs = dict(arguments or {})
        if entry.wants_callback:
            kwargs["permission_callback"] = permission_callback

        try:
            result = entry.handler(**kwargs)
        except ToolError as e:
            _log.warning("Tool %s failed: %s", tool_name, e)
            return ToolOutcome.fail(str(e))
        except TypeError as e:
            _log.warning("Tool %s called with bad arguments: %s", tool_name, e)
            return ToolOutcome.fail(f"Invalid arguments: {e}")
        except Exception as e:
            _log.warning("Tool %s raised %s", tool_name, type(e).__name__, exc_info=True)
            return ToolOutcome.fail(f"{tool_name} error: {type(e).__name__}: {e}")

        if isinstance(result, ToolOutcome):
            return result
        if result is None:
            return ToolOutcome.ok("")
        return ToolOutcome.ok(result if isinstance(result, str) else str(result))
