"""Tool registry: dict-based dispatch from tool name to handler."""

import inspect
import json
from typing import Any, Callable, Dict, List, Optional

from ..errors import ToolError
from ..logger import get_logger
from ..messages import ToolCall

_log = get_logger(__name__)


class _ToolEntry:
    """Single tool registration: handler + schema."""
    __slots__ = ("handler", "schema", "is_async")

    def __init__(self, handler: Callable, schema: dict):
        self.handler = handler
        self.schema = schema
        self.is_async = inspect.iscoroutinefunction(handler)


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


# Shorthand helpers for property definitions
_S = lambda desc, **kw: {"type": "string", "description": desc, **kw}


class ToolRegistry:
    """Name -> handler table. Handlers may be plain functions or coroutines.

    Tool failures come back as result text, so the model sees them and the
    turn keeps going.
    """

    def __init__(self):
        self._tools: Dict[str, _ToolEntry] = {}

    def register(self, name: str, handler: Callable, description: str,
                 properties: Optional[dict] = None, required: Optional[list] = None) -> None:
        self._tools[name] = _ToolEntry(
            handler=handler,
            schema=_schema(name, description, properties or {}, required or []),
        )

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    @property
    def schemas(self) -> List[dict]:
        return [entry.schema for entry in self._tools.values()]

    def describe_for_prompt(self) -> str:
        """Plain-text tool list for models without native tool calling."""
        lines = [
            "To call a tool, write a JSON object on its own line:",
            '{"tool": "<name>", "args": {...}}',
            "",
            "Available tools:",
        ]
        for entry in self._tools.values():
            fn = entry.schema["function"]
            params = json.dumps(fn["parameters"].get("properties", {}), ensure_ascii=False)
            lines.append(f"- {fn['name']}: {fn['description']} args={params}")
        return "\n".join(lines)

    async def execute(self, call: ToolCall) -> str:
        """Dispatch a tool call by name."""
        entry = self._tools.get(call.name)
        if not entry:
            return f"❌ Unknown tool: {call.name}"

        try:
            if entry.is_async:
                result = await entry.handler(**call.arguments)
            else:
                result = entry.handler(**call.arguments)
        except ToolError as e:
            return f"❌ {e}"
        except TypeError as e:
            return f"❌ {call.name}: bad arguments: {e}"
        except Exception as e:
            _log.warning("Tool %s raised %s: %s", call.name, type(e).__name__, e)
            return f"❌ {call.name} error: {type(e).__name__}: {e}"
        return "" if result is None else str(result)
