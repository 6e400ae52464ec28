"""Tools that operate on the agent's own session: TODO list, rehydrate, final output."""

from typing import Callable

from ..acd import rehydrate_fragment
from ..context_window import ContextWindow
from ..errors import RehydrateError, ToolError
from ..session_store import SessionStore
from .registry import ToolRegistry, _S

FINAL_OUTPUT_TOOL = "final_output"

STALE_TODO_WARNING = (
    "⚠ This TODO list was written in an earlier session and may be stale. "
    "Verify each item before relying on it.\n\n"
)


class TodoTools:
    def __init__(self, store: SessionStore, check_staleness: bool = True):
        self.store = store
        self.check_staleness = check_staleness
        self._written_this_session = False

    def todo_read(self) -> str:
        text = self.store.read_todo()
        if not text or not text.strip():
            return "📝 TODO list is empty"
        prefix = ""
        if self.check_staleness and not self._written_this_session:
            prefix = STALE_TODO_WARNING
        return f"{prefix}📝 TODO list:\n{text}"

    def todo_write(self, content: str) -> str:
        if content is None:
            raise ToolError("todo_write", "content is required")
        self.store.write_todo(content)
        self._written_this_session = True
        open_items = sum(1 for line in content.splitlines() if line.strip().startswith("- [ ]"))
        done_items = sum(1 for line in content.splitlines()
                         if line.strip().lower().startswith("- [x]"))
        return f"✅ TODO list updated ({open_items} open, {done_items} done)"


def register_builtin_tools(registry: ToolRegistry, store: SessionStore,
                           get_window: Callable[[], ContextWindow],
                           check_todo_staleness: bool = True,
                           acd_enabled: bool = False) -> TodoTools:
    todos = TodoTools(store, check_todo_staleness)

    registry.register(
        "todo_read", todos.todo_read,
        "Read the session TODO list.",
    )
    registry.register(
        "todo_write", todos.todo_write,
        "Replace the session TODO list. Use '- [ ]' and '- [x]' items.",
        {"content": _S("Full TODO list in markdown")},
        ["content"],
    )

    if acd_enabled:
        def rehydrate(fragment_id: str) -> str:
            try:
                return rehydrate_fragment(get_window(), store, fragment_id)
            except RehydrateError as e:
                raise ToolError("rehydrate", str(e)) from e

        registry.register(
            "rehydrate", rehydrate,
            "Restore a dehydrated context fragment into view.",
            {"fragment_id": _S("Fragment id from a DEHYDRATED CONTEXT stub")},
            ["fragment_id"],
        )

    registry.register(
        FINAL_OUTPUT_TOOL, lambda summary: summary,
        "Finish the task and report a summary of what was done.",
        {"summary": _S("Summary of the completed work")},
        ["summary"],
    )
    return todos
