"""Context window token budget, thinning and reset-with-summary."""

import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .logger import get_logger
from .messages import THINNED_RESULT_PREFIX, Message, Role
from .session_store import SessionStore
from .streaming_parser import find_json_object_end
from .tokenizer import estimate_tokens

_log = get_logger(__name__)

__all__ = ["ContextWindow", "ThinScope", "ThinResult"]

THINNING_LADDER = (50, 60, 70, 80)
COMPACTION_THRESHOLD = 80.0
TOOL_RESULT_THIN_FLOOR = 1000
TOOL_CALL_PAYLOAD_FLOOR = 500
TODO_TOOLS = ("todo_read", "todo_write")
AGENT_CONFIG_MARKER = "Agent Configuration"

_TODO_CALL_RE = re.compile(r'"tool"\s*:\s*"(?:%s)"' % "|".join(TODO_TOOLS))
_TOOL_NAME_RE = re.compile(r'"tool"\s*:\s*"([^"]+)"')
_EMBEDDED_CALL_RE = re.compile(r'\{\s*"tool"\s*:')

SUMMARY_PROMPT = """\
Please provide a comprehensive summary of our conversation so far. Include:

1. **Main Topic/Goal**: What is the primary task or objective being worked on?
2. **Key Decisions**: What important decisions have been made?
3. **Actions Taken**: What specific actions, commands, or code changes were completed?
4. **Current State**: What is the current status of the work?
5. **Important Context**: Any critical information, file paths, or technical details that must be preserved.
6. **Pending Items**: What remains to be done or what was the user's last request?

Keep the summary concise but complete enough that the conversation can continue \
seamlessly from this point."""


class ThinScope(str, Enum):
    FIRST_THIRD = "first_third"
    ALL = "all"

    @property
    def file_prefix(self) -> str:
        return "leaned" if self is ThinScope.FIRST_THIRD else "skinny"


@dataclass
class ThinResult:
    scope: ThinScope
    before_percentage: int
    after_percentage: int
    leaned_count: int = 0
    tool_call_leaned_count: int = 0
    chars_saved: int = 0

    @property
    def had_changes(self) -> bool:
        return self.leaned_count > 0 or self.tool_call_leaned_count > 0

    @property
    def count_modified(self) -> int:
        return self.leaned_count + self.tool_call_leaned_count

    def summary(self) -> str:
        if not self.had_changes:
            return f"Context thinning ({self.scope.value}): nothing to thin at {self.before_percentage}%"
        return (
            f"Context thinned ({self.scope.value}) {self.before_percentage}% -> "
            f"{self.after_percentage}%: {self.leaned_count} tool results, "
            f"{self.tool_call_leaned_count} tool calls, {self.chars_saved:,} chars saved"
        )


class ContextWindow:
    """Ordered message log with a running token estimate.

    ``used_tokens`` is always the sum of :func:`estimate_tokens` over the
    history; provider-reported usage only feeds ``cumulative_tokens``.
    """

    def __init__(self, total_tokens: int):
        self.total_tokens = total_tokens
        self.used_tokens = 0
        self.cumulative_tokens = 0
        self.conversation_history: List[Message] = []
        self.last_thinning_percentage = 0

    def __len__(self) -> int:
        return len(self.conversation_history)

    # ── Accounting ──

    def add_message(self, message: Message) -> bool:
        """Append ``message``. Returns False when it was skipped as empty."""
        if not message.content or not message.content.strip():
            _log.warning("Skipping empty %s message", message.role.value)
            return False
        history = self.conversation_history
        if message.role == Role.ASSISTANT and history and history[-1].role == Role.ASSISTANT:
            raise ValueError("Refusing to append two consecutive assistant messages")

        tokens = estimate_tokens(message.content)
        history.append(message)
        self.used_tokens += tokens
        self.cumulative_tokens += tokens
        return True

    def update_usage_from_response(self, usage) -> None:
        if usage is None:
            return
        self.cumulative_tokens += getattr(usage, "total_tokens", 0) or 0

    def recalculate_tokens(self) -> int:
        self.used_tokens = sum(estimate_tokens(m.content) for m in self.conversation_history)
        return self.used_tokens

    def percentage_used(self) -> float:
        if self.total_tokens <= 0:
            return 0.0
        return (self.used_tokens / self.total_tokens) * 100.0

    def remaining_tokens(self) -> int:
        return max(self.total_tokens - self.used_tokens, 0)

    def should_compact(self) -> bool:
        return self.percentage_used() >= COMPACTION_THRESHOLD

    def _current_threshold(self) -> int:
        pct = int(self.percentage_used())
        return min((pct // 10) * 10, THINNING_LADDER[-1])

    def should_thin(self) -> bool:
        """True once per ladder step (50/60/70/80%) not yet thinned at."""
        if int(self.percentage_used()) < THINNING_LADDER[0]:
            return False
        return self._current_threshold() > self.last_thinning_percentage

    def pinned_count(self) -> int:
        """Number of leading messages that destructive operations never touch."""
        history = self.conversation_history
        if not history:
            return 0
        if (len(history) > 1 and history[1].role == Role.SYSTEM
                and AGENT_CONFIG_MARKER in history[1].content):
            return 2
        return 1

    # ── History management ──

    def clear_conversation(self) -> None:
        self.conversation_history = [m for m in self.conversation_history if m.role == Role.SYSTEM]
        self.recalculate_tokens()
        self.last_thinning_percentage = 0

    def create_summary_prompt(self) -> str:
        return SUMMARY_PROMPT

    def reset_with_summary(self, summary: str,
                           latest_user_message: Optional[str] = None,
                           dehydration_stub: Optional[str] = None) -> int:
        """Replace history with a summary, keeping the pinned system messages.

        Returns the number of characters removed.
        """
        history = self.conversation_history
        old_chars = sum(len(m.content) for m in history)

        kept: List[Message] = list(history[:self.pinned_count()])
        if dehydration_stub:
            kept.append(Message.system(dehydration_stub))
        kept.append(Message.user(f"Previous conversation summary:\n\n{summary}"))
        if latest_user_message and latest_user_message.strip():
            kept.append(Message.user(latest_user_message))

        self.conversation_history = kept
        self.recalculate_tokens()
        self.last_thinning_percentage = 0

        new_chars = sum(len(m.content) for m in kept)
        saved = max(old_chars - new_chars, 0)
        _log.info("Context reset with summary: %d messages kept, %d chars saved", len(kept), saved)
        return saved

    # ── Thinning ──

    def thin_context(self, store: SessionStore) -> ThinResult:
        """Thin oversized payloads in the oldest third of the history."""
        return self.thin_context_with_scope(store, ThinScope.FIRST_THIRD)

    def thin_context_all(self, store: SessionStore) -> ThinResult:
        """Thin oversized payloads across the whole history."""
        return self.thin_context_with_scope(store, ThinScope.ALL)

    def thin_context_with_scope(self, store: SessionStore, scope: ThinScope) -> ThinResult:
        before = int(self.percentage_used())
        if scope is ThinScope.FIRST_THIRD:
            self.last_thinning_percentage = max(self.last_thinning_percentage,
                                                self._current_threshold())

        history = self.conversation_history
        end = len(history) // 3 if scope is ThinScope.FIRST_THIRD else len(history)
        result = ThinResult(scope=scope, before_percentage=before, after_percentage=before)
        stamp = int(time.time() * 1000)

        for idx in range(self.pinned_count(), end):
            msg = history[idx]
            if msg.is_tool_result:
                saved = self._thin_tool_result(store, scope, idx, stamp)
                if saved:
                    result.leaned_count += 1
                    result.chars_saved += saved
            elif msg.role == Role.ASSISTANT:
                count, saved = self._thin_tool_call_payloads(store, scope, idx, stamp)
                result.tool_call_leaned_count += count
                result.chars_saved += saved

        if result.had_changes:
            self.recalculate_tokens()
        result.after_percentage = int(self.percentage_used())
        _log.info(result.summary())
        return result

    def _is_todo_result(self, idx: int) -> bool:
        """Whether the result at ``idx`` answers a TODO tool call.

        One assistant message may carry several calls, followed by one
        result message per call in the same order.
        """
        history = self.conversation_history
        j = idx - 1
        while j >= 0 and history[j].is_tool_result:
            j -= 1
        if j < 0 or history[j].role != Role.ASSISTANT:
            return False
        names = _TOOL_NAME_RE.findall(history[j].content)
        offset = idx - j - 1
        if offset < len(names):
            return names[offset] in TODO_TOOLS
        return bool(_TODO_CALL_RE.search(history[j].content))

    def _thin_tool_result(self, store: SessionStore, scope: ThinScope,
                          idx: int, stamp: int) -> int:
        msg = self.conversation_history[idx]
        if len(msg.content) <= TOOL_RESULT_THIN_FLOOR or self._is_todo_result(idx):
            return 0
        name = f"{scope.file_prefix}_tool_result_{stamp}_{idx}.txt"
        path = store.save_thinned(name, msg.content)
        replacement = f"{THINNED_RESULT_PREFIX} {path}"
        saved = len(msg.content) - len(replacement)
        msg.content = replacement
        return saved

    def _thin_tool_call_payloads(self, store: SessionStore, scope: ThinScope,
                                 idx: int, stamp: int) -> Tuple[int, int]:
        msg = self.conversation_history[idx]
        content = msg.content
        pieces: List[str] = []
        cursor = 0
        count = 0
        saved = 0

        for match in _EMBEDDED_CALL_RE.finditer(content):
            start = match.start()
            if start < cursor:
                continue
            end = find_json_object_end(content, start)
            if end is None:
                break
            raw = content[start:end + 1]
            try:
                obj = json.loads(raw)
            except json.JSONDecodeError:
                continue
            replaced = self._elide_payload(store, scope, idx, stamp, count, obj)
            if replaced is None:
                continue
            new_raw = json.dumps(replaced, ensure_ascii=False)
            pieces.append(content[cursor:start])
            pieces.append(new_raw)
            cursor = end + 1
            count += 1
            saved += len(raw) - len(new_raw)

        if count:
            pieces.append(content[cursor:])
            msg.content = "".join(pieces)
        return count, saved

    @staticmethod
    def _elide_payload(store: SessionStore, scope: ThinScope, idx: int, stamp: int,
                       seq: int, obj: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(obj, dict) or not isinstance(obj.get("args"), dict):
            return None
        tool = obj.get("tool")
        if tool == "write_file":
            field, label = "content", "content"
        elif tool == "str_replace":
            field, label = "diff", "diff"
        else:
            return None
        payload = obj["args"].get(field)
        if not isinstance(payload, str) or len(payload) <= TOOL_CALL_PAYLOAD_FLOOR:
            return None
        name = f"{scope.file_prefix}_{tool}_{field}_{stamp}_{idx}_{seq}.txt"
        path = store.save_thinned(name, payload)
        args = dict(obj["args"])
        args[field] = f"<{label} saved to {path}>"
        return {**obj, "args": args}

    # ── Persistence ──

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used_tokens": self.used_tokens,
            "total_tokens": self.total_tokens,
            "cumulative_tokens": self.cumulative_tokens,
            "percentage_used": round(self.percentage_used(), 2),
            "last_thinning_percentage": self.last_thinning_percentage,
            "conversation_history": [m.to_dict() for m in self.conversation_history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextWindow":
        window = cls(int(data.get("total_tokens", 0)))
        window.conversation_history = [
            Message.from_dict(m) for m in data.get("conversation_history", [])
        ]
        window.cumulative_tokens = int(data.get("cumulative_tokens", 0))
        window.last_thinning_percentage = int(data.get("last_thinning_percentage", 0))
        # used_tokens is derived from the history, never trusted from disk
        window.recalculate_tokens()
        return window
