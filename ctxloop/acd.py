"""Dehydrated context: conversation segments moved to disk as fragments.

A fragment is written when the agent dehydrates older history at the end of a
turn. The history keeps a short stub naming the fragment; only an explicit
``rehydrate`` tool call brings the messages back into view. Each fragment
points at the one dehydrated before it, so the agent can walk back further
when it has the budget to do so.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .context_window import ContextWindow
from .errors import RehydrateError
from .logger import get_logger
from .messages import Message, Role
from .session_store import SessionStore

_log = get_logger(__name__)

__all__ = ["Fragment", "dehydrate_context", "rehydrate_fragment", "DEHYDRATED_MARKER"]

DEHYDRATED_MARKER = "⚡ DEHYDRATED CONTEXT:"
MAX_TOPICS = 5
TOPIC_CHARS = 50
REHYDRATE_MESSAGE_CHARS = 2000
REHYDRATE_WARN_RATIO = 0.7

_TOOL_NAME_RE = re.compile(r'"tool"\s*:\s*"([^"]+)"')
_PATH_RE = re.compile(r'"path"\s*:\s*"([^"]+)"')


def _new_fragment_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Fragment:
    fragment_id: str
    created_at: str
    messages: List[Message]
    preceding_fragment_id: Optional[str] = None
    tool_call_summary: Dict[str, int] = field(default_factory=dict)
    topics: List[str] = field(default_factory=list)
    estimated_tokens: int = 0
    first_user_message: Optional[str] = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == Role.USER)

    @property
    def assistant_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == Role.ASSISTANT)

    @classmethod
    def from_messages(cls, messages: List[Message],
                      preceding_fragment_id: Optional[str] = None) -> "Fragment":
        tool_calls: Dict[str, int] = {}
        topics: List[str] = []
        first_user = None
        chars = 0

        for msg in messages:
            chars += len(msg.content)
            if msg.role == Role.ASSISTANT:
                for name in _TOOL_NAME_RE.findall(msg.content):
                    tool_calls[name] = tool_calls.get(name, 0) + 1
                if '"write_file"' in msg.content or '"str_replace"' in msg.content:
                    for path in _PATH_RE.findall(msg.content):
                        _add_topic(topics, f"edited {path}")
            elif msg.role == Role.USER and not msg.is_tool_result:
                first_line = msg.content.strip().splitlines()[0] if msg.content.strip() else ""
                if first_user is None and first_line:
                    first_user = first_line
                if first_line:
                    _add_topic(topics, first_line[:TOPIC_CHARS])

        return cls(
            fragment_id=_new_fragment_id(),
            created_at=datetime.now(timezone.utc).isoformat(),
            messages=list(messages),
            preceding_fragment_id=preceding_fragment_id,
            tool_call_summary=tool_calls,
            topics=topics,
            estimated_tokens=int((chars / 4) * 1.1),
            first_user_message=first_user,
        )

    def generate_stub(self) -> str:
        calls = sum(self.tool_call_summary.values())
        breakdown = ", ".join(f"{name} x{n}" for name, n in
                              sorted(self.tool_call_summary.items(), key=lambda kv: -kv[1]))
        task = self.first_user_message or "Earlier work"
        detail = f" ({breakdown})" if breakdown else ""
        return (
            "---\n"
            f"{task}\n\n"
            f"{DEHYDRATED_MARKER} {calls} tool calls{detail}, {self.message_count} total msgs. "
            f'To restore, call: rehydrate(fragment_id: "{self.fragment_id}")\n'
            "---"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fragment_id": self.fragment_id,
            "created_at": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
            "message_count": self.message_count,
            "user_message_count": self.user_message_count,
            "assistant_message_count": self.assistant_message_count,
            "tool_call_summary": dict(self.tool_call_summary),
            "estimated_tokens": self.estimated_tokens,
            "topics": list(self.topics),
            "preceding_fragment_id": self.preceding_fragment_id,
            "first_user_message": self.first_user_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fragment":
        return cls(
            fragment_id=data["fragment_id"],
            created_at=data.get("created_at", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            preceding_fragment_id=data.get("preceding_fragment_id"),
            tool_call_summary=dict(data.get("tool_call_summary", {})),
            topics=list(data.get("topics", [])),
            estimated_tokens=int(data.get("estimated_tokens", 0)),
            first_user_message=data.get("first_user_message"),
        )

    def save(self, store: SessionStore) -> None:
        store.save_fragment(self.fragment_id, self.to_dict())

    @classmethod
    def load(cls, store: SessionStore, fragment_id: str) -> Optional["Fragment"]:
        data = store.load_fragment(fragment_id)
        return cls.from_dict(data) if data else None


def _add_topic(topics: List[str], topic: str) -> None:
    if len(topics) < MAX_TOPICS and topic not in topics:
        topics.append(topic)


def dehydrate_context(window: ContextWindow, store: SessionStore,
                      preceding_fragment_id: Optional[str] = None) -> Optional[Fragment]:
    """Move settled history into a fragment, leaving a stub and the final reply.

    Messages after the most recent stub (if any) up to, but excluding, the
    last assistant reply are dehydrated. Pinned system messages stay.
    """
    history = window.conversation_history
    pinned = window.pinned_count()

    start = pinned
    for idx in range(len(history) - 1, pinned - 1, -1):
        if DEHYDRATED_MARKER in history[idx].content:
            # the stub and the summary that follows it stay in view
            start = idx + 2
            break

    last_assistant = None
    for idx in range(len(history) - 1, start - 1, -1):
        if history[idx].role == Role.ASSISTANT:
            last_assistant = idx
            break
    if last_assistant is None or last_assistant <= start:
        return None

    span = history[start:last_assistant]
    segment = [m for m in span if m.role != Role.SYSTEM]
    if not segment:
        return None

    fragment = Fragment.from_messages(segment, preceding_fragment_id)
    fragment.save(store)

    final_reply = history[last_assistant]
    window.conversation_history = (
        history[:start]
        + [m for m in span if m.role == Role.SYSTEM]
        + [Message.user(fragment.generate_stub()), final_reply]
        + history[last_assistant + 1:]
    )
    window.recalculate_tokens()
    _log.info("Dehydrated %d messages into fragment %s (~%d tokens)",
              fragment.message_count, fragment.fragment_id, fragment.estimated_tokens)
    return fragment


def rehydrate_fragment(window: ContextWindow, store: SessionStore, fragment_id: str) -> str:
    """Format a fragment's messages for the model, if they fit the budget."""
    fragment = Fragment.load(store, fragment_id)
    if fragment is None:
        raise RehydrateError(f"Fragment '{fragment_id}' not found")

    available = window.remaining_tokens()
    if fragment.estimated_tokens > available:
        raise RehydrateError(
            f"Fragment '{fragment_id}' needs ~{fragment.estimated_tokens} tokens "
            f"but only {available} are available. Compact or thin the context first."
        )

    lines = [f"Rehydrated fragment {fragment.fragment_id} "
             f"({fragment.message_count} messages, ~{fragment.estimated_tokens} tokens)"]
    if fragment.estimated_tokens > available * REHYDRATE_WARN_RATIO:
        lines.append(f"⚠ This fragment uses over {int(REHYDRATE_WARN_RATIO * 100)}% "
                     f"of the remaining context.")
    lines.append("")
    for msg in fragment.messages:
        content = msg.content
        if len(content) > REHYDRATE_MESSAGE_CHARS:
            content = content[:REHYDRATE_MESSAGE_CHARS] + "... [truncated]"
        lines.append(f"[{msg.role.value}] {content}")
        lines.append("")
    if fragment.preceding_fragment_id:
        lines.append(
            f'Earlier context is available: rehydrate(fragment_id: "{fragment.preceding_fragment_id}")'
        )
    return "\n".join(lines).rstrip()

