"""Conversation message types shared by the context window, parser and agent."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

__all__ = ["Role", "Message", "ToolCall", "Usage", "TOOL_RESULT_PREFIX", "THINNED_RESULT_PREFIX"]

TOOL_RESULT_PREFIX = "Tool result:"
THINNED_RESULT_PREFIX = "Tool result saved to"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    role: Role
    content: str
    # Provider prompt-caching hint, e.g. "ephemeral"
    cache_control: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    @property
    def is_tool_result(self) -> bool:
        return self.role == Role.USER and self.content.startswith((TOOL_RESULT_PREFIX, THINNED_RESULT_PREFIX))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.cache_control:
            data["cache_control"] = self.cache_control
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=Role(data.get("role", "user")),
            content=data.get("content", "") or "",
            cache_control=data.get("cache_control"),
        )

    def to_provider_dict(self) -> Dict[str, Any]:
        """OpenAI/litellm chat format, with content blocks when a cache hint is set."""
        if not self.cache_control:
            return {"role": self.role.value, "content": self.content}
        return {
            "role": self.role.value,
            "content": [{
                "type": "text",
                "text": self.content,
                "cache_control": {"type": self.cache_control},
            }],
        }


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_json_dict(self) -> Dict[str, Any]:
        """Inline text-protocol shape: ``{"tool": name, "args": {...}}``."""
        return {"tool": self.name, "args": self.arguments}

    def same_call(self, other: "ToolCall") -> bool:
        return self.name == other.name and self.arguments == other.arguments


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_obj(cls, raw: Any) -> Optional["Usage"]:
        if raw is None:
            return None
        get = raw.get if isinstance(raw, dict) else (lambda k, d=0: getattr(raw, k, d))
        prompt = get("prompt_tokens", 0) or 0
        completion = get("completion_tokens", 0) or 0
        total = get("total_tokens", 0) or (prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
