"""Model provider capability and its litellm-backed implementation."""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import litellm

from .errors import ProviderError
from .logger import get_logger
from .messages import Message, ToolCall, Usage

litellm.suppress_debug_info = True
_log = get_logger(__name__)

__all__ = [
    "CompletionRequest", "CompletionChunk", "CompletionResponse",
    "Provider", "LiteLLMProvider", "provider_family",
]

KNOWN_FAMILIES = ("anthropic", "databricks", "openai", "embedded")


def provider_family(model: str, explicit: Optional[str] = None) -> str:
    """Provider family used for token caps, e.g. ``anthropic/claude-x`` -> ``anthropic``."""
    if explicit:
        return explicit.lower()
    prefix = model.split("/", 1)[0].lower() if "/" in model else ""
    if prefix:
        return prefix
    if model.lower().startswith("claude"):
        return "anthropic"
    if model.lower().startswith(("gpt-", "o1", "o3", "o4")):
        return "openai"
    return "openai"


@dataclass
class CompletionRequest:
    messages: List[Message]
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: Optional[List[Dict[str, Any]]] = None
    stream: bool = True
    disable_thinking: bool = False


@dataclass
class CompletionChunk:
    content: str = ""
    finished: bool = False
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Usage] = None
    stop_reason: Optional[str] = None


@dataclass
class CompletionResponse:
    content: str = ""
    usage: Optional[Usage] = None
    stop_reason: Optional[str] = None


class Provider:
    """What the turn loop and the compaction engine need from a backend."""

    name: str = "unknown"
    model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.0
    thinking_budget: Optional[int] = None
    context_window: int = 128000
    has_native_tool_calling: bool = False
    supports_cache_control: bool = False

    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        raise NotImplementedError

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        raise NotImplementedError


def _normalize_stop_reason(reason: Optional[str]) -> Optional[str]:
    if reason == "length":
        return "max_tokens"
    if reason == "tool_calls":
        return "tool_use"
    return reason


class LiteLLMProvider(Provider):
    """Provider over litellm. Passes api_key/api_base directly to litellm,
    avoiding env-var pollution when switching between backends."""

    def __init__(self, model: str, temperature: float = 0.0,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, context_window: int = 128000,
                 thinking_budget: Optional[int] = None,
                 native_tool_calls: bool = False,
                 supports_cache_control: bool = False,
                 provider: Optional[str] = None,
                 timeout: Optional[float] = 600.0):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.context_window = context_window
        self.thinking_budget = thinking_budget
        self.has_native_tool_calling = native_tool_calls
        self.supports_cache_control = supports_cache_control
        self.name = provider_family(model, provider)
        self.timeout = timeout

    def _build_kwargs(self, request: CompletionRequest, stream: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_provider_dict() for m in request.messages],
            "temperature": self.temperature if request.temperature is None else request.temperature,
            "max_tokens": request.max_tokens or self.max_tokens,
            "stream": stream,
        }
        if request.tools and self.has_native_tool_calling:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        if self.thinking_budget and not request.disable_thinking and self.name == "anthropic":
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
            # Anthropic only accepts temperature 1 with extended thinking
            kwargs["temperature"] = 1.0
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.timeout:
            kwargs["timeout"] = self.timeout
        return kwargs

    def _wrap_error(self, e: Exception) -> ProviderError:
        status = getattr(e, "status_code", None)
        label = f"{type(e).__name__} (status {status})" if status else type(e).__name__
        return ProviderError(f"{label}: {e}", provider=self.name)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        kwargs = self._build_kwargs(request, stream=False)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e) from e

        choice = response.choices[0]
        return CompletionResponse(
            content=choice.message.content or "",
            usage=Usage.from_obj(getattr(response, "usage", None)),
            stop_reason=_normalize_stop_reason(choice.finish_reason),
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        kwargs = self._build_kwargs(request, stream=True)
        try:
            response_stream = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e) from e

        tc_data: Dict[int, Dict[str, str]] = {}
        usage: Optional[Usage] = None
        stop_reason: Optional[str] = None

        try:
            async for chunk in response_stream:
                if getattr(chunk, "usage", None):
                    usage = Usage.from_obj(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if getattr(choice, "finish_reason", None):
                    stop_reason = _normalize_stop_reason(choice.finish_reason)

                if getattr(delta, "tool_calls", None):
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index
                        slot = tc_data.setdefault(idx, {"id": "", "name": "", "args": ""})
                        if tc_delta.id:
                            slot["id"] = tc_delta.id
                        if tc_delta.function:
                            if tc_delta.function.name:
                                slot["name"] = tc_delta.function.name
                            if tc_delta.function.arguments:
                                slot["args"] += tc_delta.function.arguments

                text = getattr(delta, "content", None)
                if text:
                    yield CompletionChunk(content=text)
        except Exception as e:
            raise self._wrap_error(e) from e

        tool_calls = None
        if tc_data:
            tool_calls = []
            for idx in sorted(tc_data):
                tc = tc_data[idx]
                try:
                    args = json.loads(tc["args"]) if tc["args"] else {}
                except json.JSONDecodeError:
                    args = {"_raw": tc["args"]}
                tool_calls.append(ToolCall(id=tc["id"] or f"native_{idx}", name=tc["name"],
                                           arguments=args))

        yield CompletionChunk(finished=True, tool_calls=tool_calls,
                              usage=usage, stop_reason=stop_reason)
