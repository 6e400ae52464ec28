"""Summarisation-based compaction of the context window."""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .context_window import ContextWindow, ThinResult
from .logger import get_logger
from .messages import Message
from .provider import CompletionRequest, Provider
from .session_store import SessionStore

_log = get_logger(__name__)

__all__ = [
    "SUMMARY_MIN_TOKENS", "CompactionConfig", "CompactionResult",
    "calculate_summary_max_tokens", "calculate_capped_summary_tokens",
    "compute_summary_budget", "should_disable_thinking", "resolve_max_tokens",
    "build_summary_messages", "perform_compaction",
]

SUMMARY_MIN_TOKENS = 1000
FALLBACK_SUMMARY_TOKENS = 5000
THINKING_HEADROOM = 1024

SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that creates concise summaries."

_DEFAULT_MAX_TOKENS = {
    "anthropic": 32000,
    "databricks": 32000,
    "openai": 32000,
    "embedded": 8192,
}


@dataclass
class CompactionConfig:
    provider_name: str
    configured_max_tokens: Optional[int] = None
    thinking_budget: Optional[int] = None
    latest_user_message: Optional[str] = None
    dehydration_stub: Optional[str] = None


@dataclass
class CompactionResult:
    success: bool
    chars_saved: int = 0
    summary_max_tokens: int = 0
    thinning: List[ThinResult] = field(default_factory=list)
    error: Optional[str] = None


def resolve_max_tokens(provider_name: str, configured: Optional[int] = None) -> int:
    if configured:
        return configured
    for family, tokens in _DEFAULT_MAX_TOKENS.items():
        if provider_name.startswith(family):
            return tokens
    return 16000


def calculate_summary_max_tokens(window: ContextWindow, configured_max_tokens: int,
                                 thinking_budget: Optional[int] = None) -> Tuple[int, bool]:
    """Headroom available for the summary reply.

    Returns ``(max_tokens, needs_reduction)``; ``needs_reduction`` is set when a
    thinking budget cannot fit in the remaining headroom.
    """
    buffer = min(max(window.total_tokens // 40, 1000), 10000)
    available = max(window.total_tokens - window.used_tokens - buffer, SUMMARY_MIN_TOKENS)
    proposed = min(available, configured_max_tokens)
    if thinking_budget:
        required = thinking_budget + THINKING_HEADROOM
        if proposed < required:
            return required, True
    return proposed, False


def calculate_capped_summary_tokens(provider_name: str, base: int,
                                    thinking_budget: Optional[int] = None) -> int:
    if provider_name.startswith("anthropic"):
        cap = max(thinking_budget + 2000, 10000) if thinking_budget else 10000
    elif provider_name.startswith("databricks"):
        cap = 10000
    elif provider_name.startswith("embedded"):
        cap = 3000
    else:
        cap = 5000
    return max(min(base, cap), SUMMARY_MIN_TOKENS)


def should_disable_thinking(summary_max_tokens: int, thinking_budget: Optional[int]) -> bool:
    if not thinking_budget:
        return False
    return summary_max_tokens <= thinking_budget + THINKING_HEADROOM


def compute_summary_budget(window: ContextWindow, store: SessionStore,
                           config: CompactionConfig) -> Tuple[int, List[ThinResult]]:
    """Summary ``max_tokens`` after the thinning fallback and provider caps."""
    configured = resolve_max_tokens(config.provider_name, config.configured_max_tokens)
    budget = config.thinking_budget
    thinning: List[ThinResult] = []

    max_tokens, needs_reduction = calculate_summary_max_tokens(window, configured, budget)
    if needs_reduction:
        _log.info("Summary headroom below thinking budget; thinning oldest third")
        thinning.append(window.thin_context(store))
        max_tokens, needs_reduction = calculate_summary_max_tokens(window, configured, budget)
    if needs_reduction:
        _log.info("Still short of headroom; thinning whole history")
        thinning.append(window.thin_context_all(store))
        max_tokens, needs_reduction = calculate_summary_max_tokens(window, configured, budget)
    if needs_reduction:
        _log.warning("Falling back to %d summary tokens", FALLBACK_SUMMARY_TOKENS)
        max_tokens = FALLBACK_SUMMARY_TOKENS

    return calculate_capped_summary_tokens(config.provider_name, max_tokens, budget), thinning


def build_summary_messages(window: ContextWindow) -> List[Message]:
    transcript = "\n".join(
        f"{m.role.value}: {m.content}" for m in window.conversation_history
    )
    prompt = window.create_summary_prompt()
    return [
        Message.system(SUMMARY_SYSTEM_PROMPT),
        Message.user(f"Based on this conversation history, {prompt}\n\nConversation:\n{transcript}"),
    ]


async def perform_compaction(provider: Provider, window: ContextWindow,
                             store: SessionStore, config: CompactionConfig) -> CompactionResult:
    """Summarise the history and reset the window to the summary.

    On any failure the window is restored to its exact prior state.
    """
    saved_history = [Message(m.role, m.content, m.cache_control)
                     for m in window.conversation_history]
    saved_thinning = window.last_thinning_percentage

    def _restore():
        window.conversation_history = saved_history
        window.last_thinning_percentage = saved_thinning
        window.recalculate_tokens()

    max_tokens, thinning = compute_summary_budget(window, store, config)
    request = CompletionRequest(
        messages=build_summary_messages(window),
        max_tokens=max_tokens,
        temperature=provider.temperature,
        stream=False,
        disable_thinking=should_disable_thinking(max_tokens, config.thinking_budget),
    )
    _log.info("Requesting summary from %s (max_tokens=%d, thinking %s)",
              provider.name, max_tokens, "off" if request.disable_thinking else "on")

    try:
        response = await provider.complete(request)
    except Exception as e:
        _restore()
        _log.error("Compaction failed: %s", e)
        return CompactionResult(success=False, summary_max_tokens=max_tokens,
                                thinning=thinning, error=str(e))

    summary = (response.content or "").strip()
    if not summary:
        _restore()
        _log.error("Compaction failed: provider returned an empty summary")
        return CompactionResult(success=False, summary_max_tokens=max_tokens,
                                thinning=thinning, error="empty summary")

    window.update_usage_from_response(response.usage)
    # Measure against the pre-thinning history so elided payloads count as saved.
    window.conversation_history = saved_history
    chars_saved = window.reset_with_summary(summary, config.latest_user_message,
                                            config.dehydration_stub)
    return CompactionResult(success=True, chars_saved=chars_saved,
                            summary_max_tokens=max_tokens, thinning=thinning)
