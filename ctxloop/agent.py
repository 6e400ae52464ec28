"""Turn loop: stream a response, run its tool calls, keep the window in budget."""

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .acd import Fragment, dehydrate_context
from .compaction import SUMMARY_MIN_TOKENS, CompactionConfig, CompactionResult, perform_compaction
from .config import Config
from .context_window import ContextWindow, ThinResult, ThinScope
from .error_handling import ErrorContext, classify_error, ErrorKind
from .errors import EmptyResponseError
from .logger import get_logger
from .messages import Message, Role, ToolCall
from .provider import CompletionRequest, Provider
from .retry import RetryConfig, RetryStatus, execute_with_retry
from .session_store import SessionStore
from .streaming_parser import StreamingToolParser, clean_llm_tokens
from .tools import ToolRegistry, register_builtin_tools
from .tools.builtin import FINAL_OUTPUT_TOOL
from .ui_writer import NullUIWriter, UIWriter

_log = get_logger(__name__)

__all__ = ["Agent", "TaskResult", "ContinueReason"]

MAX_AUTO_CONTINUES = 5
AGGRESSIVE_THIN_PERCENT = 90.0
CACHE_HINT_INTERVAL = 10
MAX_CACHE_HINTS = 4

INCOMPLETE_TOOL_CALL_PROMPT = (
    "Your previous response was cut off mid-tool-call. "
    "Please complete the tool call and continue."
)
TRUNCATED_RESPONSE_PROMPT = "Please continue until you are done. Provide a summary when complete."

DEFAULT_SYSTEM_PROMPT = """\
You are ctxloop, an autonomous coding agent working inside the user's project.
Work step by step: inspect before changing, make focused edits, verify results.
Keep a TODO list with todo_write for multi-step tasks and read it with todo_read.
When the task is done, call final_output with a short summary of what changed."""


class ContinueReason(str, Enum):
    TOOLS_EXECUTED = "tools_executed"
    INCOMPLETE_TOOL_CALL = "incomplete_tool_call"
    UNEXECUTED_TOOL_CALL = "unexecuted_tool_call"
    MAX_TOKENS_TRUNCATION = "max_tokens_truncation"


@dataclass
class TaskResult:
    response: str
    success: bool = True
    iterations: int = 0
    tool_calls: int = 0
    stop_reason: str = "completed"
    error: Optional[str] = None


@dataclass
class _StreamOutcome:
    text: str
    stop_reason: Optional[str] = None
    usage: Any = None
    interrupted: bool = False


class Agent:
    def __init__(self, provider: Provider, store: SessionStore,
                 tools: Optional[ToolRegistry] = None,
                 ui: Optional[UIWriter] = None,
                 config: Optional[Config] = None,
                 system_prompt: str = DEFAULT_SYSTEM_PROMPT,
                 project_context: Optional[str] = None,
                 total_tokens: Optional[int] = None):
        self.provider = provider
        self.store = store
        self.tools = tools or ToolRegistry()
        self.ui = ui or NullUIWriter()
        self.config = config or Config()
        self.parser = StreamingToolParser()
        self.retry_config = RetryConfig(
            role="agent",
            max_retries=self.config.retry_attempts(),
            autonomous=self.config.autonomous,
        )
        self.todos = register_builtin_tools(
            self.tools, store, lambda: self.window,
            check_todo_staleness=self.config.check_todo_staleness,
            acd_enabled=self.config.acd_enabled,
        )

        self.window = ContextWindow(total_tokens or provider.context_window)
        prompt = system_prompt
        if not provider.has_native_tool_calling:
            prompt = f"{system_prompt}\n\n{self.tools.describe_for_prompt()}"
        self.window.add_message(Message.system(prompt))
        if project_context:
            self.window.add_message(Message.system(f"# Agent Configuration\n\n{project_context}"))

        self.sleep = asyncio.sleep
        self.total_tool_calls = 0
        self._tool_results = 0
        self._last_fragment: Optional[Fragment] = None

    @property
    def session_id(self) -> str:
        return self.store.session_id

    # ── Turn loop ──

    async def run_turn(self, user_message: str) -> TaskResult:
        """Run one user turn to completion."""
        self.parser.reset()
        self.window.add_message(Message.user(user_message))

        failure = await self._ensure_budget(user_message, pre_turn=True)
        if failure:
            return failure

        iterations = 0
        tool_calls_run = 0
        auto_continues = 0
        last_text = ""

        while iterations < self.config.max_iterations:
            iterations += 1
            if iterations > 1:
                failure = await self._ensure_budget(user_message)
                if failure:
                    failure.iterations = iterations
                    failure.tool_calls = tool_calls_run
                    return failure

            self.ui.print_agent_prompt()
            result = await execute_with_retry(
                self._stream_once, self.retry_config,
                store=self.store,
                snapshot=self._forensic_snapshot,
                sleep=self.sleep,
                on_retry=lambda a, m, d, c: self.ui.notify_retry(a, m, d, c.kind.value),
            )
            self.ui.flush()
            if not result.ok:
                return self._stream_failure(result, iterations, tool_calls_run)

            outcome: _StreamOutcome = result.value
            self.window.update_usage_from_response(outcome.usage)
            text = clean_llm_tokens(self.parser.get_text_content()).strip()
            last_text = text or last_text

            reason = self._truncation_reason(outcome)

            if self.parser.has_unexecuted_tool_call():
                calls = self._dedupe(self.parser.unconsumed_tool_calls())
                tail = self.parser.incomplete_tool_call_text().strip()
                finished, executed = await self._execute_calls(text, calls, tail)
                tool_calls_run += executed
                if finished is not None:
                    self._finish_turn("completed")
                    return TaskResult(response=finished, iterations=iterations,
                                      tool_calls=tool_calls_run, stop_reason="final_output")
                if reason is None:
                    _log.debug("Continuing: %s", ContinueReason.TOOLS_EXECUTED.value)
                    continue
                # the calls ran; the truncated remainder still needs a continuation
                auto_continues += 1
                if auto_continues > MAX_AUTO_CONTINUES:
                    return self._give_up(reason, text, iterations, tool_calls_run)
                _log.info("Auto-continue after tools (%s), attempt %d/%d",
                          reason.value, auto_continues, MAX_AUTO_CONTINUES)
                self.window.add_message(Message.user(self._continuation_prompt(reason)))
                continue

            if reason is not None:
                auto_continues += 1
                partial = clean_llm_tokens(self.parser.raw_text).strip()
                if auto_continues > MAX_AUTO_CONTINUES:
                    self._append_assistant(partial)
                    return self._give_up(reason, text, iterations, tool_calls_run)
                _log.info("Auto-continue (%s), attempt %d/%d",
                          reason.value, auto_continues, MAX_AUTO_CONTINUES)
                self._append_assistant(partial)
                self.window.add_message(Message.user(self._continuation_prompt(reason)))
                continue

            if not text:
                error = EmptyResponseError()
                self.ui.print_error(str(error))
                self._finish_turn("error")
                return TaskResult(response="", success=False, iterations=iterations,
                                  tool_calls=tool_calls_run, stop_reason="empty_response",
                                  error=str(error))

            self._append_assistant(text)
            self._finish_turn("completed")
            return TaskResult(response=text, iterations=iterations, tool_calls=tool_calls_run)

        _log.warning("Turn stopped at max iterations (%d)", self.config.max_iterations)
        self._finish_turn("max_iterations")
        return TaskResult(response=last_text, success=False, iterations=iterations,
                          tool_calls=tool_calls_run, stop_reason="max_iterations",
                          error=f"Reached {self.config.max_iterations} iterations")

    def _truncation_reason(self, outcome: _StreamOutcome) -> Optional[ContinueReason]:
        if self.parser.has_incomplete_tool_call():
            return ContinueReason.INCOMPLETE_TOOL_CALL
        if outcome.stop_reason == "max_tokens":
            return ContinueReason.MAX_TOKENS_TRUNCATION
        return None

    def _give_up(self, reason: ContinueReason, text: str,
                 iterations: int, tool_calls_run: int) -> TaskResult:
        _log.warning("Giving up after %d truncated responses", MAX_AUTO_CONTINUES)
        self._finish_turn("truncated")
        return TaskResult(response=text, success=False, iterations=iterations,
                          tool_calls=tool_calls_run, stop_reason=reason.value,
                          error="Response kept getting truncated")

    @staticmethod
    def _continuation_prompt(reason: ContinueReason) -> str:
        if reason is ContinueReason.INCOMPLETE_TOOL_CALL:
            return INCOMPLETE_TOOL_CALL_PROMPT
        return TRUNCATED_RESPONSE_PROMPT

    async def _stream_once(self) -> _StreamOutcome:
        """One streaming attempt. Any partial state from an earlier attempt is dropped."""
        self.parser.reset()
        request = self._build_request()
        outcome = _StreamOutcome(text="")
        printed = 0
        received = False

        try:
            async for chunk in self.provider.stream(request):
                if chunk.content:
                    received = True
                self.parser.process_chunk(chunk.content, chunk.tool_calls)
                if chunk.tool_calls:
                    received = True
                if chunk.usage is not None:
                    outcome.usage = chunk.usage
                if chunk.stop_reason:
                    outcome.stop_reason = chunk.stop_reason

                visible = self.parser.get_text_content()
                if len(visible) > printed:
                    self.ui.print_agent_response(visible[printed:])
                    printed = len(visible)
                if chunk.finished:
                    break
        except asyncio.CancelledError:
            self.parser.reset()
            raise
        except Exception as e:
            kind = classify_error(e).kind
            if not received or kind not in (ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT):
                raise
            _log.warning("Stream dropped after content was received, treating as end of response: %s", e)
            outcome.interrupted = True

        outcome.text = self.parser.get_text_content()
        return outcome

    def _build_request(self) -> CompletionRequest:
        remaining = self.window.remaining_tokens()
        max_tokens = max(min(self.provider.max_tokens, remaining), SUMMARY_MIN_TOKENS)
        tools = self.tools.schemas if self.provider.has_native_tool_calling else None
        return CompletionRequest(
            messages=list(self.window.conversation_history),
            max_tokens=max_tokens,
            temperature=self.provider.temperature,
            tools=tools,
        )

    def _stream_failure(self, result, iterations: int, tool_calls_run: int) -> TaskResult:
        error = result.error
        if result.status is RetryStatus.CONTEXT_LENGTH_EXCEEDED:
            message = ("Context window is full and the request was rejected. "
                       "Ending the turn; compact the conversation before continuing.")
            self.ui.print_error(message)
            self._finish_turn("context_length_exceeded")
            return TaskResult(response="", success=False, iterations=iterations,
                              tool_calls=tool_calls_run, stop_reason=result.status.value,
                              error=message)

        if result.status is RetryStatus.NON_RECOVERABLE:
            ErrorContext(
                operation="stream", provider=self.provider.name, model=self.provider.model,
                session_id=self.session_id, role=self.retry_config.role,
                last_prompt=self._last_user_content(),
                used_tokens=self.window.used_tokens, total_tokens=self.window.total_tokens,
            ).log_error(error, self.store)

        self.ui.print_error(str(error))
        self._save_session("error")
        return TaskResult(response="", success=False, iterations=iterations,
                          tool_calls=tool_calls_run, stop_reason=result.status.value,
                          error=str(error))

    # ── Tool execution ──

    @staticmethod
    def _dedupe(calls: List[ToolCall]) -> List[ToolCall]:
        unique: List[ToolCall] = []
        for call in calls:
            if unique and unique[-1].same_call(call):
                _log.info("Skipping duplicate %s call in one response", call.name)
                continue
            unique.append(call)
        return unique

    @staticmethod
    def _compose_assistant_content(text: str, calls: List[ToolCall], tail: str = "") -> str:
        call_lines = "\n".join(json.dumps(c.to_json_dict(), ensure_ascii=False) for c in calls)
        if tail:
            call_lines = f"{call_lines}\n{tail}"
        return f"{text}\n\n{call_lines}" if text else call_lines

    async def _execute_calls(self, text: str, calls: List[ToolCall], tail: str = ""):
        """Run calls in order. Returns (final_output summary or None, executed count).

        ``tail`` is a cut-off call that followed them; it is kept in the
        assistant message so the model can see where it stopped.
        """
        self._append_assistant(self._compose_assistant_content(text, calls, tail))
        self.parser.mark_tool_calls_consumed()

        executed = 0
        for idx, call in enumerate(calls):
            if self.window.should_thin():
                self._thin(ThinScope.FIRST_THIRD)
            try:
                result = await self._execute_tool(call)
            except asyncio.CancelledError:
                for pending in calls[idx:]:
                    self._append_tool_result(f"❌ {pending.name} cancelled")
                raise
            self._append_tool_result(result)
            executed += 1
            self.total_tool_calls += 1
            if call.name == FINAL_OUTPUT_TOOL:
                return result, executed
        return None, executed

    async def _execute_tool(self, call: ToolCall) -> str:
        self.ui.print_tool_header(call.name, call.arguments)
        timeout = self.config.tool_timeout
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self.tools.execute(call), timeout=timeout)
        except asyncio.TimeoutError:
            _log.warning("Tool %s timed out after %ss", call.name, timeout)
            result = f"❌ Tool execution timed out after {timeout} seconds"
        self.ui.print_tool_output(result)
        self.ui.print_tool_timing(time.monotonic() - started)
        return result

    def _append_tool_result(self, result: str) -> None:
        message = Message.user(f"Tool result: {result or '(no output)'}")
        self._tool_results += 1
        if self.provider.supports_cache_control and self._tool_results % CACHE_HINT_INTERVAL == 0:
            hinted = [m for m in self.window.conversation_history if m.cache_control]
            while len(hinted) >= MAX_CACHE_HINTS:
                hinted.pop(0).cache_control = None
            message.cache_control = "ephemeral"
        self.window.add_message(message)

    def _append_assistant(self, text: str) -> None:
        history = self.window.conversation_history
        if history and history[-1].role == Role.ASSISTANT:
            # the loop never stacks replies; keep the newer text in the existing slot
            _log.warning("Merging assistant text into the previous assistant message")
            history[-1].content = f"{history[-1].content}\n\n{text}".strip()
            self.window.recalculate_tokens()
            return
        self.window.add_message(Message.assistant(text))

    # ── Budget control ──

    async def _ensure_budget(self, user_message: str, pre_turn: bool = False) -> Optional[TaskResult]:
        """Thin or compact as thresholds require. Returns a failed result if compaction fails."""
        window = self.window
        if not pre_turn and window.should_thin():
            self._thin(ThinScope.FIRST_THIRD)
        if not window.should_compact():
            return None
        if not self.config.auto_compact:
            _log.warning("Context at %.1f%% but auto-compact is off", window.percentage_used())
            return None

        if window.percentage_used() > AGGRESSIVE_THIN_PERCENT and window.should_thin():
            self._thin(ThinScope.FIRST_THIRD)
            if not window.should_compact():
                return None

        result = await self._compact(latest_user_message=user_message)
        if result.success:
            return None
        return TaskResult(response="", success=False, stop_reason="compaction_failed",
                          error=f"Compaction failed: {result.error}")

    def _thin(self, scope: ThinScope) -> ThinResult:
        result = self.window.thin_context_with_scope(self.store, scope)
        self.ui.print_context_thinning(result)
        return result

    async def _compact(self, latest_user_message: Optional[str] = None) -> CompactionResult:
        config = CompactionConfig(
            provider_name=self.provider.name,
            configured_max_tokens=self.provider.max_tokens,
            thinking_budget=self.provider.thinking_budget,
            latest_user_message=latest_user_message,
            dehydration_stub=self._last_fragment.generate_stub() if self._last_fragment else None,
        )
        result = await perform_compaction(self.provider, self.window, self.store, config)
        self.ui.print_compaction(result)
        self.ui.print_context_status(self.window)
        return result

    def force_thin(self, scope: ThinScope = ThinScope.FIRST_THIRD) -> ThinResult:
        return self._thin(scope)

    async def force_compact(self) -> CompactionResult:
        return await self._compact()

    # ── Session ──

    def _finish_turn(self, status: str) -> None:
        if self.config.acd_enabled and status == "completed":
            preceding = self._last_fragment.fragment_id if self._last_fragment else None
            fragment = dehydrate_context(self.window, self.store, preceding)
            if fragment is not None:
                self._last_fragment = fragment
        self._save_session(status)
        self.ui.print_context_status(self.window)

    def _save_session(self, status: str) -> None:
        self.store.save_session({
            "session_id": self.session_id,
            "timestamp": time.time(),
            "status": status,
            "context_window": self.window.to_dict(),
        })

    def resume_session(self) -> bool:
        """Restore the window saved by an earlier run of this session."""
        data = self.store.load_session()
        if not data or "context_window" not in data:
            return False
        self.window = ContextWindow.from_dict(data["context_window"])
        ids = self.store.list_fragment_ids()
        if ids:
            self._last_fragment = Fragment.load(self.store, ids[-1])
        _log.info("Resumed session %s (%d messages, %.1f%%)", self.session_id,
                  len(self.window), self.window.percentage_used())
        return True

    def _forensic_snapshot(self) -> Dict[str, Any]:
        return {
            "used_tokens": self.window.used_tokens,
            "total_tokens": self.window.total_tokens,
            "percentage_used": round(self.window.percentage_used(), 2),
            "prompt_length": sum(len(m.content) for m in self.window.conversation_history),
        }

    def _last_user_content(self) -> str:
        for msg in reversed(self.window.conversation_history):
            if msg.role == Role.USER:
                return msg.content
        return ""

    def get_stats(self) -> Dict[str, Any]:
        window = self.window
        return {
            "session_id": self.session_id,
            "messages": len(window),
            "used_tokens": window.used_tokens,
            "total_tokens": window.total_tokens,
            "percentage_used": round(window.percentage_used(), 1),
            "cumulative_tokens": window.cumulative_tokens,
            "last_thinning_percentage": window.last_thinning_percentage,
            "tool_calls": self.total_tool_calls,
            "fragments": len(self.store.list_fragment_ids()),
        }

    def reset(self) -> None:
        self.window.clear_conversation()
        self.parser.reset()
