"""Write-only reporting surface for the agent runtime."""

from typing import Any, Dict, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

__all__ = ["UIWriter", "NullUIWriter", "ConsoleUIWriter"]

ACCENT = "#7FA6D9"
MUTED = "#6E7681"
SUCCESS = "#57DB9C"
WARN = "#D29922"
ERROR = "#F85149"


class UIWriter:
    """Events the runtime reports. The base class ignores all of them."""

    def print_context_status(self, window) -> None:
        pass

    def print_context_thinning(self, result) -> None:
        pass

    def print_compaction(self, result) -> None:
        pass

    def print_tool_header(self, name: str, args: Dict[str, Any]) -> None:
        pass

    def print_tool_output(self, text: str) -> None:
        pass

    def print_tool_timing(self, seconds: float) -> None:
        pass

    def print_agent_prompt(self) -> None:
        pass

    def print_agent_response(self, text: str) -> None:
        pass

    def notify_retry(self, attempt: int, max_attempts: int, delay: float, kind: str) -> None:
        pass

    def print_error(self, message: str) -> None:
        pass

    def flush(self) -> None:
        pass


class NullUIWriter(UIWriter):
    pass


class ConsoleUIWriter(UIWriter):
    """Renders runtime events to the terminal with rich."""

    def __init__(self, console: Optional[Console] = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose
        self._streaming = False

    def print_context_status(self, window) -> None:
        pct = window.percentage_used()
        color = SUCCESS if pct < 50 else WARN if pct < 80 else ERROR
        filled = int(min(pct, 100) / 5)
        bar = "█" * filled + "░" * (20 - filled)
        self.console.print(
            f"  [{MUTED}]context[/{MUTED}] [{color}]{bar}[/{color}] "
            f"[{MUTED}]{pct:.1f}% ({window.used_tokens:,}/{window.total_tokens:,} tokens, "
            f"{len(window.conversation_history)} msgs)[/{MUTED}]"
        )

    def print_context_thinning(self, result) -> None:
        color = SUCCESS if result.had_changes else MUTED
        self.console.print(f"  [{color}]✂ {result.summary()}[/{color}]")

    def print_compaction(self, result) -> None:
        if result.success:
            self.console.print(
                f"  [{SUCCESS}]✓ Context compacted, {result.chars_saved:,} chars saved[/{SUCCESS}]"
            )
        else:
            self.console.print(f"  [{ERROR}]✕ Compaction failed: {result.error}[/{ERROR}]")

    def print_tool_header(self, name: str, args: Dict[str, Any]) -> None:
        self._end_stream()
        detail = ""
        for key in ("path", "command", "fragment_id"):
            if key in args:
                detail = str(args[key])
                break
        self.console.print(f"\n  [{ACCENT}]·[/{ACCENT}] [bold]{name}[/bold] [{MUTED}]{detail}[/{MUTED}]")

    def print_tool_output(self, text: str) -> None:
        lines = text.splitlines()
        preview = lines[:15]
        for line in preview:
            self.console.print(f"     [{MUTED}]{line}[/{MUTED}]", markup=True, highlight=False)
        if len(lines) > len(preview):
            self.console.print(f"     [{MUTED}]... ({len(lines) - len(preview)} more lines)[/{MUTED}]")

    def print_tool_timing(self, seconds: float) -> None:
        if seconds >= 0.1:
            self.console.print(f"     [#484F58]({seconds:.1f}s)[/#484F58]")

    def print_agent_prompt(self) -> None:
        self.console.print(f"\n[bold {ACCENT}]ctxloop[/bold {ACCENT}]")

    def print_agent_response(self, text: str) -> None:
        if not text:
            return
        self._streaming = True
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def notify_retry(self, attempt: int, max_attempts: int, delay: float, kind: str) -> None:
        self._end_stream()
        self.console.print(
            f"  [{WARN}]⟳ {kind} (attempt {attempt}/{max_attempts}), retrying in {delay:.1f}s[/{WARN}]"
        )

    def print_error(self, message: str) -> None:
        self._end_stream()
        self.console.print(Panel(f"[{ERROR}]{message}[/{ERROR}]",
                                 title=f"[bold {ERROR}]Error[/bold {ERROR}]",
                                 title_align="left", border_style=ERROR, padding=(0, 2)))

    def print_markdown(self, text: str) -> None:
        self._end_stream()
        self.console.print(Markdown(text))

    def flush(self) -> None:
        self._end_stream()
        self.console.file.flush()

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False
