"""
Rich printer for displaying chat engine output in a terminal.
"""
from typing import Any, AsyncIterator, List, Optional
from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text
import json

from .types import ChatResult, EngineEvent


class RichStreamPrinter:
    """
    Displays the events of ``ChatEngine.astream()`` live in a panel.

    Reasoning is shown dimmed above the answer, running tools are listed
    as they start, and the usage of the final result is shown when the
    turn completes.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show usage at the end
        show_reasoning: Whether to display reasoning deltas
        code_theme: Theme for code blocks
        refresh_rate: Refresh rate for Live display
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        show_reasoning: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.show_reasoning = show_reasoning
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.border_style = border_style
        self.console = console or Console()
        self._full_text = ""
        self._reasoning = ""
        self._tools: List[str] = []
        self._result: Optional[ChatResult] = None
        self._error: Optional[Exception] = None

    async def print_stream(self, event_stream: AsyncIterator[EngineEvent]) -> Optional[ChatResult]:
        """
        Consume and display engine events.

        Returns:
            The final ChatResult, or None if the turn failed or was aborted.
        """
        self._full_text = ""
        self._reasoning = ""
        self._tools = []
        self._result = None
        self._error = None

        with Live(Panel("", border_style=self.border_style), refresh_per_second=self.refresh_rate,
                  console=self.console) as live:
            async for event in event_stream:
                self.process_event(event)
                live.update(self.render())
        return self._result

    def process_event(self, event: EngineEvent) -> None:
        event_type = event["type"]
        if event_type == "text":
            self._full_text += event["text"]
        elif event_type == "reasoning":
            self._reasoning += event["text"]
        elif event_type == "tool_running":
            self._tools.append(event["name"])
        elif event_type == "complete":
            self._result = event["result"]
        elif event_type == "error":
            self._error = event["error"]

    def render(self) -> Panel:
        if self._error is not None:
            return Panel(self._build_content(), title="[bold]Error[/bold]", border_style="red", padding=(1, 2))
        is_final = self._result is not None
        title = "[bold]Final Response[/bold]" if is_final else f"[bold]{self.title}[/bold]"
        return Panel(
            self._build_content(),
            title=title,
            border_style="green" if is_final else self.border_style,
            padding=(1, 2),
        )

    def _build_content(self) -> Any:
        parts: List[Any] = []
        if self.show_reasoning and self._reasoning.strip():
            parts.append(Text(self._reasoning, style="dim italic"))
        for name in self._tools:
            parts.append(Text(f"⚙ {name}", style="yellow"))

        if self._full_text.strip():
            parts.append(Markdown(self._full_text, code_theme=self.code_theme,
                                  inline_code_theme=self.inline_code_theme))
        elif self._result is None and self._error is None:
            parts.append(Text("(waiting for response...)", style="dim italic"))

        if self._error is not None:
            parts.append(Text(str(self._error), style="bold red"))

        if self._result is not None and self.show_metadata:
            meta = {
                "usage": self._result["usage"],
                "tool_rounds": self._result["tool_rounds"],
                "stop_reason": self._result["stop_reason"],
            }
            parts.append(Panel(
                Syntax(json.dumps(meta, indent=2, default=str), "json", theme="lightbulb",
                       background_color="default"),
                title="[bold]Metadata[/bold]",
                border_style="dim",
            ))
        return Group(*parts)

    def get_full_text(self) -> str:
        return self._full_text

    def get_reasoning(self) -> str:
        return self._reasoning

    def get_result(self) -> Optional[ChatResult]:
        return self._result
