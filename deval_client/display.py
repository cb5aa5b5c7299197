"""终端显示

宿主通知层的终端实现：信息/警告/错误消息、生命周期事件、诊断与语义 token 表格。
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .events import Event, LifecycleEvent, ServerLogEvent
from .lsp.protocol import Diagnostic, SemanticToken


class Notifier(Protocol):
    """宿主通知接口"""

    def info(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class ConsoleNotifier:
    """rich 终端通知"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def info(self, message: str) -> None:
        self.console.print(f"[cyan]ℹ[/cyan] {message}", highlight=False)

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠[/yellow] {message}", highlight=False)

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]✗[/bold red] {message}", highlight=False)

    def event(self, event: Event) -> None:
        """显示一条事件（--trace）"""
        line = f"[dim]{event.timestamp:%H:%M:%S}[/dim] [magenta]{event.type.value}[/magenta]"
        if event.session_id:
            line += f" session={event.session_id}"
        if isinstance(event, LifecycleEvent):
            if event.pid:
                line += f" pid={event.pid}"
            if event.message:
                line += f" {escape(event.message)}"
        elif isinstance(event, ServerLogEvent):
            line += f" ({logging.getLevelName(event.level).lower()}) {escape(event.message)}"
        self.console.print(line, highlight=False)

    def diagnostics(self, diagnostics: Dict[str, List[Diagnostic]]) -> None:
        """以表格显示诊断"""
        if not any(diagnostics.values()):
            self.console.print("No diagnostics found.")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Document")
        table.add_column("Location", justify="right")
        table.add_column("Message")
        for uri, diags in diagnostics.items():
            for diag in diags:
                start = diag.range.start
                table.add_row(uri, f"{start.line + 1}:{start.character + 1}", diag.format())
        self.console.print(table)

    def semantic_tokens(self, tokens: List[SemanticToken]) -> None:
        """以表格显示语义 token"""
        if not tokens:
            self.console.print("No semantic tokens.")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Location", justify="right")
        table.add_column("Length", justify="right")
        table.add_column("Type")
        table.add_column("Modifiers")
        for token in tokens:
            table.add_row(
                f"{token.line + 1}:{token.start + 1}",
                str(token.length),
                token.token_type,
                ", ".join(token.modifiers),
            )
        self.console.print(table)
