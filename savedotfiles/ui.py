"""
Rich terminal UI components.
Status lines, panels, tables and spinners, with an ASCII fallback.
"""
import sys
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

# Detect ASCII fallback
try:
    "✓⚠".encode(sys.stdout.encoding if sys.stdout and sys.stdout.encoding else "utf-8")
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "backup": "\U0001f4e6",
    "rotate": "♻️",
    "item": "✓",
    "partial": "⚠",
    "missing": "✗",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "delete": "\U0001f5d1️",
}

ASCII_ICONS: Dict[str, str] = {
    "backup": "[BAK]",
    "rotate": "[ROT]",
    "item": "[+]",
    "partial": "[~]",
    "missing": "[X]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "delete": "[DEL]",
}

def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def render_banner() -> None:
    """Render the SaveDotFiles header panel."""
    banner_text = Text("SaveDotFiles", style="bold color(39)")
    banner_text.append("  dotfiles backup, rotation and scheduling", style="dim magenta")
    console.print(Panel(banner_text, border_style="cyan", expand=False))

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    i = icon(action)
    console.print(f"{i} [{style}]{message}[/]")

def render_item(relative_path: str, outcome: str, detail: Optional[str] = None) -> None:
    """One line per archived item, colored by outcome."""
    styles = {"included": ("item", "green"), "partial": ("partial", "yellow"), "missing": ("missing", "red")}
    action, style = styles.get(outcome, ("info", "white"))
    suffix = f" [dim]({detail})[/]" if detail else ""
    console.print(f"  [{style}]{icon(action)}[/] {relative_path}{suffix}", highlight=False)

def render_error(message: str) -> None:
    """Print a styled error panel."""
    i = icon("error")
    err_console.print()
    err_console.print(Panel(Text(message, style="red"), border_style="red", expand=False, title=f"{i} ERROR"))

def render_warning(message: str) -> None:
    """Print a styled warning panel."""
    i = icon("warn")
    console.print()
    console.print(Panel(Text(message, style="yellow"), border_style="yellow", expand=False, title=f"{i} WARNING"))

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a structured Rich Table with auto-wrap fixes."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=True,
        box=box.ROUNDED if HAS_UNICODE else box.ASCII
    )

    if headers:
        table.add_column(headers[0], justify="center", no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")

    for r in rows:
        table.add_row(*r)

    console.print(table)
    console.print()

def render_success_summary(title: str, stats: Dict[str, str]) -> None:
    """Render a clean summary panel for operations."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in stats.items():
        table.add_row(key, value)
    i_success = icon("success")
    console.print(Panel(table, title=f"[bold green]{i_success} {title}[/]", border_style="green", expand=False))

@contextmanager
def render_progress(title: str = "Operation in progress...") -> Generator[Progress, None, None]:
    """Provide a unified spinner for blocking steps."""
    progress = Progress(
        SpinnerColumn(spinner_name="dots2", style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    with progress:
        progress.add_task(title, total=None)
        yield progress
