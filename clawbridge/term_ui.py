"""Terminal output helpers using Rich."""

from rich.console import Console
from rich.panel import Panel

from .protocol import Response


# Global console instance
console = Console()


# ═══════════════════════════════════════════════════════════════════════════════
# Print helpers
# ═══════════════════════════════════════════════════════════════════════════════

def print_success(message: str):
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str):
    """Print an error message."""
    console.print(f"[red]✗[/red] {message}")


def print_info(message: str):
    """Print an info message."""
    console.print(f"[cyan]→[/cyan] {message}")


def print_warning(message: str):
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_response(response: Response, speaker: str = "Agent"):
    """Print each page of a response in its own panel."""
    total = len(response.pages)
    for index, page in enumerate(response.pages, start=1):
        subtitle = f"{index}/{total}" if total > 1 else None
        console.print(
            Panel(
                page,
                title=f"[bright_cyan]{speaker}[/bright_cyan]",
                title_align="left",
                subtitle=subtitle,
                border_style="cyan",
            )
        )
