import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup  import escape
from rich.rule    import Rule

from . import __version__

console     = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    handler = RichHandler(
        console=err_console,
        show_path=False,
        show_time=verbose,
        markup=False,
        rich_tracebacks=verbose,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[handler],
    )


def print_banner():
    console.print()
    console.print(Rule(
        f"[bold cyan]folderlock[/bold cyan] [dim]v{__version__}[/dim]",
        style="dim cyan",
    ))
    console.print()


def print_success(msg: str):
    console.print(f"  [bold green]✓[/bold green]  {escape(msg)}")


def print_error(msg: str):
    err_console.print(f"  [bold red]✗[/bold red]  [red]{escape(msg)}[/red]")


def print_info(msg: str):
    console.print(f"  [dim]{escape(msg)}[/dim]")


def print_warning(msg: str):
    console.print(f"  [bold yellow]![/bold yellow]  [yellow]{escape(msg)}[/yellow]")


def print_key_value(key: str, value: str):
    console.print(f"  [dim]{escape(key)}[/dim]  [bold]{escape(value)}[/bold]")


def print_section(title: str):
    console.print()
    console.print(f"  [bold cyan]{escape(title)}[/bold cyan]")
    console.print(f"  [dim cyan]{'─' * (len(title) + 2)}[/dim cyan]")


def fmt_size(n: float) -> str:
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if n < 1024 or unit == 'TB':
            return f"{n:.0f} B" if unit == 'B' else f"{n:.1f} {unit}"
        n /= 1024
    return str(n)
