"""
Nord-themed terminal output shared by every hostguard tool.

All user-facing messages go through the ``print_*`` helpers, which print
to the shared rich console and write the same text to the log.
"""

import shutil
from typing import Iterable, List, Optional, Sequence, Tuple

import pyfiglet
from rich import box
from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from . import __version__
from .logs import logger


# ----------------------------------------------------------------
# Nord-Themed Colors and Rich Console
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent theming throughout the application."""

    # Snow Storm (light text)
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    SNOW_STORM_3: str = "#ECEFF4"

    # Frost (blue accents)
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"

    # Aurora (status indicators)
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


console: Console = Console(
    theme=Theme(
        {
            "info": f"bold {NordColors.FROST_2}",
            "warning": f"bold {NordColors.YELLOW}",
            "error": f"bold {NordColors.RED}",
            "success": f"bold {NordColors.GREEN}",
            "section": f"{NordColors.FROST_3} bold",
            "step": f"{NordColors.FROST_2}",
            "prompt": f"bold {NordColors.PURPLE}",
            "path": f"italic {NordColors.FROST_1}",
            "highlight": f"bold {NordColors.SNOW_STORM_3}",
        }
    )
)


# ----------------------------------------------------------------
# Console Helpers
# ----------------------------------------------------------------
def clear_screen() -> None:
    console.clear()


def create_header(title: str, subtitle: Optional[str] = None) -> Panel:
    """
    Create an ASCII banner for a tool using pyfiglet.

    The font shrinks with the terminal width and each line of the banner
    gets the next frost color.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    font = "slant"
    if term_width < 40:
        font = "mini"
    elif term_width < 60:
        font = "small"
    try:
        fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
        ascii_art = fig.renderText(title)
    except pyfiglet.FigletError:
        ascii_art = f"  {title}  "
    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines) or 1)
    combined = Text()
    for i, line in enumerate(ascii_lines):
        combined.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(ascii_lines) - 1:
            combined.append("\n")
    return Panel(
        combined,
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"v{__version__}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text(subtitle, style=f"bold {NordColors.SNOW_STORM_1}") if subtitle else None,
        subtitle_align="center",
        box=box.ROUNDED,
    )


def show_header(title: str, subtitle: Optional[str] = None) -> None:
    clear_screen()
    console.print(create_header(title, subtitle))
    console.print()


def print_step(text: str) -> None:
    console.print(f"[step]→ {text}[/step]", highlight=False)
    logger.info(text)


def print_success(text: str) -> None:
    console.print(f"[success]✓ {text}[/success]", highlight=False)
    logger.info(text)


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠ {text}[/warning]", highlight=False)
    logger.warning(text)


def print_error(text: str) -> None:
    console.print(f"[error]✗ {text}[/error]", highlight=False)
    logger.error(text)


def print_section(title: str) -> None:
    console.print()
    console.rule(f"[section]{title}[/section]", style=NordColors.FROST_3)
    logger.info("== %s ==", title)


def display_panel(title: str, message: str, style: str = NordColors.FROST_2) -> None:
    console.print(
        Panel(
            Text(message),
            title=f"[bold {style}]{title}[/]",
            border_style=style,
            padding=(1, 2),
            box=box.ROUNDED,
        )
    )


def display_table(
    title: str, columns: Sequence[str], rows: Iterable[Sequence[str]]
) -> None:
    """Print a numbered Nord table with the given columns."""
    table = Table(
        show_header=True,
        header_style=f"bold {NordColors.FROST_1}",
        box=box.ROUNDED,
        title=title,
        padding=(0, 1),
    )
    table.add_column("#", style=f"bold {NordColors.FROST_4}", width=3, justify="right")
    for column in columns:
        table.add_column(column, style=NordColors.SNOW_STORM_1)
    for idx, row in enumerate(rows, 1):
        table.add_row(str(idx), *row)
    console.print(table)


def spinner(message: str) -> Progress:
    """
    Transient spinner for a blocking step::

        with spinner("Restarting fail2ban..."):
            restart()
    """
    progress = Progress(
        SpinnerColumn(style=f"bold {NordColors.FROST_1}"),
        TextColumn(f"[bold {NordColors.FROST_2}]{message}"),
        console=console,
        transient=True,
    )
    progress.add_task(message, total=None)
    return progress


# ----------------------------------------------------------------
# Prompts
# ----------------------------------------------------------------
def show_menu(title: str, options: Sequence[Tuple[str, str]]) -> str:
    """
    Print a numbered menu and return the chosen key.

    Args:
        title: Menu heading
        options: ``(key, label)`` pairs in display order
    """
    console.print(f"[bold {NordColors.FROST_2}]{title}:[/]")
    for key, label in options:
        console.print(f"[bold]{key}.[/] {label}")
    console.print()
    return Prompt.ask(
        "[prompt]Enter your choice[/prompt]",
        choices=[key for key, _ in options],
        show_choices=False,
        console=console,
    )


def ask(message: str, default: Optional[str] = None) -> str:
    if default is None:
        return Prompt.ask(f"[prompt]{message}[/prompt]", console=console).strip()
    return Prompt.ask(f"[prompt]{message}[/prompt]", default=default, console=console).strip()


def confirm(message: str, default: bool = False) -> bool:
    return Confirm.ask(f"[prompt]{message}[/prompt]", default=default, console=console)


def pause() -> None:
    Prompt.ask(
        f"[{NordColors.FROST_3}]Press Enter to return to the menu[/]",
        default="",
        show_default=False,
        console=console,
    )


def goodbye() -> None:
    console.print(
        Panel(
            Align.center(Text("Goodbye!", style=f"bold {NordColors.FROST_2}")),
            border_style=NordColors.FROST_1,
            box=box.ROUNDED,
        )
    )
