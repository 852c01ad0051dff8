"""Terminal output for sprint.

Everything the runner shows around the commands it executes goes through a
:class:`Printer`: the markdown-style fence that wraps a run, the prompt and the
echoed command, the run-level error line, and the change reports emitted in
watch mode.

Color handling is explicit configuration. The caller builds a
:class:`rich.console.Console` with :func:`make_console` from the
``auto|always|never`` mode and hands it to the printer, so there is no
process-wide color flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.errors import StyleSyntaxError
from rich.style import Style

if TYPE_CHECKING:
    from sprint.watcher import Change

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["COLOR_MODES", "Theme", "Printer", "make_console", "parse_style"]

COLOR_MODES = ("auto", "always", "never")

DEFAULT_FENCE_STYLE = "#555555"
DEFAULT_INFO_STYLE = "#555555"
DEFAULT_PROMPT_STYLE = "#555555"
DEFAULT_COMMAND_STYLE = "bold #00ffff"
DEFAULT_ERROR_STYLE = "bold italic #ff0000"
DEFAULT_CHANGE_STYLE = "bold #ffff00"


def parse_style(spec: str) -> Style:
    """Parse a style specification into a rich ``Style``.

    Accepts rich's own syntax (``"bold italic #ff0000"``) as well as the
    ``+``-joined form (``"#ff0000+bold+italic"``).

    Args:
        spec (str): The style specification.

    Returns:
        Style: The parsed style. An empty spec yields the null style.

    Raises:
        ValueError: If the specification cannot be parsed.
    """
    normalized = " ".join(spec.replace("+", " ").split())
    try:
        return Style.parse(normalized)
    except StyleSyntaxError as e:
        raise ValueError(f"Invalid style '{spec}': {e}") from e


def make_console(color: str = "auto") -> Console:
    """Build the console used for all runner output.

    Args:
        color (str): One of ``auto``, ``always`` or ``never``.

    Returns:
        Console: A console writing to stdout.

    Raises:
        ValueError: If ``color`` is not a known mode.
    """
    mode = color.lower()
    if mode not in COLOR_MODES:
        raise ValueError(f"Invalid color mode: {color} (expected one of {', '.join(COLOR_MODES)})")
    if mode == "always":
        return Console(force_terminal=True, highlight=False, soft_wrap=True)
    if mode == "never":
        return Console(color_system=None, highlight=False, soft_wrap=True)
    return Console(highlight=False, soft_wrap=True)


@dataclass
class Theme:
    """Styles applied to each kind of output line."""

    fence: Style = field(default_factory=lambda: Style.parse(DEFAULT_FENCE_STYLE))
    info: Style = field(default_factory=lambda: Style.parse(DEFAULT_INFO_STYLE))
    prompt: Style = field(default_factory=lambda: Style.parse(DEFAULT_PROMPT_STYLE))
    command: Style = field(default_factory=lambda: Style.parse(DEFAULT_COMMAND_STYLE))
    error: Style = field(default_factory=lambda: Style.parse(DEFAULT_ERROR_STYLE))
    change: Style = field(default_factory=lambda: Style.parse(DEFAULT_CHANGE_STYLE))


def format_command(command: str) -> str:
    """Break a compound command into continuation lines for display."""
    return (
        command.replace(" && ", " \\\n&& ")
        .replace(" || ", " \\\n|| ")
        .replace("; ", "; \\\n")
    )


class Printer:
    """Render runner output on a console.

    Attributes:
        console (Console): Destination console.
        theme (Theme): Styles for each kind of line.
        fence (str): Fence string opening and closing a run (e.g. "```").
        info (str): Info string printed right after the opening fence.
        prompt (str): Prompt printed before each echoed command.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        theme: Optional[Theme] = None,
        fence: str = "```",
        info: str = "text",
        prompt: str = "$ ",
    ) -> None:
        self.console = console or make_console("auto")
        self.theme = theme or Theme()
        self.fence = fence
        self.info = info
        self.prompt = prompt

    def _write(self, text: str, style: Style, end: str = "\n") -> None:
        self.console.print(text, style=style, end=end, markup=False, highlight=False)
        self.console.file.flush()

    def fence_open(self) -> None:
        self._write(self.fence, self.theme.fence, end="")
        self._write(self.info, self.theme.info)

    def fence_close(self) -> None:
        self._write(self.fence, self.theme.fence)
        self.blank()

    def blank(self) -> None:
        self._write("", Style.null())

    def command(self, command: str, show_prompt: bool = True) -> None:
        """Echo a command, preceded by the prompt unless disabled."""
        if show_prompt:
            self._write(self.prompt, self.theme.prompt, end="")
        self._write(format_command(command), self.theme.command)

    def error(self, message: str) -> None:
        self._write(f"**{message}**", self.theme.error)
        self.blank()

    def change(self, change: Change) -> None:
        """Report a detected file change as ``Kind: `path```."""
        self._write(f"{change.kind.value}: `{change.path}`", self.theme.change)

    def interactive_prompt(self, again: bool = False) -> None:
        """Show the prompt of the interactive loop.

        Args:
            again (bool): Whether a command already ran, in which case a blank
                line separates its output from the new prompt.
        """
        if again:
            self.blank()
        self._write(self.prompt, self.theme.prompt, end="")

    def __repr__(self) -> str:
        return f"<Printer fence={self.fence!r} info={self.info!r} prompt={self.prompt!r}>"
