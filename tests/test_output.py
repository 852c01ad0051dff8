from __future__ import annotations

import io

import pytest
from rich.color import Color
from rich.console import Console

from sprint.output import Printer, Theme, format_command, make_console, parse_style
from sprint.watcher import Change, ChangeKind


def test_parse_style_plus_syntax() -> None:
    style = parse_style("#ff0000+bold+italic")
    assert style.bold is True
    assert style.italic is True
    assert style.color == Color.parse("#ff0000")


def test_parse_style_rich_syntax() -> None:
    assert parse_style("bold #00ffff") == parse_style("#00ffff+bold")


def test_parse_style_invalid() -> None:
    with pytest.raises(ValueError, match="Invalid style"):
        parse_style("not-a-color+bold")


@pytest.mark.parametrize("mode", ["auto", "always", "never", "NEVER"])
def test_make_console_modes(mode: str) -> None:
    assert isinstance(make_console(mode), Console)


def test_make_console_never_disables_color() -> None:
    assert make_console("never").color_system is None


def test_make_console_always_forces_terminal() -> None:
    assert make_console("always").is_terminal is True


def test_make_console_invalid_mode() -> None:
    with pytest.raises(ValueError, match="Invalid color mode"):
        make_console("sometimes")


def test_format_command() -> None:
    assert format_command("a && b") == "a \\\n&& b"
    assert format_command("a || b") == "a \\\n|| b"
    assert format_command("a; b") == "a; \\\nb"
    assert format_command("plain") == "plain"


def test_printer_fence_and_command(printer: Printer, output: io.StringIO) -> None:
    printer.fence_open()
    printer.command("echo [bold]hi[/bold]")
    printer.fence_close()
    assert output.getvalue() == "```text\n$ echo [bold]hi[/bold]\n```\n\n"


def test_printer_custom_strings(output: io.StringIO) -> None:
    console = Console(file=output, color_system=None, soft_wrap=True)
    printer = Printer(console=console, fence="~~~~", info="bash", prompt="> ")
    printer.fence_open()
    printer.command("ls", show_prompt=False)
    printer.interactive_prompt(again=True)
    assert output.getvalue() == "~~~~bash\nls\n\n> "


def test_printer_error(printer: Printer, output: io.StringIO) -> None:
    printer.error("Command `x` exited with code: `2`!")
    assert output.getvalue() == "**Command `x` exited with code: `2`!**\n\n"


@pytest.mark.parametrize(
    "kind,expected",
    [
        (ChangeKind.CREATED, "Created: `d/new.txt`\n"),
        (ChangeKind.REMOVED, "Removed: `d/new.txt`\n"),
        (ChangeKind.MODIFIED, "Modified: `d/new.txt`\n"),
    ],
)
def test_printer_change(printer: Printer, output: io.StringIO, kind: ChangeKind, expected: str) -> None:
    printer.change(Change("d/new.txt", kind))
    assert output.getvalue() == expected


def test_printer_colors_when_forced() -> None:
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=True, color_system="truecolor")
    Printer(console=console, theme=Theme()).command("ls")
    assert "\x1b[" in buffer.getvalue()
