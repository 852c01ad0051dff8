from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
from rich.console import Console
from watchdog.events import FileSystemEvent

from sprint.output import Printer
from sprint.shell import Shell


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def in_temp_dir(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the test with the temporary directory as working directory."""
    monkeypatch.chdir(temp_dir)
    return temp_dir


@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def printer(output: io.StringIO) -> Printer:
    """Printer writing plain text (no color) to an in-memory buffer."""
    console = Console(file=output, color_system=None, highlight=False, soft_wrap=True, width=200)
    return Printer(console=console)


@pytest.fixture
def shell(printer: Printer) -> Shell:
    return Shell(printer=printer)


@pytest.fixture
def quiet_shell(printer: Printer) -> Shell:
    return Shell(print=False, printer=printer)


@pytest.fixture
def mock_filesystem_event() -> MagicMock:
    """Fixture for a generic watchdog FileSystemEvent."""
    event = MagicMock(spec=FileSystemEvent)
    event.is_directory = False
    event.src_path = "/tmp/test/a.txt"
    event.event_type = "closed"
    return event


@pytest.fixture
def mock_monotonic(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock time.monotonic for deterministic timing."""
    mock = MagicMock(return_value=1000.0)
    monkeypatch.setattr("time.monotonic", mock)
    return mock


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Remove SPRINT_* variables and point config lookups at an empty home."""
    for key in list(os.environ):
        if key.startswith("SPRINT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "xdg"))
    monkeypatch.setenv("HOME", str(temp_dir / "home"))
