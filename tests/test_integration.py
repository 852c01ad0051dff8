"""End-to-end watch sessions against the real filesystem observer."""

from __future__ import annotations

import hashlib
import io
import sys
import time
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from sprint.shell import Command, Shell
from sprint.supervisor import ProcessSupervisor
from sprint.tracking import build_tracked_set
from sprint.watcher import Change, ChangeDetector, ChangeKind, DebounceGate, WatchSession

pytestmark = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="relies on inotify close-write events")

SETTLE_SECONDS = 1.0


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class Harness:
    def __init__(self, root: Path, shell: Shell, debounce: float, command: Optional[str]) -> None:
        self.root = root
        self.out = root / "out.txt"
        self.changes: List[Change] = []
        tracked, ignore, targets = build_tracked_set(["d"], root)
        detector = ChangeDetector(tracked, ignore, targets, base=root)
        self.supervisor = ProcessSupervisor(shell, Command(command)) if command else None

        def on_change(change: Change) -> None:
            self.changes.append(change)
            shell.printer.change(change)
            if self.supervisor is not None:
                self.supervisor.restart()

        self.session = WatchSession(detector, DebounceGate(debounce), on_change)

    def start(self) -> None:
        if self.supervisor is not None:
            self.supervisor.start()
        self.session.start()

    def stop(self) -> None:
        self.session.stop()
        if self.supervisor is not None:
            self.supervisor.stop()

    def runs(self) -> int:
        if not self.out.exists():
            return 0
        return len(self.out.read_text().splitlines())


@pytest.fixture
def tree(in_temp_dir: Path) -> Path:
    (in_temp_dir / ".git").mkdir()
    (in_temp_dir / ".gitignore").write_text("d/cache/\n", encoding="utf-8")
    (in_temp_dir / "d" / "cache").mkdir(parents=True)
    (in_temp_dir / "d" / "a.txt").write_text("one", encoding="utf-8")
    return in_temp_dir


@pytest.fixture
def make_harness(tree: Path, shell: Shell) -> Generator[Callable[..., Harness], None, None]:
    started: List[Harness] = []

    def factory(debounce: float = 0.0, command: Optional[str] = "echo run >> out.txt") -> Harness:
        harness = Harness(tree, shell, debounce, command)
        harness.start()
        started.append(harness)
        return harness

    yield factory
    for harness in started:
        harness.stop()


def test_content_change_restarts_command(tree: Path, make_harness: Callable[..., Harness]) -> None:
    harness = make_harness()
    assert wait_for(lambda: harness.runs() == 1)

    (tree / "d" / "a.txt").write_text("two", encoding="utf-8")

    assert wait_for(lambda: harness.runs() == 2)
    assert harness.changes == [Change("d/a.txt", ChangeKind.MODIFIED)]
    assert harness.supervisor.restarts == 1


def test_identical_rewrite_does_not_restart(tree: Path, make_harness: Callable[..., Harness]) -> None:
    harness = make_harness()
    assert wait_for(lambda: harness.runs() == 1)

    (tree / "d" / "a.txt").write_text("one", encoding="utf-8")
    time.sleep(SETTLE_SECONDS)

    assert harness.runs() == 1
    assert harness.changes == []


def test_burst_inside_window_restarts_once(tree: Path, make_harness: Callable[..., Harness]) -> None:
    harness = make_harness(debounce=5.0)
    assert wait_for(lambda: harness.runs() == 1)

    for i in range(5):
        (tree / "d" / "a.txt").write_text(f"burst {i}", encoding="utf-8")
    assert wait_for(lambda: harness.runs() == 2)
    time.sleep(SETTLE_SECONDS)

    assert harness.runs() == 2
    assert len(harness.changes) == 1
    # Later writes were debounced but still moved the baseline
    assert harness.session.detector.tracked.fingerprints["d/a.txt"] == hashlib.sha256(b"burst 4").hexdigest()


def test_ignored_subdirectory_never_triggers(tree: Path, make_harness: Callable[..., Harness]) -> None:
    harness = make_harness()
    assert wait_for(lambda: harness.runs() == 1)

    (tree / "d" / "cache" / "blob.bin").write_bytes(b"x")
    (tree / "d" / ".swap").write_text("x", encoding="utf-8")
    time.sleep(SETTLE_SECONDS)

    assert harness.runs() == 1
    assert harness.changes == []
    assert harness.session.get_statistics()["actions"] == 0


def test_reporter_prints_created_file(tree: Path, make_harness: Callable[..., Harness], output: io.StringIO) -> None:
    harness = make_harness(command=None)

    (tree / "d" / "new.txt").write_text("n", encoding="utf-8")

    assert wait_for(lambda: "Created: `d/new.txt`" in output.getvalue())
    assert harness.runs() == 0
