"""Lifecycle of the command re-run by a watch session.

The supervisor owns exactly one child process at a time. It is driven from
the watch session's consumer thread only, so it needs no locking:

``IDLE`` --start--> ``RUNNING`` --restart--> ``RESTARTING`` --> ``RUNNING``

A restart never spawns the new child before the previous one is confirmed
gone, together with every process it started (a shell wrapper runs compound
commands as grandchildren). A process that survives the kill is a fatal
:class:`ExecutionError`.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import psutil

from sprint.shell import Command, ExecutionError, Shell

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ProcessSupervisor", "SupervisedChild", "SupervisorState", "collect_descendants"]


def collect_descendants(pid: int) -> List[psutil.Process]:
    """Return every live descendant of ``pid`` (empty if it is gone)."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def _still_running(proc: psutil.Process) -> bool:
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class SupervisorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"


@dataclass
class SupervisedChild:
    """The current child process and when it was started (monotonic)."""

    process: subprocess.Popen
    started_at: float

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


class ProcessSupervisor:
    """Spawn, kill and relaunch a single command.

    Attributes:
        shell (Shell): Runner used to echo and spawn the command.
        command (Command): The supervised command.
        kill_timeout (float): Seconds to wait for a killed child to exit.
        state (SupervisorState): Current lifecycle state.
        child (Optional[SupervisedChild]): The current child, if any.
        restarts (int): Number of completed restarts.
    """

    def __init__(self, shell: Shell, command: Command, kill_timeout: float = 5.0) -> None:
        self.shell = shell
        self.command = command
        self.kill_timeout = kill_timeout
        self.state = SupervisorState.IDLE
        self.child: Optional[SupervisedChild] = None
        self.restarts = 0

    def _launch(self) -> None:
        if self.shell.print:
            self.shell.printer.command(self.command.command)
        process = self.shell.spawn(self.command)
        self.child = SupervisedChild(process, time.monotonic())
        self.state = SupervisorState.RUNNING
        logger.info(f"Started `{self.command.command}` (PID: {process.pid})")

    def _kill(self) -> None:
        """Kill the current child and all of its descendants, then wait for them.

        The child itself is reaped through its ``Popen`` handle so that its
        return code stays available.

        Raises:
            ExecutionError: If a process cannot be killed or outlives ``kill_timeout``.
        """
        child = self.child
        if child is None or not child.alive:
            return
        pid = child.process.pid
        # Snapshot before the kill; orphans are reparented and unreachable afterwards.
        descendants = collect_descendants(pid)
        logger.debug(f"Killing PID {pid} and {len(descendants)} descendant(s)")
        try:
            child.process.kill()
        except ProcessLookupError:
            # Exited between the poll and the kill.
            pass
        except OSError as e:
            raise ExecutionError(f"Failed to kill `{self.command.command}` (PID {pid}): {e}") from e
        for proc in descendants:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                raise ExecutionError(f"Failed to kill PID {proc.pid} of `{self.command.command}`: {e}") from e

        try:
            child.process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                f"`{self.command.command}` (PID {pid}) still running "
                f"{self.kill_timeout}s after kill"
            ) from e

        _, alive = psutil.wait_procs(descendants, timeout=self.kill_timeout)
        survivors = [proc.pid for proc in alive if _still_running(proc)]
        if survivors:
            raise ExecutionError(
                f"Processes {survivors} of `{self.command.command}` still running "
                f"{self.kill_timeout}s after kill"
            )

    def start(self) -> None:
        """Launch the command for the first time.

        Raises:
            RuntimeError: If a child is already running.
            ExecutionError: If the command cannot be spawned.
        """
        if self.state is not SupervisorState.IDLE:
            raise RuntimeError(f"Supervisor already started (state: {self.state.value})")
        self._launch()

    def restart(self) -> None:
        """Kill the current child if still running, then launch again.

        Raises:
            ExecutionError: If the child cannot be killed or respawned.
        """
        if self.state is SupervisorState.IDLE:
            self._launch()
            return
        self.state = SupervisorState.RESTARTING
        self._kill()
        self._launch()
        self.restarts += 1

    def stop(self) -> None:
        """Kill the current child, if any, and return to ``IDLE``."""
        try:
            self._kill()
        finally:
            self.state = SupervisorState.IDLE

    def exit_code(self) -> Optional[int]:
        """Exit code of the current child, or None if running, killed or absent."""
        if self.child is None:
            return None
        code = self.child.process.poll()
        if code is None or code < 0:
            return None
        return code

    def __repr__(self) -> str:
        return f"<ProcessSupervisor command={self.command.command!r} state={self.state.value}>"
