"""Command execution core and runner.

Responsibility:
    Build the actual process invocation for a command (shell-wrapped or
    direct), wire its standard streams, run it and report the exit status.
    On top of that primitive, :meth:`Shell.run` executes a list of commands
    either strictly in order or all at once.

Design:
    - **Explicit stream wiring**: each stream is described by a :class:`Pipe`
      whose kind maps to exactly one ``subprocess`` argument per stream.
      Nothing is piped unless capture or scripted stdin is requested, so
      interactive and full-screen commands keep the parent's terminal.
    - **No deadlocks on stdin**: scripted input is written while the outputs
      are drained (``Popen.communicate``), or from a daemon thread for
      processes returned by :meth:`Shell.spawn`.
    - **Exit reporting**: ``code`` is the exit status on normal termination
      and ``None`` when the process was terminated by a signal.
"""

from __future__ import annotations

import copy
import logging
import os
import shlex
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import IO, Any, List, Optional, Sequence, Union

from sprint.output import Printer

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ExecutionError", "PipeKind", "Pipe", "Command", "RunResult", "Shell"]

DEFAULT_SHELL = "sh -c"
ENCODING = "utf-8"

StreamArg = Union[None, int, IO[Any]]


class ExecutionError(RuntimeError):
    """A command could not be tokenized, spawned or stopped."""


class PipeKind(Enum):
    """Where a standard stream of a command is connected."""

    NULL = "null"
    STDOUT = "stdout"
    STDERR = "stderr"
    STRING = "string"


@dataclass(frozen=True)
class Pipe:
    """Connection of one standard stream.

    Attributes:
        kind (PipeKind): The variant.
        text (Optional[str]): For ``STRING``: the scripted stdin payload, or the
            captured output once the command ran. Always ``None`` otherwise.
    """

    kind: PipeKind
    text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.text is not None and self.kind is not PipeKind.STRING:
            raise ValueError(f"Only string pipes carry text, got {self.kind.value}")

    @classmethod
    def null(cls) -> Pipe:
        return cls(PipeKind.NULL)

    @classmethod
    def stdout(cls) -> Pipe:
        return cls(PipeKind.STDOUT)

    @classmethod
    def stderr(cls) -> Pipe:
        return cls(PipeKind.STDERR)

    @classmethod
    def string(cls, text: Optional[str] = None) -> Pipe:
        return cls(PipeKind.STRING, text)

    @property
    def is_string(self) -> bool:
        return self.kind is PipeKind.STRING

    def stdin_arg(self) -> StreamArg:
        """Return the ``Popen`` stdin argument for this pipe.

        Only a string pipe is scripted; every other kind leaves the child
        reading the parent's stdin.
        """
        if self.kind is PipeKind.STRING:
            return subprocess.PIPE
        if self.kind in (PipeKind.NULL, PipeKind.STDOUT, PipeKind.STDERR):
            return None
        raise ValueError(f"Unknown pipe kind: {self.kind}")

    def stdout_arg(self) -> StreamArg:
        """Return the ``Popen`` stdout argument for this pipe."""
        if self.kind is PipeKind.NULL:
            return subprocess.DEVNULL
        if self.kind is PipeKind.STDOUT:
            return None
        if self.kind is PipeKind.STDERR:
            return _parent_stream(sys.stderr)
        if self.kind is PipeKind.STRING:
            return subprocess.PIPE
        raise ValueError(f"Unknown pipe kind: {self.kind}")

    def stderr_arg(self) -> StreamArg:
        """Return the ``Popen`` stderr argument for this pipe."""
        if self.kind is PipeKind.NULL:
            return subprocess.DEVNULL
        if self.kind is PipeKind.STDOUT:
            return _parent_stream(sys.stdout)
        if self.kind is PipeKind.STDERR:
            return None
        if self.kind is PipeKind.STRING:
            return subprocess.PIPE
        raise ValueError(f"Unknown pipe kind: {self.kind}")


def _parent_stream(stream: IO[Any]) -> StreamArg:
    """Return a file descriptor for one of the parent's streams.

    Falls back to inheriting when the stream has no real descriptor (e.g.
    replaced by an in-memory buffer).
    """
    try:
        stream.flush()
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


@dataclass
class Command:
    """A command to execute and, once executed, its outcome.

    Attributes:
        command (str): Command text.
        stdin (Pipe): Scripted input (``Pipe.string(text)``) or nothing.
        stdout (Pipe): Where stdout goes. Captured text lands in ``stdout.text``.
        stderr (Pipe): Where stderr goes. Captured text lands in ``stderr.text``.
        codes (List[int]): Exit codes considered successful.
        code (Optional[int]): Exit code after execution; ``None`` if not run
            or killed by a signal.
    """

    command: str
    stdin: Pipe = field(default_factory=Pipe.null)
    stdout: Pipe = field(default_factory=Pipe.stdout)
    stderr: Pipe = field(default_factory=Pipe.stderr)
    codes: List[int] = field(default_factory=lambda: [0])
    code: Optional[int] = None

    def error_message(self) -> Optional[str]:
        """Describe why this executed command counts as a failure.

        Returns:
            Optional[str]: The message, or ``None`` if the exit code is accepted.
        """
        if self.code is None:
            return f"Command `{self.command}` was killed by a signal!"
        if self.code not in self.codes:
            return f"Command `{self.command}` exited with code: `{self.code}`!"
        return None


@dataclass
class RunResult:
    """Outcome of :meth:`Shell.run`.

    Attributes:
        commands (List[Command]): Executed commands, in input order.
        error (Optional[str]): Terminal error of a sequential run.
    """

    commands: List[Command]
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        """Exit code of the last executed command, or 1 if there is none."""
        if self.commands and self.commands[-1].code is not None:
            return self.commands[-1].code
        return 1


def _returncode(value: Optional[int]) -> Optional[int]:
    # Popen reports death by signal N as -N.
    if value is None or value < 0:
        return None
    return value


def _encode(text: Optional[str]) -> Optional[bytes]:
    return None if text is None else text.encode(ENCODING)


def _decode(data: Optional[bytes]) -> str:
    # Undecodable bytes are replaced; line endings are kept as written.
    return data.decode(ENCODING, errors="replace") if data else ""


def _feed_stdin(stream: IO[bytes], payload: bytes, pid: int) -> None:
    try:
        stream.write(payload)
    except BrokenPipeError:
        logger.debug(f"Process {pid} closed stdin before reading all input")
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


@dataclass
class Shell:
    """Command runner.

    Attributes:
        shell (Optional[str]): Shell wrapper (e.g. ``"sh -c"`` or
            ``"bash -xeo pipefail -c"``). The command text is appended as the
            last argument. ``None`` runs commands directly.
        dry_run (bool): Print commands without running them.
        sync (bool): Run commands in order (True) or all at once (False).
        print (bool): Echo fences, prompt and commands.
        printer (Printer): Output collaborator.
    """

    shell: Optional[str] = DEFAULT_SHELL
    dry_run: bool = False
    sync: bool = True
    print: bool = True
    printer: Printer = field(default_factory=Printer)

    def prepare(self, command: str) -> List[str]:
        """Build the argv for a command.

        Args:
            command (str): The command text.

        Returns:
            List[str]: Program followed by its arguments.

        Raises:
            ExecutionError: If the shell or command text cannot be tokenized.
        """
        if self.shell is not None:
            try:
                argv = shlex.split(self.shell)
            except ValueError as e:
                raise ExecutionError(f"Cannot parse shell '{self.shell}': {e}") from e
            if not argv:
                raise ExecutionError("Shell wrapper is empty")
            argv.append(command)
            return argv

        # No wrapper; run the command directly.
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ExecutionError(f"Cannot parse command '{command}': {e}") from e
        if not argv:
            raise ExecutionError("Command is empty")
        return argv

    def _popen(self, command: Command) -> subprocess.Popen:
        argv = self.prepare(command.command)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Spawning {argv!r}")
        try:
            return subprocess.Popen(
                argv,
                stdin=command.stdin.stdin_arg(),
                stdout=command.stdout.stdout_arg(),
                stderr=command.stderr.stderr_arg(),
            )
        except OSError as e:
            raise ExecutionError(f"Failed to spawn `{command.command}`: {e}") from e

    def core(self, command: Command) -> Command:
        """Run a command to completion.

        Captured output is decoded as UTF-8 with undecodable bytes replaced,
        and line endings are kept as the command wrote them.

        Args:
            command (Command): The command to run.

        Returns:
            Command: A copy of ``command`` with ``code`` and any captured output.

        Raises:
            ExecutionError: If the command cannot be tokenized or spawned.
        """
        process = self._popen(command)
        payload = _encode(command.stdin.text) if command.stdin.is_string else None

        if process.stdin or process.stdout or process.stderr:
            out, err = process.communicate(input=payload)
        else:
            process.wait()
            out, err = None, None

        result = replace(command, codes=list(command.codes), code=_returncode(process.returncode))
        if command.stdout.is_string:
            result.stdout = Pipe.string(_decode(out))
        if command.stderr.is_string:
            result.stderr = Pipe.string(_decode(err))
        logger.debug(f"Command `{command.command}` finished with code {result.code}")
        return result

    def spawn(self, command: Command) -> subprocess.Popen:
        """Start a command and return its live process without waiting.

        A scripted stdin payload is written from a daemon thread so that a
        child which never reads stdin cannot block the caller. That thread
        owns the stream, so the returned process has ``stdin`` set to None.
        Its other pipes, if any, are binary.

        Args:
            command (Command): The command to start.

        Returns:
            subprocess.Popen: The running process.

        Raises:
            ExecutionError: If the command cannot be tokenized or spawned.
        """
        process = self._popen(command)
        if command.stdin.is_string and process.stdin is not None:
            # The writer thread owns stdin; the caller never sees it.
            stream, process.stdin = process.stdin, None
            writer = threading.Thread(
                target=_feed_stdin,
                args=(stream, _encode(command.stdin.text or ""), process.pid),
                name=f"StdinWriter-{process.pid}",
                daemon=True,
            )
            writer.start()
        return process

    def run1(self, command: Command) -> Command:
        """Echo and run a single command (or only echo it in dry-run mode)."""
        if self.print:
            self.printer.command(command.command, show_prompt=not self.dry_run)

        if self.dry_run:
            return copy.deepcopy(command)

        return self.core(command)

    def run(self, commands: Sequence[Command]) -> RunResult:
        """Run commands in order, or all at once when ``sync`` is off.

        In order, the run stops at the first command whose exit code is absent
        or not accepted, and that failure becomes the run's error. Unordered,
        every command runs and every result is collected.

        Args:
            commands (Sequence[Command]): Commands to run.

        Returns:
            RunResult: Executed commands and the terminal error, if any.
        """
        if not self.sync:
            workers = max(1, min(len(commands), os.cpu_count() or 1))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sprint") as pool:
                return RunResult(list(pool.map(self.run1, commands)))

        if self.print:
            self.printer.fence_open()

        results: List[Command] = []
        error: Optional[str] = None

        for i, command in enumerate(commands):
            if i > 0 and self.print and not self.dry_run:
                self.printer.blank()

            result = self.run1(command)
            results.append(result)

            if not self.dry_run:
                error = result.error_message()
            if error:
                logger.info(error)
                break

        if self.print:
            self.printer.fence_close()
            if error:
                self.printer.error(error)

        return RunResult(results, error)

    def pipe1(self, command: str) -> str:
        """Run a command and return its captured stdout."""
        result = self.core(Command(command, stdout=Pipe.string()))
        return result.stdout.text or ""
