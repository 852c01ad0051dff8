"""Main entry point for sprint.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the lifecycle of each run mode.

Key Responsibilities:
    - CLI Argument Parsing: Handles the shell wrapper, display strings, --watch, --debounce, etc.
    - Mode Selection: interactive prompt, one-shot run, change reporter, or supervisor.
    - Signal Handling: In watch mode, SIGINT/SIGTERM set a stop event for graceful shutdown.
    - Logging: Configures logging on stderr with optional rotating file output (10MB).
    - Exit Codes: The last executed command's exit code, or 1 if none is available
      (signal termination, configuration or startup error).
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import List, Optional, Sequence

from sprint import __version__
from sprint.config import Config, ConfigError, load_config
from sprint.output import COLOR_MODES, Printer, make_console
from sprint.shell import Command, ExecutionError, Shell
from sprint.supervisor import ProcessSupervisor
from sprint.tracking import build_tracked_set
from sprint.watcher import Change, ChangeDetector, DebounceGate, WatchError, WatchSession

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stderr, so it never mixes with command output on
    stdout) and optional file logging with rotation.

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file. If provided, logs are written here.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.

    Example:
        >>> setup_logging("INFO", "/path/to/sprint.log")
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(
        LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT  # ISO 8601 format
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser.

    Every option defaults to None so that lower-priority sources (environment,
    config file) apply unless the flag is given.
    """
    parser = argparse.ArgumentParser(
        prog="sprint",
        description="Run shell commands, optionally re-running one whenever watched files change.",
    )
    parser.add_argument("-s", "--shell", metavar="STRING", default=None,
                        help='Shell wrapper (default: "sh -c"; "" runs commands directly).')
    parser.add_argument("-f", "--fence", metavar="STRING", default=None, help="Fence (default: ```).")
    parser.add_argument("-i", "--info", metavar="STRING", default=None, help="Info string (default: text).")
    parser.add_argument("-p", "--prompt", metavar="STRING", default=None, help='Prompt (default: "$ ").')
    parser.add_argument("-w", "--watch", metavar="PATH", action="append", default=None,
                        help="File or directory to watch (repeatable).")
    parser.add_argument("-d", "--debounce", metavar="SECONDS", type=float, default=None,
                        help="Debounce window for watch mode (default: 5).")
    parser.add_argument("-c", "--color", choices=COLOR_MODES, default=None,
                        help="Color output (default: auto).")
    parser.add_argument("--dry-run", action="store_const", const=True, default=None,
                        help="Print commands without running them.")
    parser.add_argument("-u", "--unordered", dest="sync", action="store_const", const=False, default=None,
                        help="Run all commands at once instead of in order.")
    parser.add_argument("-q", "--quiet", dest="print", action="store_const", const=False, default=None,
                        help="Do not echo fences, prompt and commands.")
    parser.add_argument("--log-file", default=None, help="Path to the log file.")
    parser.add_argument("--log-level", default=None,
                        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: WARNING")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("arguments", metavar="STRING", nargs="*", default=None,
                        help="File(s) or command(s).")
    return parser


def expand_arguments(arguments: Sequence[str]) -> List[Command]:
    """Turn CLI arguments into commands.

    An argument naming an existing regular file contributes one command per
    non-blank line that does not start with ``#``; any other argument is a
    command itself.

    Raises:
        ConfigError: If a command file cannot be read.
    """
    commands: List[Command] = []
    for argument in arguments:
        path = Path(argument)
        if path.is_file():
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError) as e:
                raise ConfigError(f"Cannot read command file {argument}: {e}") from e
            for line in lines:
                line = line.strip()
                if line and not line.startswith("#"):
                    commands.append(Command(line))
            logger.debug(f"Loaded commands from {argument}")
        else:
            commands.append(Command(argument))
    return commands


def build_shell(config: Config) -> Shell:
    printer = Printer(
        console=make_console(config.color),
        theme=config.theme(),
        fence=config.fence,
        info=config.info,
        prompt=config.prompt,
    )
    return Shell(
        shell=config.shell,
        dry_run=config.dry_run,
        sync=config.sync,
        print=config.print,
        printer=printer,
    )


def run_interactive(shell: Shell) -> int:
    """Read commands from stdin and run them one at a time.

    Returns:
        int: 0 at end of input, otherwise the exit code of the first command
        that failed (1 if it was killed by a signal).
    """
    shell.printer.interactive_prompt(False)
    for line in sys.stdin:
        text = line.strip()
        if text:
            result = shell.core(Command(text))
            if result.code is None:
                return 1
            if result.code not in result.codes:
                return result.code
        shell.printer.interactive_prompt(True)
    shell.printer.blank()
    return 0


def run_watch(shell: Shell, config: Config, commands: Sequence[Command]) -> int:
    """Watch the configured paths, reporting changes or supervising a command.

    Returns:
        int: Exit code (see module docstring).

    Raises:
        ConfigError: If more than one command is given or a watch path is missing.
        ExecutionError: If the command cannot be started.
        WatchError: If the observer cannot be started.
    """
    if len(commands) > 1:
        raise ConfigError(
            f"Watch mode accepts at most one command, got {len(commands)}"
        )

    tracked, ignore, targets = build_tracked_set(config.watch)
    detector = ChangeDetector(tracked, ignore, targets)

    supervisor: Optional[ProcessSupervisor] = None
    if commands:
        supervisor = ProcessSupervisor(shell, commands[0])

    def on_change(change: Change) -> None:
        shell.printer.change(change)
        if supervisor is not None:
            supervisor.restart()

    stop_event = threading.Event()
    session = WatchSession(detector, DebounceGate(config.debounce), on_change, stop_event=stop_event)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by setting the stop event."""
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    previous_handlers = {
        signal.SIGINT: signal.signal(signal.SIGINT, signal_handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, signal_handler),
    }

    exit_code = 0
    try:
        if supervisor is not None:
            supervisor.start()
        session.start()
        logger.info(f"Watching {', '.join(t.path for t in targets)} (Debounce: {config.debounce}s)")

        # Main loop: wait for a stop signal or a fatal session error
        stop_event.wait()
    finally:
        # Joins the consumer, so no restart is in flight past this point.
        session.stop()
        if supervisor is not None:
            code = supervisor.exit_code()
            exit_code = 1 if code is None else code
            supervisor.stop()
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        logger.debug(f"Session statistics: {session.get_statistics()}")

    if session.error is not None:
        raise session.error
    return exit_code


def main() -> None:
    """Execute the main application logic.

    Parse command-line arguments (from `sys.argv`), load configuration, set up logging,
    and run the selected mode:

        - no arguments and no --watch: interactive prompt on stdin;
        - arguments without --watch: run the commands and exit;
        - --watch without commands: print a line per detected change;
        - --watch with one command: run it and re-run it on every change.

    Raises:
        SystemExit: Always, with the exit code of the run (1 on configuration,
            startup or fatal watch errors).

    Example:
        $ sprint -w src -d 1 "pytest -x"
    """
    parser = build_parser()
    args = parser.parse_args()

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stderr)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING,
                        handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")

        setup_logging(config.log_level, config.log_file)
        shell = build_shell(config)
        commands = expand_arguments(config.arguments)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    logger.info(f"Starting sprint v{__version__} (PID: {os.getpid()})...")

    try:
        if config.watch:
            exit_code = run_watch(shell, config, commands)
        elif commands:
            exit_code = shell.run(commands).exit_code
        else:
            exit_code = run_interactive(shell)
    except ConfigError as e:
        sys.exit(f"Configuration Error: {e}")
    except (ExecutionError, WatchError) as e:
        logger.critical(f"Fatal error: {e}")
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
