"""Configuration management for sprint.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order and validates every value before the
runner starts. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``SPRINT_SHELL``: Shell wrapper (empty value runs commands directly).
    * ``SPRINT_FENCE`` / ``SPRINT_INFO`` / ``SPRINT_PROMPT``: Display strings.
    * ``SPRINT_COLOR``: Color mode (auto, always, never).
    * ``SPRINT_DEBOUNCE``: Debounce window in seconds for watch mode.
    * ``SPRINT_LOG_FILE``: Path to the log file.
    * ``SPRINT_LOG_LEVEL``: Logging level.
    * ``SPRINT_FENCE_COLOR``, ``SPRINT_INFO_COLOR``, ``SPRINT_PROMPT_COLOR``,
      ``SPRINT_COMMAND_COLOR``, ``SPRINT_ERROR_COLOR``: Style specs.

Configuration Loading Invariants:
    * **Fail Fast**: Any invalid value raises :class:`ConfigError` before a
      command is spawned or a watch is set up.
    * **Cross-Platform**: Config paths are determined using OS-specific conventions
      (e.g., XDG on Linux, APPDATA on Windows).
    * **Type Safety**: Numeric values are validated for range.
"""

from __future__ import annotations

import logging
import os
import shlex
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from sprint.output import (
    COLOR_MODES,
    DEFAULT_COMMAND_STYLE,
    DEFAULT_ERROR_STYLE,
    DEFAULT_FENCE_STYLE,
    DEFAULT_INFO_STYLE,
    DEFAULT_PROMPT_STYLE,
    Theme,
    parse_style,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "ConfigError", "find_project_root", "load_config"]

CONFIG_SECTION = "sprint"
STYLE_KEYS = ("fence_color", "info_color", "prompt_color", "command_color", "error_color")


class ConfigError(ValueError):
    """Invalid configuration; the run is aborted before anything starts."""


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        shell (Optional[str]): Shell wrapper, or None to run commands directly. Defaults to "sh -c".
        fence (str): Fence string around a run. Defaults to "```".
        info (str): Info string after the opening fence. Defaults to "text".
        prompt (str): Prompt before each echoed command. Defaults to "$ ".
        color (str): Color mode: auto, always or never. Defaults to "auto".
        debounce (float): Debounce window in seconds for watch mode. Defaults to 5.0.
        watch (List[str]): Files and directories to watch. Defaults to none.
        arguments (List[str]): Commands or files of commands. Defaults to none.
        dry_run (bool): Print commands without running them. Defaults to False.
        sync (bool): Run commands in order (True) or all at once (False). Defaults to True.
        print (bool): Echo fences, prompt and commands. Defaults to True.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., WARNING, DEBUG). Defaults to "WARNING".
        fence_color (str): Style of the fence. Defaults to "#555555".
        info_color (str): Style of the info string. Defaults to "#555555".
        prompt_color (str): Style of the prompt. Defaults to "#555555".
        command_color (str): Style of echoed commands. Defaults to "bold #00ffff".
        error_color (str): Style of the error line. Defaults to "bold italic #ff0000".
    """

    shell: Optional[str] = "sh -c"
    fence: str = "```"
    info: str = "text"
    prompt: str = "$ "
    color: str = "auto"
    debounce: float = 5.0
    watch: List[str] = field(default_factory=list)
    arguments: List[str] = field(default_factory=list)
    dry_run: bool = False
    sync: bool = True
    print: bool = True
    log_file: Optional[str] = None
    log_level: str = "WARNING"
    fence_color: str = DEFAULT_FENCE_STYLE
    info_color: str = DEFAULT_INFO_STYLE
    prompt_color: str = DEFAULT_PROMPT_STYLE
    command_color: str = DEFAULT_COMMAND_STYLE
    error_color: str = DEFAULT_ERROR_STYLE

    def theme(self) -> Theme:
        """Build the output theme from the configured style specs."""
        theme = Theme()
        theme.fence = parse_style(self.fence_color)
        theme.info = parse_style(self.info_color)
        theme.prompt = parse_style(self.prompt_color)
        theme.command = parse_style(self.command_color)
        theme.error = parse_style(self.error_color)
        return theme


def find_project_root(start_path: Path) -> Optional[Path]:
    """Find the project root by looking for the .git directory upwards.

    Traverses parents of the start path looking for a `.git` directory.
    Catches OSError during traversal to ensure robustness.

    Args:
        start_path (Path): The starting path for the search.
            This path is made absolute (symlinks not followed) before traversal.

    Returns:
        Optional[Path]: The path to the project root if found, else None.
    """
    try:
        path = Path(os.path.abspath(start_path))
        if path.is_file():
            path = path.parent

        for parent in [path] + list(path.parents):
            if (parent / ".git").exists():
                return parent
    except OSError:
        pass
    return None


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `sprint.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/sprint/config.ini` (Linux/macOS).
    3. `%APPDATA%\\sprint\\config.ini` (Windows).
    4. `~/.config/sprint/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["sprint.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), "sprint", "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), "sprint", "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", "sprint", "config.ini"))
    return paths


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Aggregates configuration from multiple sources, resolving conflicts by
    prioritizing command-line arguments, then environment variables, then
    configuration files, and finally hardcoded defaults.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes (e.g., 'shell', 'debounce').
            Values of None are ignored to allow lower-priority sources (Env, Config File) to take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ConfigError: If a value is invalid (unparsable shell, unknown color mode,
            negative debounce, invalid style spec or log level, unwritable log file).

    Examples:
        >>> config = load_config({"debounce": 0.5, "color": "never"})
        >>> config.debounce
        0.5
        >>> load_config({"shell": ""}).shell is None
        True
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {f.name: f.default for f in fields(Config) if f.init}
    config_values["watch"] = []
    config_values["arguments"] = []

    # 2. Config File (simple INI support)
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        if key in ("watch", "arguments"):
                            logger.warning(f"Ignoring '{key}' in {path}: only accepted on the command line")
                            continue
                        if value is not None:
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "SPRINT_SHELL": "shell",
        "SPRINT_FENCE": "fence",
        "SPRINT_INFO": "info",
        "SPRINT_PROMPT": "prompt",
        "SPRINT_COLOR": "color",
        "SPRINT_DEBOUNCE": "debounce",
        "SPRINT_LOG_FILE": "log_file",
        "SPRINT_LOG_LEVEL": "log_level",
        "SPRINT_FENCE_COLOR": "fence_color",
        "SPRINT_INFO_COLOR": "info_color",
        "SPRINT_PROMPT_COLOR": "prompt_color",
        "SPRINT_COMMAND_COLOR": "command_color",
        "SPRINT_ERROR_COLOR": "error_color",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        # An empty SPRINT_SHELL is meaningful (run directly).
        if val is not None and (val != "" or config_key == "shell"):
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    # Shell: empty means no wrapper
    shell = config_values["shell"]
    if shell is not None:
        shell = str(shell)
        try:
            tokens = shlex.split(shell)
        except ValueError as e:
            raise ConfigError(f"Cannot parse shell '{shell}': {e}") from e
        config_values["shell"] = shell if tokens else None

    color = str(config_values["color"]).lower()
    if color not in COLOR_MODES:
        raise ConfigError(f"Invalid color mode: {config_values['color']} (expected one of {', '.join(COLOR_MODES)})")
    config_values["color"] = color

    try:
        config_values["debounce"] = float(config_values["debounce"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for debounce: {config_values['debounce']}") from e
    if config_values["debounce"] < 0:
        raise ConfigError(f"debounce must be non-negative, got {config_values['debounce']}")

    for key in ("dry_run", "sync", "print"):
        config_values[key] = _to_bool(config_values[key])

    for key in STYLE_KEYS:
        try:
            parse_style(str(config_values[key]))
        except ValueError as e:
            raise ConfigError(f"Invalid {key}: {e}") from e
        config_values[key] = str(config_values[key])

    config_values["watch"] = [str(p) for p in config_values["watch"] or []]
    config_values["arguments"] = [str(a) for a in config_values["arguments"] or []]

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    # Handle debug flag
    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ConfigError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path, creating parent directories if needed.

    Args:
        path_str (str): The raw path (``~`` is expanded).

    Returns:
        str: The absolute path.

    Raises:
        ConfigError: If the path is a directory or cannot be created.
    """
    path = Path(os.path.expanduser(path_str)).absolute()
    if path.exists() and not path.is_file():
        raise ConfigError(f"Invalid path: Log file is not a regular file: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a"):
            pass
    except PermissionError as e:
        raise ConfigError(f"Cannot create log file (permission denied): {path}") from e
    except OSError as e:
        raise ConfigError(f"Cannot create log file: {e}") from e
    return str(path)
