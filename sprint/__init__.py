"""Command runner with a watch-triggered execution supervisor.

This package runs one or more shell commands, optionally capturing their
input/output, and can re-run a command automatically when watched files or
directories change.
"""

__version__ = "0.1.0"
