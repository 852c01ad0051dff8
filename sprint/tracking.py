"""Baseline of watched files.

This module builds the snapshot a watch session compares filesystem events
against: the watch targets given by the user, the directories tracked
structurally and the content fingerprint of every tracked file.

Key Invariants:
    - Files excluded by the ignore rules are never fingerprinted: the
      directory walk and the event filter share one :class:`IgnoreFilter`.
    - Paths are normalized relative to the working directory (without
      following symlinks) so absolute event paths compare equal to them.
    - ``TrackedSet.directories`` never changes after startup.
      ``TrackedSet.fingerprints`` only ever has values replaced.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

import pathspec

from sprint.config import ConfigError, find_project_root

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "IGNORE_FILE_NAMES",
    "IgnoreFilter",
    "TargetKind",
    "TrackedSet",
    "WatchTarget",
    "build_tracked_set",
    "compute_fingerprint",
    "normalize_path",
]

IGNORE_FILE_NAMES = (".gitignore", ".ignore")
CHUNK_SIZE = 65536

PathLike = Union[str, "os.PathLike[str]"]


def compute_fingerprint(path: PathLike) -> Optional[str]:
    """Compute the SHA-256 digest of a file's content.

    Args:
        path (PathLike): The file to hash.

    Returns:
        Optional[str]: Hex digest, or None if the file cannot be read
        (missing, a directory, permission denied).
    """
    try:
        hasher = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()
    except OSError as e:
        logger.debug(f"Cannot fingerprint {path}: {e}")
        return None


def normalize_path(path: PathLike, base: Optional[Path] = None) -> str:
    """Normalize a path for comparison against event paths.

    Args:
        path (PathLike): Relative or absolute path.
        base (Optional[Path]): Normalization base, defaults to the working
            directory.

    Returns:
        str: POSIX-style path relative to ``base`` when beneath it, else the
        absolute path.
    """
    base = base if base is not None else Path.cwd()
    absolute = Path(os.path.abspath(os.path.join(base, os.fspath(path))))
    try:
        return absolute.relative_to(base).as_posix()
    except ValueError:
        return absolute.as_posix()


class TargetKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class WatchTarget:
    """A user-supplied watch path, tagged by kind at startup.

    Attributes:
        path (str): Normalized path.
        absolute (Path): Absolute path, as scheduled with the observer.
        kind (TargetKind): File or directory.
    """

    path: str
    absolute: Path
    kind: TargetKind

    @property
    def is_dir(self) -> bool:
        return self.kind is TargetKind.DIRECTORY


@dataclass
class TrackedSet:
    """Baseline snapshot of a watch session.

    Attributes:
        directories (FrozenSet[str]): Normalized directories tracked structurally.
        fingerprints (Dict[str, str]): Normalized file path to content digest,
            in discovery order.
    """

    directories: FrozenSet[str] = frozenset()
    fingerprints: Dict[str, str] = field(default_factory=dict)

    def __contains__(self, path: object) -> bool:
        return path in self.directories or path in self.fingerprints


class IgnoreFilter:
    """Decide which paths are excluded by version-control ignore rules.

    Rules come from ``.gitignore`` / ``.ignore`` files (gitignore syntax,
    matched with ``pathspec``), from ``.git/info/exclude``, and from two fixed
    rules: anything named ``.git`` and any hidden component below a watch
    root. A path is ignored if the path itself or any of its ancestor
    directories matches a rule whose base directory contains it.

    Attributes:
        roots (List[Path]): Absolute watch roots (directories).
        specs (List[Tuple[Path, pathspec.GitIgnoreSpec]]): Loaded rules with the
            directory they are relative to.
    """

    def __init__(self, roots: Iterable[Path] = ()) -> None:
        self.roots: List[Path] = []
        self.specs: List[Tuple[Path, pathspec.GitIgnoreSpec]] = []
        self._loaded: set = set()
        for root in roots:
            self.add_root(root)

    def add_root(self, root: Path) -> None:
        """Register a watch root and load the ignore files that govern it."""
        root = Path(os.path.abspath(root))
        if root not in self.roots:
            self.roots.append(root)

        project_root = find_project_root(root)
        if project_root is not None:
            self._load_file(project_root / ".git" / "info" / "exclude", project_root)
            # Ancestors from the project root down to the watch root.
            chain = [root] + [p for p in root.parents if _is_within(p, project_root)]
            for directory in reversed(chain):
                self.load_directory(directory)
        else:
            self.load_directory(root)

    def load_directory(self, directory: Path) -> None:
        """Load the ignore files found directly in ``directory``."""
        for name in IGNORE_FILE_NAMES:
            self._load_file(directory / name, directory)

    def _load_file(self, path: Path, base: Path) -> None:
        if path in self._loaded:
            return
        self._loaded.add(path)
        try:
            with path.open("r", encoding="utf-8-sig") as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Ignoring unreadable ignore file {path}: {e}")
            return
        spec = pathspec.GitIgnoreSpec.from_lines(lines)
        if spec.patterns:
            logger.debug(f"Loaded {len(spec.patterns)} ignore rules from {path}")
            self.specs.append((base, spec))

    def is_ignored(self, path: PathLike, is_dir: Optional[bool] = None) -> bool:
        """Check a path against the ignore rules.

        Args:
            path (PathLike): Path to check (relative paths are taken from the
                working directory).
            is_dir (Optional[bool]): Whether the path is a directory. Checked
                on disk when omitted; a path that no longer exists is treated
                as a file.

        Returns:
            bool: True if the path must not be tracked nor trigger anything.
        """
        absolute = Path(os.path.abspath(path))
        if is_dir is None:
            is_dir = absolute.is_dir()

        if ".git" in absolute.parts:
            return True

        for root in self.roots:
            if _is_within(absolute, root) and absolute != root:
                if any(part.startswith(".") for part in absolute.relative_to(root).parts):
                    return True

        for base, spec in self.specs:
            if not _is_within(absolute, base) or absolute == base:
                continue
            parts = absolute.relative_to(base).parts
            for i in range(1, len(parts) + 1):
                candidate = "/".join(parts[:i])
                if i < len(parts) or is_dir:
                    candidate += "/"
                if spec.match_file(candidate):
                    return True
        return False

    def __repr__(self) -> str:
        return f"<IgnoreFilter roots={len(self.roots)} specs={len(self.specs)}>"


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def _walk(root: Path, ignore: IgnoreFilter) -> Tuple[List[Path], List[Path]]:
    """Enumerate non-ignored directories and files below ``root``."""
    directories: List[Path] = []
    files: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        ignore.load_directory(current)
        kept = []
        for name in sorted(dirnames):
            child = current / name
            if not ignore.is_ignored(child, is_dir=True):
                kept.append(name)
                directories.append(child)
        dirnames[:] = kept
        for name in sorted(filenames):
            child = current / name
            if not ignore.is_ignored(child, is_dir=False):
                files.append(child)
    return directories, files


def build_tracked_set(
    paths: Sequence[PathLike],
    base: Optional[Path] = None,
) -> Tuple[TrackedSet, IgnoreFilter, List[WatchTarget]]:
    """Build the baseline for a watch session.

    Directories are walked recursively (ignored subtrees pruned) and every
    contained file is fingerprinted; plain files are fingerprinted directly.

    Args:
        paths (Sequence[PathLike]): User-supplied files and directories.
        base (Optional[Path]): Normalization base, defaults to the working
            directory.

    Returns:
        Tuple[TrackedSet, IgnoreFilter, List[WatchTarget]]: The snapshot, the
        ignore filter built along the way, and the tagged targets.

    Raises:
        ConfigError: If a path does not exist.
    """
    base = base if base is not None else Path.cwd()
    targets: List[WatchTarget] = []
    for raw in paths:
        absolute = Path(os.path.abspath(os.path.join(base, os.fspath(raw))))
        if not absolute.exists():
            raise ConfigError(f"Watch path does not exist: {raw}")
        kind = TargetKind.DIRECTORY if absolute.is_dir() else TargetKind.FILE
        targets.append(WatchTarget(normalize_path(absolute, base), absolute, kind))

    ignore = IgnoreFilter(t.absolute for t in targets if t.is_dir)
    directories: List[str] = []
    fingerprints: Dict[str, str] = {}

    def track_file(file_path: Path) -> None:
        key = normalize_path(file_path, base)
        if key in fingerprints:
            return
        digest = compute_fingerprint(file_path)
        if digest is None:
            logger.warning(f"Skipping unreadable file: {key}")
            return
        fingerprints[key] = digest

    for target in targets:
        if target.is_dir:
            directories.append(target.path)
            sub_dirs, files = _walk(target.absolute, ignore)
            directories.extend(normalize_path(d, base) for d in sub_dirs)
            for file_path in files:
                track_file(file_path)
        else:
            track_file(target.absolute)

    tracked = TrackedSet(frozenset(directories), fingerprints)
    logger.info(
        f"Tracking {len(tracked.fingerprints)} files in {len(tracked.directories)} directories"
    )
    return tracked, ignore, targets
