"""File system watcher implementation using watchdog.

Responsibility:
    Turn the raw event stream of the OS notifier into *changes* (created,
    removed, modified) that are allowed to trigger an action, and deliver
    them, debounced, to a single callback (the change reporter or the
    process supervisor).

Design:
    - **Message Passing**: The watchdog observer thread only enqueues raw
      events (:class:`WatchEventHandler`). One consumer thread owns the
      :class:`~sprint.tracking.TrackedSet`, the :class:`DebounceGate` and
      whatever the callback owns, so their mutations are serialized without
      locks.
    - **Classification**: Create/remove (and the two halves of a move) are
      *structural*. A completed write (inotify close-after-write) is a
      *content* event. Every other event kind is discarded.
    - **Content Confirmation**: A content event only counts when the file's
      fingerprint differs from the last one observed. A file created or
      renamed over a tracked one (an atomic save) is confirmed the same way
      and reported as modified.
    - **Leading-Edge Debounce**: The first qualifying change acts and opens a
      window; further changes inside the window are dropped, not queued.

Key Invariants:
    - Ignored paths never reach the debounce gate.
    - Structural events on watch roots and tracked paths never trigger as
      such (no self-triggering loops).
    - Notifier failures are fatal: the session stops and records the error.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from sprint.tracking import (
    IgnoreFilter,
    TrackedSet,
    WatchTarget,
    compute_fingerprint,
    normalize_path,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Change",
    "ChangeDetector",
    "ChangeKind",
    "DebounceGate",
    "WatchError",
    "WatchEventHandler",
    "WatchSession",
    "classify_event",
    "content_event_types",
]

QUEUE_POLL_SECONDS = 0.5


class WatchError(RuntimeError):
    """The underlying notification mechanism failed."""


class ChangeKind(Enum):
    CREATED = "Created"
    REMOVED = "Removed"
    MODIFIED = "Modified"

    @property
    def is_structural(self) -> bool:
        return self is not ChangeKind.MODIFIED


@dataclass(frozen=True)
class Change:
    """A qualifying change to a watched path.

    Attributes:
        path (str): Normalized path.
        kind (ChangeKind): What happened to it.
    """

    path: str
    kind: ChangeKind


def content_event_types(observer_class: Optional[type] = None) -> FrozenSet[str]:
    """Return the watchdog event types that signal a completed write.

    Inotify reports close-after-write, which is what a finished write looks
    like. Other backends only report modifications, which are used instead.

    Args:
        observer_class (Optional[type]): Observer implementation, defaults to
            the platform observer.

    Returns:
        FrozenSet[str]: Event type names treated as content events.
    """
    observer_class = observer_class or Observer
    if "Inotify" in observer_class.__name__:
        return frozenset({EVENT_TYPE_CLOSED})
    return frozenset({EVENT_TYPE_MODIFIED})


def _decode(path: Any) -> str:
    return os.fsdecode(path) if path else ""


def classify_event(
    event: FileSystemEvent,
    content_types: Iterable[str] = frozenset({EVENT_TYPE_CLOSED}),
) -> List[Tuple[str, ChangeKind]]:
    """Map one raw event to ``(absolute path, kind)`` pairs.

    Args:
        event (FileSystemEvent): The raw watchdog event.
        content_types (Iterable[str]): Event types treated as content events.

    Returns:
        List[Tuple[str, ChangeKind]]: Zero, one or two classified paths.
    """
    event_type = event.event_type
    src = _decode(event.src_path)

    if event_type == EVENT_TYPE_CREATED:
        return [(src, ChangeKind.CREATED)]
    if event_type == EVENT_TYPE_DELETED:
        return [(src, ChangeKind.REMOVED)]
    if event_type == EVENT_TYPE_MOVED:
        dest = _decode(getattr(event, "dest_path", ""))
        pairs = [(src, ChangeKind.REMOVED)]
        if dest:
            pairs.append((dest, ChangeKind.CREATED))
        return pairs
    if event_type in content_types and not event.is_directory:
        return [(src, ChangeKind.MODIFIED)]
    return []


class DebounceGate:
    """Leading-edge, non-queuing debounce.

    An action is accepted only if more than ``threshold`` seconds elapsed since
    the last accepted one. A rejected action leaves the state untouched and is
    not retried later.

    Attributes:
        threshold (float): Debounce window in seconds.
        last_action (float): Time of the last accepted action (monotonic);
            negative infinity before the first one.
    """

    __slots__ = ("threshold", "last_action")

    def __init__(self, threshold: float) -> None:
        if threshold < 0:
            raise ValueError(f"Debounce threshold must be non-negative, got {threshold}")
        self.threshold = threshold
        self.last_action = float("-inf")

    def accept(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        if now - self.last_action > self.threshold:
            self.last_action = now
            return True
        return False

    def __repr__(self) -> str:
        return f"<DebounceGate threshold={self.threshold}>"


class ChangeDetector:
    """Classify, filter and confirm raw events against the tracked baseline.

    Attributes:
        tracked (TrackedSet): Baseline; fingerprints are updated in place on
            a confirmed content change.
        ignore (IgnoreFilter): Version-control ignore rules.
        targets (List[WatchTarget]): Watch roots.
        base (Path): Normalization base (working directory).
        content_types (FrozenSet[str]): Event types treated as content events.
    """

    def __init__(
        self,
        tracked: TrackedSet,
        ignore: IgnoreFilter,
        targets: Sequence[WatchTarget],
        base: Optional[Path] = None,
        content_types: Optional[Iterable[str]] = None,
    ) -> None:
        self.tracked = tracked
        self.ignore = ignore
        self.targets = list(targets)
        self.base = base if base is not None else Path.cwd()
        self.content_types = frozenset(content_types) if content_types is not None else content_event_types()
        self._root_paths = frozenset(t.path for t in self.targets)
        self._dir_roots = [t.absolute for t in self.targets if t.is_dir]
        self._file_roots = frozenset(t.absolute for t in self.targets if not t.is_dir)

    def _in_scope(self, absolute: Path) -> bool:
        if absolute in self._file_roots:
            return True
        for root in self._dir_roots:
            if absolute == root or root in absolute.parents:
                return True
        return False

    def detect(self, event: FileSystemEvent) -> List[Change]:
        """Return the qualifying changes carried by one raw event."""
        changes: List[Change] = []
        for raw_path, kind in classify_event(event, self.content_types):
            absolute = Path(os.path.abspath(raw_path))
            if not self._in_scope(absolute):
                continue
            if self.ignore.is_ignored(absolute, is_dir=event.is_directory):
                continue
            path = normalize_path(absolute, self.base)

            if kind is ChangeKind.CREATED and path in self.tracked.fingerprints:
                # Atomic save: a file renamed or created over a tracked one.
                if self._confirm_content(path, absolute):
                    changes.append(Change(path, ChangeKind.MODIFIED))
            elif kind.is_structural:
                if path in self._root_paths or path in self.tracked:
                    continue
                changes.append(Change(path, kind))
            elif self._confirm_content(path, absolute):
                changes.append(Change(path, kind))
        return changes

    def _confirm_content(self, path: str, absolute: Path) -> bool:
        previous = self.tracked.fingerprints.get(path)
        if previous is None:
            return False
        current = compute_fingerprint(absolute)
        if current is None or current == previous:
            return False
        self.tracked.fingerprints[path] = current
        return True


class WatchEventHandler(FileSystemEventHandler):
    """Forward every raw watchdog event to the session queue."""

    def __init__(self, events: "queue.Queue[FileSystemEvent]") -> None:
        super().__init__()
        self.events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        self.events.put(event)


class WatchSession:
    """Run the observer and the single event consumer of a watch.

    ``on_change`` is invoked from the consumer thread for every change the
    debounce gate accepts. An exception raised by it, like a dead observer,
    ends the session: the error is kept in ``error`` and ``stop_event`` is
    set so the main thread wakes up.

    Attributes:
        detector (ChangeDetector): Event classification and confirmation.
        gate (DebounceGate): Debounce state.
        on_change (Callable[[Change], None]): Action for accepted changes.
        stop_event (threading.Event): Set when the session ends.
        error (Optional[BaseException]): Fatal error that ended the session.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        gate: DebounceGate,
        on_change: Callable[[Change], None],
        stop_event: Optional[threading.Event] = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.detector = detector
        self.gate = gate
        self.on_change = on_change
        self.stop_event = stop_event or threading.Event()
        self.error: Optional[BaseException] = None
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._events: "queue.Queue[FileSystemEvent]" = queue.Queue()
        self._consumer: Optional[threading.Thread] = None
        self._stopping = False
        self.start_time = time.monotonic()

        # Metrics
        self.events_seen = 0
        self.changes_detected = 0
        self.changes_debounced = 0
        self.actions = 0

    def start(self) -> None:
        """Schedule the watch roots and start the observer and the consumer.

        Raises:
            WatchError: If the observer cannot be started.
        """
        handler = WatchEventHandler(self._events)
        observer = self._observer_factory()
        try:
            for path, recursive in self._watches():
                observer.schedule(handler, str(path), recursive=recursive)
            observer.start()
        except OSError as e:
            raise WatchError(f"Failed to start watching: {e} (Check inotify limits?)") from e
        self._observer = observer
        logger.info(f"Observer started ({type(observer).__name__}) on {len(self.detector.targets)} targets")

        self._consumer = threading.Thread(target=self._consume, name="WatchConsumer", daemon=True)
        self._consumer.start()

    def _watches(self) -> List[Tuple[Path, bool]]:
        """Return the ``(directory, recursive)`` pairs to schedule.

        File targets are watched through their parent directory so that
        replacements of the file are seen. Directories already covered by a
        recursive watch are not scheduled twice.
        """
        recursive = []
        for target in self.detector.targets:
            if target.is_dir and not any(r == target.absolute or r in target.absolute.parents for r in recursive):
                recursive = [r for r in recursive if target.absolute not in r.parents]
                recursive.append(target.absolute)

        watches = [(root, True) for root in recursive]
        for target in self.detector.targets:
            if target.is_dir:
                continue
            parent = target.absolute.parent
            covered = any(r == parent or r in parent.parents for r in recursive)
            if not covered and (parent, False) not in watches:
                watches.append((parent, False))
        return watches

    def process_event(self, event: FileSystemEvent, now: Optional[float] = None) -> List[Change]:
        """Handle one raw event: detect, debounce, act.

        Args:
            event (FileSystemEvent): The raw event.
            now (Optional[float]): Monotonic arrival time, defaults to now.

        Returns:
            List[Change]: The changes that were acted upon.
        """
        self.events_seen += 1
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Raw event: {event.event_type} on {_decode(event.src_path)}")

        acted: List[Change] = []
        for change in self.detector.detect(event):
            self.changes_detected += 1
            if not self.gate.accept(now):
                self.changes_debounced += 1
                logger.debug(f"Debounced: {change.kind.value} {change.path}")
                continue
            logger.info(f"{change.kind.value}: {change.path}")
            self.actions += 1
            self.on_change(change)
            acted.append(change)
        return acted

    def _consume(self) -> None:
        try:
            while not self._stopping:
                try:
                    event = self._events.get(timeout=QUEUE_POLL_SECONDS)
                except queue.Empty:
                    self._check_observer()
                    continue
                self.process_event(event)
        except Exception as e:
            if not self._stopping:
                logger.critical(f"Watch session failed: {e}", exc_info=True)
                self.error = e
        finally:
            self.stop_event.set()

    def _check_observer(self) -> None:
        if self._observer is not None and not self._stopping and not self._observer.is_alive():
            raise WatchError("Watchdog observer stopped unexpectedly")

    def stop(self) -> None:
        """Stop the observer, then wait for the consumer thread to finish.

        The consumer is joined without a timeout: an action already running
        (such as a restart) completes before this returns.
        """
        self._stopping = True
        if self._observer is not None:
            try:
                if self._observer.is_alive():
                    self._observer.stop()
                    self._observer.join(timeout=5.0)
                    if self._observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except RuntimeError as e:
                logger.error(f"Error stopping observer: {e}")
        consumer = self._consumer
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join()
        self.stop_event.set()
        logger.info("Watcher stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        """Return event counters and uptime."""
        return {
            "events_seen": self.events_seen,
            "changes_detected": self.changes_detected,
            "changes_debounced": self.changes_debounced,
            "actions": self.actions,
            "uptime": time.monotonic() - self.start_time,
        }

    def __repr__(self) -> str:
        return f"<WatchSession targets={len(self.detector.targets)} actions={self.actions}>"
