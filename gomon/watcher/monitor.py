import os
import queue
import logging
import time
import threading
from enum import Enum
from dataclasses import dataclass, field
from watchdog.observers import Observer
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Set, Union
from watchdog.events import (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED,
                             EVENT_TYPE_MOVED, FileSystemEvent, FileSystemEventHandler)

from gomon.errors import WatchInitError, WatchRuntimeError, WatchStreamClosed

if TYPE_CHECKING:
    from gomon.config import WatchConfig

log = logging.getLogger(__name__)


class Op(str, Enum):
    """The kind of filesystem operation behind a ChangeEvent."""
    WRITE = "write"
    CREATE = "create"
    REMOVE = "remove"
    # Opens and closes without a content change.
    ACCESS = "access"


@dataclass(frozen=True)
class ChangeEvent:
    path: str
    op: Op
    is_directory: bool = False
    # Monotonic arrival time; None when built by hand.
    timestamp: Optional[float] = field(default=None, compare=False)


_OPS_BY_EVENT_TYPE = {
    EVENT_TYPE_MODIFIED: Op.WRITE,
    EVENT_TYPE_CREATED: Op.CREATE,
    EVENT_TYPE_DELETED: Op.REMOVE,
}


def translate_event(event: FileSystemEvent, timestamp: Optional[float] = None) -> List[ChangeEvent]:
    """
    Converts a watchdog event into ChangeEvents.

    A move is reported as a removal of the source followed by a creation of
    the destination. Event types that do not touch content map to Op.ACCESS.
    """
    src_path = os.fsdecode(event.src_path)
    if event.event_type == EVENT_TYPE_MOVED:
        return [
            ChangeEvent(src_path, Op.REMOVE, event.is_directory, timestamp),
            ChangeEvent(os.fsdecode(event.dest_path), Op.CREATE, event.is_directory, timestamp),
        ]
    op = _OPS_BY_EVENT_TYPE.get(event.event_type, Op.ACCESS)
    return [ChangeEvent(src_path, op, event.is_directory, timestamp)]


class _EventForwarder(FileSystemEventHandler):
    """A watchdog event handler that forwards translated events onto the monitor's queues."""

    def __init__(self, events: "queue.Queue", errors: "queue.Queue"):
        super().__init__()
        self._events = events
        self._errors = errors

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            for change in translate_event(event, time.monotonic()):
                self._events.put(change)
        except Exception as e:
            self._errors.put(WatchRuntimeError(f"Could not translate event {event!r}: {e}"))


# Marks the end of the event stream after stop().
_STREAM_END = object()


class FileChangeMonitor:
    """
    Watches every non-excluded directory under the configured root.

    Directories are enumerated once by start(); directories created later
    are not watched. Change events and watch errors travel on two separate
    queues.
    """

    def __init__(
        self,
        config: "WatchConfig",
        observer_factory: Callable[[], Observer] = Observer,
        poll_interval: float = 0.5,
    ):
        self.config = config
        self.poll_interval = poll_interval
        self.watched_dirs: List[str] = []
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._events: "queue.Queue" = queue.Queue()
        self._errors: "queue.Queue" = queue.Queue()
        self._dead_watches: Set[str] = set()
        self._stopped = threading.Event()

    def is_excluded(self, dir_path: str) -> bool:
        """
        True if the root-relative path contains any exclusion fragment.

        This is plain substring containment, so 'vendor' also excludes
        'myvendored/' and any path segment that merely contains the text.
        """
        relative = os.path.relpath(dir_path, self.config.root)
        return any(fragment in relative for fragment in self.config.exclude_dirs)

    def collect_dirs(self) -> List[str]:
        """
        Walks the include dirs once and returns every directory to watch.

        :raises WatchInitError: If an include dir is missing or cannot be read.
        """
        def _raise(error: OSError) -> None:
            raise error

        found: List[str] = []
        seen: Set[str] = set()
        for include in self.config.include_dirs:
            base = os.path.normpath(os.path.join(str(self.config.root), include))
            if not os.path.isdir(base):
                raise WatchInitError(f"Watch directory '{base}' does not exist.")
            try:
                for dir_path, dir_names, _ in os.walk(base, onerror=_raise):
                    if self.is_excluded(dir_path):
                        dir_names[:] = []
                        continue
                    if dir_path not in seen:
                        seen.add(dir_path)
                        found.append(dir_path)
            except OSError as e:
                raise WatchInitError(f"Failed to walk '{base}': {e}") from e
        return found

    def start(self) -> None:
        """
        Registers a non-recursive watch on every collected directory and starts observing.

        :raises WatchInitError: If the watches cannot be established.
        """
        self.watched_dirs = self.collect_dirs()
        forwarder = _EventForwarder(self._events, self._errors)
        observer = self._observer_factory()
        try:
            for dir_path in self.watched_dirs:
                observer.schedule(forwarder, dir_path, recursive=False)
            observer.start()
        except OSError as e:
            raise WatchInitError(f"Failed to establish filesystem watches: {e}") from e

        self._observer = observer
        log.info(f"Watching {len(self.watched_dirs)} directories under {self.config.root}")
        log.debug(f"Watched directories: {self.watched_dirs}")

    def stream(self, stop_event: threading.Event) -> Iterator[Union[ChangeEvent, WatchRuntimeError]]:
        """
        Selects over the event and error channels until `stop_event` is set or
        the monitor is stopped.

        Pending errors are yielded before the next change event.

        :raises WatchStreamClosed: If the observer thread dies while running.
        """
        if self._observer is None:
            raise WatchStreamClosed("Monitor was not started.")

        while not stop_event.is_set():
            yield from self.errors()
            try:
                item = self._events.get(timeout=self.poll_interval)
            except queue.Empty:
                if self._stopped.is_set():
                    return
                if not self._observer.is_alive():
                    raise WatchStreamClosed("Filesystem observer stopped unexpectedly.")
                self._check_watches()
                continue
            if item is _STREAM_END:
                return
            yield item

    def _check_watches(self) -> None:
        """Reports per-directory watches whose emitter thread has died."""
        for emitter in list(self._observer.emitters):
            path = emitter.watch.path
            if not emitter.is_alive() and path not in self._dead_watches:
                self._dead_watches.add(path)
                self._errors.put(WatchRuntimeError(f"Watch on '{path}' stopped delivering events."))

    def errors(self) -> List[WatchRuntimeError]:
        """Drains the pending watch errors without blocking."""
        pending = []
        while True:
            try:
                pending.append(self._errors.get_nowait())
            except queue.Empty:
                return pending

    def stop(self) -> None:
        """Closes every watch and ends the event stream."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._events.put(_STREAM_END)
        if self._observer is not None:
            self._observer.unschedule_all()
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5)
        log.debug("Filesystem monitor stopped.")
