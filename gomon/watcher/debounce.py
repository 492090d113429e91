import os
from typing import TYPE_CHECKING, Optional

from gomon.watcher.monitor import ChangeEvent, Op

if TYPE_CHECKING:
    from gomon.config import WatchConfig

# Operations that change file content. Everything else never triggers a build.
TRIGGER_OPS = frozenset({Op.WRITE, Op.CREATE, Op.REMOVE})


class DebounceGate:
    """
    Collapses bursts of qualifying change events into single triggers.

    The gate keeps no queue: a rejected event is dropped. The window is
    anchored at the last accepted trigger, so edits landing while a build is
    running are dropped if they fall inside it. Callers serialize access
    (the supervisor calls accept() under its lock).
    """

    def __init__(self, config: "WatchConfig", debounce: float):
        self.extensions = tuple(config.extensions)
        self.debounce = debounce
        self.last_accepted: Optional[float] = None

    def qualifies(self, event: ChangeEvent) -> bool:
        """Checks operation kind and extension; does not look at timing."""
        if event.is_directory or event.op not in TRIGGER_OPS:
            return False
        return os.path.splitext(event.path)[1] in self.extensions

    def accept(self, event: ChangeEvent, now: float) -> bool:
        """
        Decides whether `event` triggers a build at time `now`.

        :param event: The change event.
        :param now: A monotonic timestamp in seconds.
        :return bool: True if accepted; the window is then re-anchored at `now`.
        """
        if not self.qualifies(event):
            return False
        if self.last_accepted is not None and now - self.last_accepted < self.debounce:
            return False
        self.last_accepted = now
        return True
