"""
The watcher package.
Turns raw filesystem activity into change events and filters them into build triggers.
"""
from .monitor import ChangeEvent, FileChangeMonitor, Op
from .debounce import DebounceGate

__all__ = ["ChangeEvent", "FileChangeMonitor", "Op", "DebounceGate"]
