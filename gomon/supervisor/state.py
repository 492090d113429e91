import time
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Tuple


class Phase(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class SupervisorState:
    """
    Mutable supervisor state. Every field is guarded by the owning
    Supervisor's lock; nothing here locks on its own.
    """
    process: Optional[subprocess.Popen] = None
    running: bool = False
    phase: Phase = Phase.IDLE
    build_count: int = 0
    last_build_duration: float = 0.0
    last_trigger: Optional[float] = None
    start_time: float = field(default_factory=time.time)


class StatsSnapshot(NamedTuple):
    uptime: float
    build_count: int
    last_build_duration: float
    running: bool
    pid: Optional[int]
    phase: Phase
    extensions: Tuple[str, ...]
    exclude_dirs: Tuple[str, ...]
