"""
Exception hierarchy for gomon.

Only WatchInitError and WatchStreamClosed are fatal to the supervisor.
Everything else is local to a single build cycle and is logged by whoever
triggered the cycle.
"""
from typing import Optional


class GomonError(Exception):
    """Base class for all gomon errors."""


class ConfigError(GomonError):
    """Raised when the resolved configuration is unusable."""


#* --- Filesystem monitor ---
class WatchError(GomonError):
    pass


class WatchInitError(WatchError):
    """The filesystem monitor could not be established."""


class WatchRuntimeError(WatchError):
    """The monitor reported a problem but is still delivering events."""


class WatchStreamClosed(WatchError):
    """The filesystem event stream ended while the supervisor was running."""


#* --- Build ---
class BuildError(GomonError):
    """A build step failed. `output` holds the captured combined output."""

    stage = "build"

    def __init__(self, message: str, output: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode

    def __str__(self) -> str:
        message = super().__str__()
        if self.output:
            return f"{message}\n{self.output.rstrip()}"
        return message


class ScriptFailure(BuildError):
    stage = "script"


class CompileFailure(BuildError):
    stage = "compile"


#* --- Child process ---
class ProcessError(GomonError):
    pass


class ProcessStartError(ProcessError):
    """The artifact was built but could not be launched."""


class StopError(ProcessError):
    """The running child could not be terminated."""
