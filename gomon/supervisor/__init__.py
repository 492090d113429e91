"""
The Supervisor package.
Runs the build pipeline and manages the lifecycle of the built application.

This package contains the central Supervisor class and its helper modules,
which together handle building, starting, stopping and reaping the one
child process that gomon keeps alive.
"""
from .supervisor import Supervisor
from .build import BuildPipeline, BuildResult
from .state import Phase, StatsSnapshot

__all__ = ["Supervisor", "BuildPipeline", "BuildResult", "Phase", "StatsSnapshot"]
