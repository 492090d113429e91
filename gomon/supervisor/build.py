import time
import logging
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Type, Union

from gomon.errors import BuildError, CompileFailure, ScriptFailure
from gomon.supervisor.process_utils import merged_environment

if TYPE_CHECKING:
    from gomon.config import BuildConfig

log = logging.getLogger(__name__)


@dataclass
class BuildResult:
    success: bool
    duration: float
    output: str = ""
    stage: Optional[str] = None
    error: Optional[BuildError] = None


class BuildPipeline:
    """
    Runs the pre-build scripts and then the compile step.

    Every step runs in the configured work dir with the environment overrides
    merged over the inherited environment. The first failing step ends the
    pipeline. The artifact is never started here.
    """

    def __init__(self, config: "BuildConfig"):
        self.config = config

    def compile_args(self) -> List[str]:
        """The compile command line, writing the artifact to the configured output path."""
        return [*self.config.compile_command, "-o", str(self.config.output_path), *self.config.flags]

    def _run_step(self, args: Union[str, List[str]], env: Dict[str, str], shell: bool,
                  failure: Type[BuildError], description: str) -> str:
        """
        Runs one step, capturing stdout and stderr combined.

        :return str: The captured output.
        :raises BuildError: `failure` if the step cannot start or exits non-zero.
        """
        log.debug(f"Running {description}: {args}")
        try:
            completed = subprocess.run(
                args,
                cwd=str(self.config.work_dir),
                env=env,
                shell=shell,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
            )
        except (OSError, ValueError) as e:
            raise failure(f"{description} could not be started: {e}") from e

        output = completed.stdout.decode("utf-8", errors="replace")
        if completed.returncode != 0:
            raise failure(
                f"{description} failed with exit code {completed.returncode}",
                output=output,
                returncode=completed.returncode,
            )
        return output

    def run(self) -> BuildResult:
        """
        Runs the whole pipeline.

        :return BuildResult: success with elapsed duration, or failure with the captured output.
        """
        start = time.monotonic()
        env = merged_environment(dict(self.config.env))

        try:
            for script in self.config.scripts:
                self._run_step(script, env, shell=True, failure=ScriptFailure, description=f"Script '{script}'")

            try:
                self.config.output_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CompileFailure(f"Failed to create output directory: {e}") from e

            self._run_step(self.compile_args(), env, shell=False, failure=CompileFailure, description="Build")
        except BuildError as e:
            return BuildResult(
                success=False,
                duration=time.monotonic() - start,
                output=e.output,
                stage=e.stage,
                error=e,
            )

        return BuildResult(success=True, duration=time.monotonic() - start)
