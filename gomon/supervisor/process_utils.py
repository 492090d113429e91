import os
import sys
import signal
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from gomon.errors import ProcessStartError, StopError

log = logging.getLogger(__name__)


#* --- Paths & Environment ---
def get_executable_path(base_path: Path) -> Path:
    """Returns the platform-specific full path for an executable."""
    return base_path.with_suffix(".exe") if sys.platform == "win32" else base_path


def merged_environment(overrides: Dict[str, str]) -> Dict[str, str]:
    """The inherited environment with `overrides` applied on top."""
    env = dict(os.environ)
    env.update(overrides)
    return env


#* --- Child Output ---
def _read_pipe(pipe, process_name: str, level: int) -> None:
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if line:
                proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, name: str) -> List[threading.Thread]:
    """Starts background threads to consume and log a process's stdout/stderr."""
    readers = []
    if process.stdout:
        readers.append(threading.Thread(
            target=_read_pipe, args=(process.stdout, name, logging.INFO),
            daemon=True, name=f"{name}-stdout"
        ))
    if process.stderr:
        readers.append(threading.Thread(
            target=_read_pipe, args=(process.stderr, name, logging.ERROR),
            daemon=True, name=f"{name}-stderr"
        ))
    for reader in readers:
        reader.start()
    return readers


#* --- Process Creation ---
def launch_process(
    args: Sequence[str],
    cwd: Path,
    env: Dict[str, str],
    capture_output: bool = False,
    name: str = "app",
) -> subprocess.Popen:
    """
    Starts the built artifact.

    Standard streams are inherited unless `capture_output` is set, in which
    case they are piped into the `proc.<name>` logger.

    :raises ProcessStartError: If the executable cannot be launched.
    """
    pipe = subprocess.PIPE if capture_output else None
    try:
        process = subprocess.Popen(
            list(args),
            cwd=str(cwd),
            env=env,
            stdout=pipe,
            stderr=pipe,
        )
    except (OSError, ValueError) as e:
        raise ProcessStartError(f"Failed to start process '{args[0]}': {e}") from e

    if capture_output:
        log_process_output(process, name)
    return process


def start_reaper(process: subprocess.Popen, on_exit: Callable[[subprocess.Popen, int], None]) -> threading.Thread:
    """
    Starts a thread that waits for `process` to exit and then calls `on_exit`.

    The caller owns the returned thread and is expected to join it.
    """
    def _reap() -> None:
        returncode = process.wait()
        on_exit(process, returncode)

    reaper = threading.Thread(target=_reap, daemon=True, name=f"Reaper-{process.pid}")
    reaper.start()
    return reaper


#* --- Process Termination ---
def _descendants(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _send_interrupt(process: subprocess.Popen) -> None:
    """Asks the process to exit: SIGINT where supported, an immediate kill on Windows."""
    if sys.platform == "win32":
        process.kill()
    else:
        process.send_signal(signal.SIGINT)


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue


def _stop_descendants(pid: int, descendants: List[psutil.Process], timeout: float) -> None:
    """
    Terminates, then kills, descendants of `pid` that outlived it.

    :raises StopError: If psutil refuses to inspect or signal one of them.
    """
    try:
        _, alive = psutil.wait_procs(descendants, timeout=0)
        for proc in alive:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(alive, timeout=timeout)
        _forceful_kill(alive)
    except psutil.Error as e:
        raise StopError(f"Failed to stop descendants of process {pid}: {e}") from e


def stop_process(process: subprocess.Popen, timeout: float) -> Optional[int]:
    """
    Stops `process` gracefully, then forcefully, and waits for it to exit.

    Descendants still alive after the child exits are terminated too.

    :param process: The child to stop.
    :param timeout: Seconds to wait after each signal.
    :return: The child's exit code.
    :raises StopError: If the child is still alive after being killed, or a
        descendant cannot be stopped.
    """
    if process.poll() is not None:
        return process.returncode

    descendants = _descendants(process.pid)
    try:
        _send_interrupt(process)
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning(f"Process {process.pid} did not exit within {timeout}s. Forcing shutdown...")
            process.kill()
            process.wait(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise StopError(f"Process {process.pid} is still running after kill.") from e
    except OSError as e:
        if process.poll() is None:
            raise StopError(f"Failed to signal process {process.pid}: {e}") from e

    if descendants:
        _stop_descendants(process.pid, descendants, timeout)

    return process.returncode
