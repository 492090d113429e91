import os
import sys
import time
import logging
import threading
import subprocess
from typing import IO, TYPE_CHECKING, Callable, List, Optional

from gomon.supervisor.build import BuildPipeline, BuildResult
from gomon.supervisor.state import Phase, StatsSnapshot, SupervisorState
from gomon.supervisor import process_utils
from gomon.watcher import ChangeEvent, DebounceGate, FileChangeMonitor
from gomon.web import LiveReloadNotifier
from gomon.errors import (BuildError, GomonError, ProcessStartError, StopError,
                          WatchRuntimeError, WatchStreamClosed)

if TYPE_CHECKING:
    from gomon.config import SupervisorConfig
    from gomon.console import CommandConsole

log = logging.getLogger(__name__)


class Supervisor:
    """
    Owns the watched tree, the build pipeline and the one child process.

    Build cycles triggered by file changes and by the console are serialized
    on a single lock, which also guards every field of `state`. The lock is
    held across stopping, building and starting, but never while the child
    runs.
    """

    def __init__(
        self,
        config: "SupervisorConfig",
        pipeline: Optional[BuildPipeline] = None,
        monitor: Optional[FileChangeMonitor] = None,
        notifier: Optional[LiveReloadNotifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.state = SupervisorState()
        self.gate = DebounceGate(config.watch, config.debounce)
        self.pipeline = pipeline or BuildPipeline(config.build)
        self.monitor = monitor or FileChangeMonitor(config.watch)
        if notifier is None and config.livereload_enabled:
            notifier = LiveReloadNotifier(
                host=config.livereload_host,
                port=config.livereload_port,
                path=config.livereload_path,
                send_timeout=config.livereload_send_timeout,
            )
        self.notifier = notifier
        self.console: Optional["CommandConsole"] = None
        self.fatal_error: Optional[WatchStreamClosed] = None

        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._closing = False
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        self._monitor_thread: Optional[threading.Thread] = None
        self._console_thread: Optional[threading.Thread] = None
        self._reapers: List[threading.Thread] = []

    #* --- State Accessors ---
    @property
    def build_count(self) -> int:
        with self._lock:
            return self.state.build_count

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self.state.running

    @property
    def current_process(self) -> Optional[subprocess.Popen]:
        with self._lock:
            return self.state.process

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self.state.phase

    def stats(self) -> StatsSnapshot:
        """Returns a consistent snapshot of the supervisor state."""
        with self._lock:
            process = self.state.process
            return StatsSnapshot(
                uptime=time.time() - self.state.start_time,
                build_count=self.state.build_count,
                last_build_duration=self.state.last_build_duration,
                running=self.state.running,
                pid=process.pid if process is not None else None,
                phase=self.state.phase,
                extensions=tuple(self.config.watch.extensions),
                exclude_dirs=tuple(self.config.watch.exclude_dirs),
            )

    #* --- Build Cycle ---
    def trigger_cycle(self, reason: str = "change") -> Optional[BuildResult]:
        """
        Runs one stop → build → start cycle.

        :param reason: Why the cycle runs ('change', 'manual', 'initial'); used for logging.
        :return: The successful BuildResult, or None if the supervisor is shutting down.
        :raises BuildError: If a script or the compile step failed. No process is left running.
        :raises ProcessStartError: If the artifact could not be launched.
        """
        with self._lock:
            if self._closing:
                log.debug(f"Ignoring {reason} trigger during shutdown.")
                return None

            self.state.build_count += 1
            build_number = self.state.build_count

            self._stop_current_locked()

            self.state.phase = Phase.BUILDING
            try:
                log.info(f"Building... (build #{build_number}, {reason})")
                result = self.pipeline.run()
                if not result.success:
                    log.debug(f"Build #{build_number} failed at the {result.stage} stage after {result.duration:.2f}s")
                    raise result.error
                log.info(f"Build successful (took {result.duration:.2f}s)")

                self.state.phase = Phase.STARTING
                process = self._launch_locked()

                self.state.process = process
                self.state.running = True
                self.state.last_build_duration = result.duration
                self.state.phase = Phase.RUNNING
            finally:
                if self.state.phase is not Phase.RUNNING:
                    self.state.phase = Phase.IDLE

            self._reapers = [r for r in self._reapers if r.is_alive()]
            self._reapers.append(process_utils.start_reaper(process, self._on_process_exit))
            log.info(f"Process started (build #{build_number}, PID {process.pid})")

            if self.notifier is not None:
                self.notifier.notify_reload()
            return result

    def _launch_locked(self) -> subprocess.Popen:
        build = self.config.build
        args = [str(build.output_path), *self.config.run_args]
        return process_utils.launch_process(
            args,
            cwd=build.work_dir,
            env=process_utils.merged_environment(dict(build.env)),
            capture_output=self.config.child_output == "log",
        )

    def _stop_current_locked(self) -> None:
        """Stops the running child, if any. A StopError is logged, never raised."""
        process = self.state.process
        if process is None:
            return

        log.info(f"Stopping previous process (PID {process.pid})...")
        try:
            returncode = process_utils.stop_process(process, self.config.graceful_timeout)
            log.debug(f"Process {process.pid} stopped with exit code {returncode}")
        except StopError as e:
            log.error(f"Failed to stop process: {e}")
        finally:
            self.state.process = None
            self.state.running = False
            self.state.phase = Phase.IDLE

    def _on_process_exit(self, process: subprocess.Popen, returncode: int) -> None:
        """Reaper callback. Only updates state if `process` is still the current child."""
        with self._lock:
            if self.state.process is not process:
                return
            self.state.process = None
            self.state.running = False
            if returncode == 0:
                log.info(f"Process {process.pid} exited cleanly")
            else:
                log.warning(f"Process {process.pid} exited with code {returncode}")
            self.state.phase = Phase.IDLE

    def on_change(self, event: ChangeEvent, now: Optional[float] = None) -> bool:
        """
        Runs a cycle if the debounce gate accepts `event`.

        :param event: The change event.
        :param now: Monotonic time of the event; defaults to its arrival time or the clock.
        :return bool: True if a cycle was triggered.
        """
        if now is None:
            now = event.timestamp if event.timestamp is not None else self._clock()

        with self._lock:
            accepted = self.gate.accept(event, now)
            if accepted:
                self.state.last_trigger = now
        if not accepted:
            return False

        log.info(f"File changed: {os.path.basename(event.path)}")
        try:
            self.trigger_cycle("change")
        except BuildError as e:
            log.error(f"Build failed: {e}")
        except ProcessStartError as e:
            log.error(f"Failed to start process: {e}")
        except GomonError as e:
            log.error(f"Rebuild failed: {e}")
        return True

    #* --- Lifecycle ---
    def start(self, console_stream: Optional[IO[str]] = None, verbose: bool = False) -> None:
        """
        Starts watching, runs the initial build and starts the worker threads.

        :param console_stream: Input stream for the command console; None disables it.
        :param verbose: Whether console logging starts at DEBUG, for the console's verbose toggle.
        :raises WatchInitError: If the filesystem monitor cannot be established.
        """
        self.monitor.start()
        if self.notifier is not None:
            self.notifier.start()

        log.info("Initial build starting...")
        try:
            self.trigger_cycle("initial")
        except GomonError as e:
            log.error(f"Initial build failed: {e}")

        self._monitor_thread = threading.Thread(target=self._consume_events, daemon=True, name="WatchEventThread")
        self._monitor_thread.start()

        if console_stream is not None:
            from gomon.console import CommandConsole
            self.console = CommandConsole(self, console_stream, verbose=verbose)
            # Blocking reads on a TTY cannot be interrupted, so this one stays a daemon.
            self._console_thread = threading.Thread(target=self.console.run, daemon=True, name="ConsoleInputThread")
            self._console_thread.start()

    def _consume_events(self) -> None:
        """Monitor thread body: feeds change events to the gate, logs watch errors."""
        try:
            for item in self.monitor.stream(self._stop_event):
                if isinstance(item, WatchRuntimeError):
                    log.error(f"Watcher error: {item}")
                    continue
                try:
                    self.on_change(item)
                except Exception as e:
                    # A broken cycle must not end the watch loop.
                    log.error(f"Unhandled exception while handling {item.path}: {e}", exc_info=True)
        except WatchStreamClosed as e:
            log.critical(f"Filesystem event stream closed: {e}")
            self.fatal_error = e
            self._stop_event.set()
        except Exception as e:
            log.critical(f"Unhandled exception in the watch loop: {e}", exc_info=True)
            self.fatal_error = WatchStreamClosed(str(e))
            self._stop_event.set()

    def request_shutdown(self) -> None:
        """Asks run() to return. Safe to call from any thread."""
        self._stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until shutdown is requested. Returns True if it was."""
        return self._stop_event.wait(timeout)

    def run(self, console_stream: Optional[IO[str]] = sys.stdin, verbose: bool = False) -> None:
        """
        Starts the supervisor and blocks until shutdown is requested.

        :raises WatchInitError: If the monitor cannot be established.
        :raises WatchStreamClosed: If the event stream closed while running.
        """
        try:
            self.start(console_stream, verbose)
            # Short waits keep the main thread responsive to KeyboardInterrupt.
            while not self._stop_event.wait(0.5):
                pass
        finally:
            self.shutdown()
        if self.fatal_error is not None:
            raise self.fatal_error

    def shutdown(self) -> None:
        """
        Tears everything down: watches, console, child process, notifier and
        worker threads. Safe to call more than once.
        """
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self._stop_event.set()
        self.monitor.stop()
        if self.console is not None:
            self.console.stop()

        with self._lock:
            self._closing = True
            self._stop_current_locked()
            reapers = list(self._reapers)

        if self.notifier is not None:
            self.notifier.stop()

        current = threading.current_thread()
        for thread in [self._monitor_thread, self._console_thread, *reapers]:
            if thread is not None and thread is not current:
                thread.join(timeout=1 if thread is self._console_thread else 5)

        uptime = time.time() - self.state.start_time
        log.info(f"Supervisor stopped. Total runtime: {time.strftime('%H:%M:%S', time.gmtime(uptime))}")
