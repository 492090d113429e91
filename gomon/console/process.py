import sys
import logging
import threading
from typing import IO, TYPE_CHECKING, Callable, Dict

from gomon.errors import GomonError
from gomon.console.handler import print_help, print_stats, toggle_verbose_logging

if TYPE_CHECKING:
    from gomon.supervisor import Supervisor

log = logging.getLogger(__name__)


class CommandConsole:
    """
    Reads commands from an input stream, one line at a time, and applies them
    to the supervisor. A manual restart bypasses the debounce gate.
    """

    def __init__(self, supervisor: "Supervisor", stream: IO[str] = sys.stdin, verbose: bool = False):
        self.supervisor = supervisor
        self.stream = stream
        self.verbose = verbose
        self._stopped = threading.Event()

    def _restart(self) -> None:
        log.info("Manual restart triggered")
        try:
            self.supervisor.trigger_cycle("manual")
        except GomonError as e:
            log.error(f"Restart failed: {e}")

    def _toggle_verbose(self) -> None:
        self.verbose = toggle_verbose_logging(self.verbose)

    def execute_command(self, line: str) -> bool:
        """
        Executes a single command from the user.

        :param line: The raw input line.
        :return bool: True if the console should exit, False otherwise.
        """
        command = line.strip().lower()
        if not command:
            return False

        log.debug(f"Executing command: {command}")
        command_map: Dict[str, Callable[[], None]] = {
            "rs": self._restart,
            "stats": lambda: print_stats(self.supervisor.stats()),
            "verbose": self._toggle_verbose,
            "help": print_help,
        }

        if command in command_map:
            command_map[command]()
            return False

        if command in ("exit", "quit"):
            log.info("Shutdown requested from the console.")
            self.supervisor.request_shutdown()
            return True

        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return False

    def run(self) -> None:
        """Reads and executes commands until end of input, 'exit' or stop()."""
        while not self._stopped.is_set():
            try:
                line = self.stream.readline()
            except (OSError, ValueError) as e:
                log.debug(f"Console input closed: {e}")
                break
            if not line:
                log.debug("Console input reached end of file.")
                break
            if self._stopped.is_set():
                break
            try:
                if self.execute_command(line):
                    break
            except Exception as e:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)

    def stop(self) -> None:
        self._stopped.set()
