import time
import logging

from gomon.log import set_console_level
from gomon.supervisor.state import StatsSnapshot


def _format_duration(seconds: float) -> str:
    return time.strftime('%H:%M:%S', time.gmtime(seconds))


def print_stats(snapshot: StatsSnapshot) -> None:
    """Prints the supervisor statistics shown by the 'stats' command."""
    print("\n--- gomon Stats ---")
    print(f"  Runtime             : {_format_duration(snapshot.uptime)}")
    print(f"  Builds              : {snapshot.build_count}")
    print(f"  Last build          : {snapshot.last_build_duration:.2f}s")
    if snapshot.running:
        print(f"  Process             : RUNNING (PID {snapshot.pid})")
    else:
        print(f"  Process             : STOPPED ({snapshot.phase.value})")
    print(f"  Watched extensions  : {', '.join(snapshot.extensions) or '-'}")
    print(f"  Excluded dirs       : {', '.join(snapshot.exclude_dirs) or '-'}")
    print("-" * 19 + "\n")


def toggle_verbose_logging(verbose: bool) -> bool:
    """
    Switches the console handler between DEBUG and INFO.

    :param verbose: The current state.
    :return bool: The new state.
    """
    verbose = not verbose
    if set_console_level(logging.DEBUG if verbose else logging.INFO):
        print(f"Verbose console logging is now {'ON' if verbose else 'OFF'}.")
    else:
        print("Could not find console handler to modify level.")
    return verbose


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  rs                     - Rebuild and restart the application now.")
    print("  stats                  - Show build and process statistics.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  help                   - Show this help message.")
    print("  exit | quit            - Stop the application and exit gomon.")
    print()
