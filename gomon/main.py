import sys
import logging
from typing import Any, Dict, List, Optional, Tuple

import setproctitle

from gomon.log import setup_logging
from gomon.supervisor import Supervisor
from gomon.config import MergedSettings, load_config, resolve_project_dir
from gomon.errors import ConfigError, WatchInitError, WatchStreamClosed

log = logging.getLogger("gomon")

USAGE = "Usage: gomon <app-path> [--debounce SECONDS] [--verbose]"


def parse_args(argv: List[str]) -> Tuple[str, Dict[str, Any], bool]:
    """
    Parses the command line.

    :param argv: Arguments without the program name.
    :return: The app path, keyword overrides for load_config and the verbose flag.
    :raises ConfigError: On a missing app path or a malformed option.
    """
    args = list(argv)
    verbose = False
    if "--verbose" in args:
        verbose = True
        args.remove("--verbose")

    overrides: Dict[str, Any] = {}
    if "--debounce" in args:
        index = args.index("--debounce")
        try:
            overrides["debounce"] = float(args[index + 1])
        except (IndexError, ValueError) as e:
            raise ConfigError(f"--debounce expects a number of seconds. {USAGE}") from e
        del args[index:index + 2]

    if len(args) != 1 or args[0].startswith("--"):
        raise ConfigError(USAGE)
    return args[0], overrides, verbose


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for gomon."""
    setproctitle.setproctitle("gomon - Supervisor")
    argv = sys.argv[1:] if argv is None else argv

    # Plain console logging until the project settings are known.
    setup_logging(logging.INFO)
    try:
        app_path, overrides, verbose = parse_args(argv)
        settings = MergedSettings(resolve_project_dir(app_path))
        setup_logging(logging.DEBUG if verbose else logging.INFO, settings)
        config = load_config(app_path, settings=settings, **overrides)
    except ConfigError as e:
        log.critical(f"Invalid configuration: {e}")
        return 1

    log.info(f"Watching {config.watch.root} for {', '.join(config.watch.extensions)} changes. "
             f"Type 'help' for a list of commands.")
    supervisor = Supervisor(config)
    try:
        supervisor.run(sys.stdin, verbose=verbose)
    except WatchInitError as e:
        log.critical(f"Could not start watching: {e}")
        return 1
    except WatchStreamClosed as e:
        log.critical(f"Stopped: {e}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted. Shutting down...")
        supervisor.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
