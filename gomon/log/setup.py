import sys
import logging
from typing import Optional, TYPE_CHECKING

from gomon.log.handler import LokiHandler

if TYPE_CHECKING:
    from gomon.config import MergedSettings

# Child output forwarded in 'log' mode arrives on loggers named 'proc.<name>'.
PROCESS_LOGGER_PREFIX = "proc."


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw child process output."""

    def __init__(self) -> None:
        super().__init__('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')

    def format(self, record: logging.LogRecord) -> str:
        # Child output is already a complete line; print it untouched.
        if record.name.startswith(PROCESS_LOGGER_PREFIX):
            return record.getMessage()
        return super().format(record)


def setup_logging(console_level: int = logging.INFO, settings: Optional["MergedSettings"] = None) -> None:
    """
    Configures the root logger for gomon.
    This sets up a console handler and optionally a Loki handler, clearing any
    previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param settings: Merged settings to read the Loki configuration from.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # watchdog is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(logging.INFO)

    # --- Loki Handler (conditional) ---
    if settings is not None and settings.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(
                url=settings.LOKI_URL,
                org_id=settings.LOKI_ORG_ID,
                flush_interval=settings.LOG_BUFFER_FLUSH_INTERVAL,
            )
            loki_handler.setLevel(logging.INFO) # Avoid spamming Loki with DEBUG logs
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {settings.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")


def set_console_level(level: int) -> bool:
    """
    Changes the level of the console handler installed by setup_logging.

    :return bool: True if a console handler was found.
    """
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler) and isinstance(handler.formatter, MainFormatter):
            handler.setLevel(level)
            return True
    return False
