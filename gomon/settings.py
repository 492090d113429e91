"""
This module contains the default configuration settings for gomon.
It defines the watch rules, build defaults, supervisor timings, live reload
endpoint and logging backends. Every value can be overridden from the
environment (or a `.env` file) and, for the keys in OVERRIDABLE_SETTINGS,
from a `gomon.json` file in the watched project.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)


def _env_list(name: str, default: str) -> tuple:
    """Reads a comma separated environment variable as a tuple of non-empty items."""
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


#* --- Watch Settings ---
WATCH_EXTENSIONS = _env_list("GOMON_EXTENSIONS", ".go,.mod,.sum")
EXCLUDE_DIRS = _env_list("GOMON_EXCLUDE_DIRS", "vendor,node_modules,.git")
INCLUDE_DIRS = _env_list("GOMON_INCLUDE_DIRS", ".")
DEBOUNCE_SECONDS = float(os.getenv("GOMON_DEBOUNCE", "1.0"))

#* --- Build Settings ---
COMPILE_COMMAND = _env_list("GOMON_COMPILE_COMMAND", "go,build")
BUILD_FLAGS = _env_list("GOMON_BUILD_FLAGS", "-race")
BUILD_ENV = _env_list("GOMON_BUILD_ENV", "CGO_ENABLED=1")
BUILD_SCRIPTS = ()
OUTPUT_DIR_NAME = "bin"
ARTIFACT_NAME = "app"

#* --- Supervisor Settings ---
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("GOMON_GRACEFUL_TIMEOUT", "10"))  # seconds before force-killing
CHILD_OUTPUT = os.getenv("GOMON_CHILD_OUTPUT", "inherit").lower()  # 'inherit' or 'log'
RUN_ARGS = ()
PROJECT_CONFIG_FILENAME = "gomon.json"

#* --- Live Reload Server ---
LIVERELOAD_ENABLED = os.getenv("GOMON_LIVERELOAD_ENABLED", "True").lower() in ('true', '1', 't')
LIVERELOAD_HOST = os.getenv("GOMON_LIVERELOAD_HOST", "0.0.0.0")
LIVERELOAD_PORT = int(os.getenv("GOMON_LIVERELOAD_PORT", "35729"))
LIVERELOAD_PATH = "/livereload"
LIVERELOAD_SEND_TIMEOUT = 1.0

#* --- Logging ---
VERBOSE_LOGGING = False
LOG_BUFFER_FLUSH_INTERVAL = 10

# Grafana Loki (for observability)
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")

#* --- OVERRIDABLE SETTINGS (Changeable per project via gomon.json) ---
OVERRIDABLE_SETTINGS = {
    # Watch rules
    "WATCH_EXTENSIONS", "EXCLUDE_DIRS", "INCLUDE_DIRS", "DEBOUNCE_SECONDS",
    # Build
    "COMPILE_COMMAND", "BUILD_FLAGS", "BUILD_ENV", "BUILD_SCRIPTS",
    "OUTPUT_DIR_NAME", "ARTIFACT_NAME",
    # Supervisor
    "GRACEFUL_SHUTDOWN_TIMEOUT", "CHILD_OUTPUT", "RUN_ARGS",
    # Live reload
    "LIVERELOAD_ENABLED", "LIVERELOAD_PORT",
}
