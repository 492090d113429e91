import json
import logging
from pathlib import Path
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

import gomon.settings as default_settings
from gomon.errors import ConfigError
from gomon.supervisor.process_utils import get_executable_path

log = logging.getLogger(__name__)

CHILD_OUTPUT_MODES = ("inherit", "log")

# Keyword arguments accepted by load_config and the setting each one replaces.
_OVERRIDE_KEYS = {
    "debounce": "DEBOUNCE_SECONDS",
    "extensions": "WATCH_EXTENSIONS",
    "exclude_dirs": "EXCLUDE_DIRS",
    "include_dirs": "INCLUDE_DIRS",
    "scripts": "BUILD_SCRIPTS",
    "compile_command": "COMPILE_COMMAND",
    "flags": "BUILD_FLAGS",
    "env": "BUILD_ENV",
    "graceful_timeout": "GRACEFUL_SHUTDOWN_TIMEOUT",
    "child_output": "CHILD_OUTPUT",
    "run_args": "RUN_ARGS",
    "livereload_enabled": "LIVERELOAD_ENABLED",
    "livereload_host": "LIVERELOAD_HOST",
    "livereload_port": "LIVERELOAD_PORT",
}


@dataclass(frozen=True)
class WatchConfig:
    """What to watch. Built once, never mutated."""
    root: Path
    extensions: Tuple[str, ...] = (".go", ".mod", ".sum")
    exclude_dirs: Tuple[str, ...] = ("vendor", "node_modules", ".git")
    include_dirs: Tuple[str, ...] = (".",)


@dataclass(frozen=True)
class BuildConfig:
    """How to build the artifact. Built once, never mutated."""
    work_dir: Path
    output_path: Path
    scripts: Tuple[str, ...] = ()
    compile_command: Tuple[str, ...] = ("go", "build")
    flags: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class SupervisorConfig:
    watch: WatchConfig
    build: BuildConfig
    debounce: float = 1.0
    graceful_timeout: float = 10.0
    child_output: str = "inherit"
    run_args: Tuple[str, ...] = ()
    livereload_enabled: bool = True
    livereload_host: str = "0.0.0.0"
    livereload_port: int = 35729
    livereload_path: str = "/livereload"
    livereload_send_timeout: float = 1.0


class MergedSettings:
    """
    Merges the default settings with a project's `gomon.json` overrides.

    Precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment / `.env` file (resolved in settings.py).
    3. Overrides from `gomon.json` for settings in `OVERRIDABLE_SETTINGS`.
    """

    def __init__(self, project_dir: Optional[Path] = None) -> None:
        self._load_defaults()
        self.PROJECT_CONFIG_PATH: Optional[Path] = (
            Path(project_dir) / self.PROJECT_CONFIG_FILENAME if project_dir else None
        )
        self._load_overrides()

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from the settings.py module as defaults."""
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    def _load_overrides(self) -> None:
        """
        Loads and applies settings from the project's `gomon.json` file.

        Only keys listed in `OVERRIDABLE_SETTINGS` are applied; JSON lists are
        coerced back to tuples where the default is a tuple.
        """
        if self.PROJECT_CONFIG_PATH is None or not self.PROJECT_CONFIG_PATH.exists():
            return

        try:
            with self.PROJECT_CONFIG_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse project config '{self.PROJECT_CONFIG_PATH}': {e}")
            return

        if not isinstance(overrides, dict):
            log.error(f"Project config '{self.PROJECT_CONFIG_PATH}' must contain a JSON object. Ignoring.")
            return

        log.info(f"Loading project configuration overrides from {self.PROJECT_CONFIG_PATH}")
        for key, value in overrides.items():
            key = key.upper()
            if not hasattr(self, key):
                log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
                continue
            if key not in self.OVERRIDABLE_SETTINGS:
                log.warning(f"Attempted to override non-overridable setting '{key}'. Ignoring.")
                continue
            self.set(key, value)
            log.debug(f"Overridden setting: {key} = {value}")

    def set(self, key: str, value: Any) -> None:
        """Sets a value, coercing lists to tuples where the default is a tuple."""
        original_value = getattr(self, key, None)
        if isinstance(original_value, tuple) and isinstance(value, (list, tuple)):
            value = tuple(str(v) for v in value)
        elif isinstance(original_value, tuple) and isinstance(value, str):
            value = tuple(item.strip() for item in value.split(",") if item.strip())
        setattr(self, key, value)

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)


def parse_env(entries: Union[Mapping[str, str], Iterable[str], None]) -> Dict[str, str]:
    """
    Normalizes environment overrides into a dict.

    Accepts either a mapping or an iterable of `KEY=VALUE` strings. Later
    entries win when a key repeats.

    :raises ConfigError: If a string entry has no '=' or an empty key.
    """
    if not entries:
        return {}
    if isinstance(entries, Mapping):
        return {str(k): str(v) for k, v in entries.items()}

    env: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = str(entry).partition("=")
        if not sep or not key:
            raise ConfigError(f"Invalid environment override '{entry}'. Expected KEY=VALUE.")
        env[key] = value
    return env


def resolve_project_dir(app_path: Union[str, Path]) -> Path:
    """
    The directory that is watched and built for `app_path`.

    :raises ConfigError: If the path does not exist.
    """
    path = Path(app_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Application path '{app_path}' does not exist.")
    path = path.resolve()
    return path if path.is_dir() else path.parent


def _number(settings: MergedSettings, key: str, kind: Callable[[Any], Union[int, float]]) -> Union[int, float]:
    """Converts a numeric setting, reporting bad values as ConfigError."""
    value = settings.get(key)
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number (got {value!r}).") from e


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("true", "1", "t")
    return bool(value)


def build_config(settings: MergedSettings, project_dir: Path) -> SupervisorConfig:
    """
    Builds the immutable configuration objects from merged settings.

    :param settings: The merged settings for the project.
    :param project_dir: The resolved directory being watched and built.
    :return SupervisorConfig: The validated configuration.
    :raises ConfigError: If a value is not a number or is out of range.
    """
    debounce = _number(settings, "DEBOUNCE_SECONDS", float)
    if debounce < 0:
        raise ConfigError(f"Debounce must not be negative (got {debounce}).")

    graceful_timeout = _number(settings, "GRACEFUL_SHUTDOWN_TIMEOUT", float)
    if graceful_timeout < 0:
        raise ConfigError(f"Graceful shutdown timeout must not be negative (got {graceful_timeout}).")

    child_output = str(settings.CHILD_OUTPUT).lower()
    if child_output not in CHILD_OUTPUT_MODES:
        raise ConfigError(f"CHILD_OUTPUT must be one of {CHILD_OUTPUT_MODES} (got '{child_output}').")

    port = _number(settings, "LIVERELOAD_PORT", int)
    if not 0 <= port <= 65535:
        raise ConfigError(f"Live reload port {port} is out of range.")

    compile_command = tuple(settings.COMPILE_COMMAND)
    if not compile_command:
        raise ConfigError("COMPILE_COMMAND must not be empty.")

    output_path = get_executable_path(project_dir / settings.OUTPUT_DIR_NAME / settings.ARTIFACT_NAME)

    watch = WatchConfig(
        root=project_dir,
        extensions=tuple(settings.WATCH_EXTENSIONS),
        exclude_dirs=tuple(settings.EXCLUDE_DIRS),
        include_dirs=tuple(settings.INCLUDE_DIRS) or (".",),
    )
    build = BuildConfig(
        work_dir=project_dir,
        output_path=output_path,
        scripts=tuple(settings.BUILD_SCRIPTS),
        compile_command=compile_command,
        flags=tuple(settings.BUILD_FLAGS),
        env=MappingProxyType(parse_env(settings.BUILD_ENV)),
    )
    return SupervisorConfig(
        watch=watch,
        build=build,
        debounce=debounce,
        graceful_timeout=graceful_timeout,
        child_output=child_output,
        run_args=tuple(settings.RUN_ARGS),
        livereload_enabled=_flag(settings.LIVERELOAD_ENABLED),
        livereload_host=str(settings.LIVERELOAD_HOST),
        livereload_port=port,
        livereload_path=settings.LIVERELOAD_PATH,
        livereload_send_timeout=_number(settings, "LIVERELOAD_SEND_TIMEOUT", float),
    )


def load_config(app_path: Union[str, Path], settings: Optional[MergedSettings] = None,
                **overrides: Any) -> SupervisorConfig:
    """
    Resolves the full configuration for the application at `app_path`.

    Keyword overrides (as passed by the entry point) take precedence over the
    project's `gomon.json`, which takes precedence over the environment.

    :param app_path: The main source file or the project directory.
    :param settings: Already merged settings for that project, to avoid reading `gomon.json` twice.
    :return SupervisorConfig: The validated configuration.
    :raises ConfigError: On a missing path, an unknown override or an invalid value.
    """
    project_dir = resolve_project_dir(app_path)
    if settings is None:
        settings = MergedSettings(project_dir)

    for name, value in overrides.items():
        if value is None:
            continue
        if name not in _OVERRIDE_KEYS:
            raise ConfigError(f"Unknown configuration override '{name}'.")
        if name == "env" and isinstance(value, Mapping):
            value = tuple(f"{k}={v}" for k, v in value.items())
        settings.set(_OVERRIDE_KEYS[name], value)

    return build_config(settings, project_dir)
