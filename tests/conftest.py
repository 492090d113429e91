import sys
import time
import textwrap
from pathlib import Path
from typing import Callable

import pytest

from gomon.config import BuildConfig, SupervisorConfig, WatchConfig

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="artifact is a shebang script")

# Stands in for `go build`: writes a runnable artifact to the path after `-o`,
# or fails with compiler-like output while a FAIL file exists in the work dir.
FAKE_COMPILER = textwrap.dedent('''
    import os
    import sys

    if os.path.exists("FAIL"):
        print("./main.go:3:1: syntax error: unexpected }")
        sys.exit(2)

    out = sys.argv[sys.argv.index("-o") + 1]
    with open(out, "w") as f:
        f.write("#!" + sys.executable + "\\n")
        f.write(ARTIFACT)
    os.chmod(out, 0o755)
''')

# The built program: exits at once with code 3 while an EXIT file exists,
# otherwise runs until interrupted.
FAKE_ARTIFACT = textwrap.dedent('''
    import os
    import sys
    import time

    if os.path.exists("EXIT"):
        sys.exit(3)
    try:
        while True:
            time.sleep(0.05)
    except KeyboardInterrupt:
        sys.exit(0)
''')


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Polls `predicate` until it is true or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    (project / "main.go").write_text("package main\n\nfunc main() {}\n")
    (project / "go.mod").write_text("module example.com/app\n")
    return project


@pytest.fixture
def compiler(tmp_path: Path) -> Path:
    script = tmp_path / "fake_go.py"
    script.write_text(f"ARTIFACT = {FAKE_ARTIFACT!r}\n" + FAKE_COMPILER)
    return script


@pytest.fixture
def build_config(project_dir: Path, compiler: Path) -> BuildConfig:
    return BuildConfig(
        work_dir=project_dir,
        output_path=project_dir / "bin" / "app",
        compile_command=(sys.executable, str(compiler)),
    )


@pytest.fixture
def watch_config(project_dir: Path) -> WatchConfig:
    return WatchConfig(root=project_dir)


@pytest.fixture
def supervisor_config(watch_config: WatchConfig, build_config: BuildConfig) -> SupervisorConfig:
    return SupervisorConfig(
        watch=watch_config,
        build=build_config,
        debounce=1.0,
        graceful_timeout=3.0,
        child_output="log",
        livereload_enabled=False,
    )
