import threading
from unittest import mock

import psutil
import pytest

from conftest import posix_only, wait_until

from gomon.errors import (CompileFailure, ProcessStartError, StopError, WatchInitError, WatchRuntimeError,
                          WatchStreamClosed)
from gomon.supervisor import process_utils
from gomon.supervisor import BuildResult, Phase, Supervisor
from gomon.watcher import ChangeEvent, Op


def _failed_build() -> BuildResult:
    error = CompileFailure("Build failed with exit code 2", output="syntax error", returncode=2)
    return BuildResult(success=False, duration=0.01, output=error.output, stage=error.stage, error=error)


@pytest.fixture
def failing_pipeline():
    pipeline = mock.Mock()
    pipeline.run.return_value = _failed_build()
    return pipeline


@pytest.fixture
def monitor():
    monitor = mock.Mock()
    monitor.stream.return_value = iter(())
    return monitor


@pytest.fixture
def notifier():
    return mock.Mock()


@pytest.fixture
def supervisor(supervisor_config, monitor, notifier):
    sup = Supervisor(supervisor_config, monitor=monitor, notifier=notifier)
    yield sup
    sup.shutdown()


#* --- Build cycles ---
@posix_only
def test_successful_cycle_starts_one_process(supervisor, notifier):
    result = supervisor.trigger_cycle("manual")

    assert result.success
    assert supervisor.build_count == 1
    assert supervisor.is_running
    assert supervisor.phase == Phase.RUNNING
    assert supervisor.current_process.poll() is None
    assert supervisor.stats().last_build_duration == result.duration
    notifier.notify_reload.assert_called_once_with()


@posix_only
def test_restart_replaces_the_running_process(supervisor):
    supervisor.trigger_cycle()
    first = supervisor.current_process
    supervisor.trigger_cycle()
    second = supervisor.current_process

    assert first is not second
    assert first.poll() is not None
    assert second.poll() is None
    assert supervisor.build_count == 2


@posix_only
def test_failed_build_leaves_no_process(supervisor, project_dir, notifier):
    supervisor.trigger_cycle()
    previous = supervisor.current_process
    (project_dir / "FAIL").touch()

    with pytest.raises(CompileFailure):
        supervisor.trigger_cycle()

    assert previous.poll() is not None
    assert supervisor.current_process is None
    assert not supervisor.is_running
    assert supervisor.phase == Phase.IDLE
    assert supervisor.build_count == 2
    assert notifier.notify_reload.call_count == 1


def test_counter_counts_failed_cycles(supervisor_config, failing_pipeline, monitor):
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)
    for _ in range(3):
        with pytest.raises(CompileFailure):
            sup.trigger_cycle()

    assert sup.build_count == 3
    assert sup.stats().last_build_duration == 0.0
    assert sup.notifier is None


@posix_only
def test_reaper_clears_state_when_process_exits(supervisor, project_dir):
    (project_dir / "EXIT").touch()
    supervisor.trigger_cycle()

    assert wait_until(lambda: not supervisor.is_running)
    assert supervisor.current_process is None
    assert supervisor.phase == Phase.IDLE


def test_missing_artifact_is_a_start_error(supervisor_config, monitor):
    pipeline = mock.Mock()
    pipeline.run.return_value = BuildResult(success=True, duration=0.01)
    sup = Supervisor(supervisor_config, pipeline=pipeline, monitor=monitor)

    with pytest.raises(ProcessStartError):
        sup.trigger_cycle()
    assert not sup.is_running
    assert sup.phase == Phase.IDLE


#* --- Change events ---
def test_change_burst_triggers_a_single_cycle(supervisor_config, failing_pipeline, monitor):
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)
    event = ChangeEvent(str(supervisor_config.watch.root / "main.go"), Op.WRITE)

    triggered = [sup.on_change(event, now) for now in (100.0, 100.2, 100.4)]

    assert triggered == [True, False, False]
    assert sup.build_count == 1
    assert sup.state.last_trigger == 100.0


def test_on_change_uses_event_arrival_time(supervisor_config, failing_pipeline, monitor):
    clock = mock.Mock(return_value=500.0)
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor, clock=clock)
    path = str(supervisor_config.watch.root / "main.go")

    assert sup.on_change(ChangeEvent(path, Op.WRITE, timestamp=10.0))
    assert not sup.on_change(ChangeEvent(path, Op.WRITE, timestamp=10.5))
    assert sup.on_change(ChangeEvent(path, Op.WRITE))
    assert sup.build_count == 2


def test_irrelevant_change_is_ignored(supervisor_config, failing_pipeline, monitor):
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)

    assert not sup.on_change(ChangeEvent("/elsewhere/notes.txt", Op.WRITE), 1.0)
    assert sup.build_count == 0
    failing_pipeline.run.assert_not_called()


def test_manual_cycle_bypasses_debounce(supervisor_config, failing_pipeline, monitor):
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)
    sup.on_change(ChangeEvent("/src/main.go", Op.WRITE), 100.0)

    with pytest.raises(CompileFailure):
        sup.trigger_cycle("manual")

    assert sup.build_count == 2
    assert sup.gate.last_accepted == 100.0


#* --- Lifecycle ---
def test_watch_init_error_is_fatal(supervisor_config, failing_pipeline, monitor):
    monitor.start.side_effect = WatchInitError("inotify limit reached")
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)

    with pytest.raises(WatchInitError):
        sup.run(console_stream=None)
    failing_pipeline.run.assert_not_called()
    monitor.stop.assert_called_once_with()


def test_closed_event_stream_stops_the_supervisor(supervisor_config, failing_pipeline, monitor):
    def _closed(stop_event):
        raise WatchStreamClosed("observer died")
        yield

    monitor.stream.side_effect = _closed
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)

    with pytest.raises(WatchStreamClosed):
        sup.run(console_stream=None)
    assert sup.build_count == 1


def test_stream_events_feed_the_gate(supervisor_config, failing_pipeline, monitor):
    path = str(supervisor_config.watch.root / "main.go")
    monitor.stream.return_value = iter([
        WatchRuntimeError("watch on pkg/ lost"),
        ChangeEvent(path, Op.WRITE, timestamp=50.0),
        ChangeEvent(path, Op.WRITE, timestamp=50.4),
        ChangeEvent(path, Op.WRITE, timestamp=51.5),
    ])
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)
    try:
        sup.start(console_stream=None)
        # One initial build plus two accepted changes.
        assert wait_until(lambda: sup.build_count == 3)
    finally:
        sup.shutdown()
    assert sup.gate.last_accepted == 51.5


@posix_only
def test_shutdown_stops_child_and_refuses_new_cycles(supervisor, monitor, notifier):
    supervisor.trigger_cycle()
    process = supervisor.current_process

    supervisor.shutdown()
    supervisor.shutdown()

    assert process.poll() is not None
    assert not supervisor.is_running
    assert supervisor.trigger_cycle() is None
    assert supervisor.build_count == 1
    monitor.stop.assert_called_once_with()
    notifier.stop.assert_called_once_with()


def test_request_shutdown_ends_run(supervisor_config, failing_pipeline, monitor):
    sup = Supervisor(supervisor_config, pipeline=failing_pipeline, monitor=monitor)
    sup.request_shutdown()

    sup.run(console_stream=None)

    assert sup.wait(0)
    monitor.stop.assert_called_once_with()


#* --- Cycle failures stay local ---
@posix_only
def test_stop_error_is_logged_and_cycle_continues(supervisor, caplog):
    supervisor.trigger_cycle()
    stuck = supervisor.current_process
    try:
        with mock.patch.object(process_utils, "stop_process", side_effect=StopError("still alive")):
            result = supervisor.trigger_cycle()
    finally:
        stuck.kill()
        stuck.wait()

    assert result.success
    assert "Failed to stop process: still alive" in caplog.text
    assert supervisor.current_process is not stuck
    assert supervisor.current_process.poll() is None
    assert supervisor.build_count == 2


@posix_only
def test_descendant_cleanup_failure_does_not_stop_watching(supervisor_config, monitor):
    path = str(supervisor_config.watch.root / "main.go")
    sup = Supervisor(supervisor_config, monitor=monitor)
    try:
        sup.trigger_cycle()
        helper = mock.Mock(pid=1)
        with mock.patch.object(process_utils, "_descendants", return_value=[helper]), \
                mock.patch("psutil.wait_procs", side_effect=psutil.AccessDenied(pid=1)):
            assert sup.on_change(ChangeEvent(path, Op.WRITE), now=100.0)

        assert sup.build_count == 2
        assert sup.is_running
        assert not sup.wait(0)
        assert sup.fatal_error is None
    finally:
        sup.shutdown()


def test_unexpected_cycle_error_keeps_the_watch_loop_alive(supervisor_config, monitor, caplog):
    path = str(supervisor_config.watch.root / "main.go")
    pipeline = mock.Mock()
    pipeline.run.side_effect = [_failed_build(), RuntimeError("pipeline exploded"), _failed_build()]
    monitor.stream.return_value = iter([
        ChangeEvent(path, Op.WRITE, timestamp=10.0),
        ChangeEvent(path, Op.WRITE, timestamp=11.5),
    ])
    sup = Supervisor(supervisor_config, pipeline=pipeline, monitor=monitor)
    try:
        sup.start(console_stream=None)
        assert wait_until(lambda: sup.build_count == 3)
        sup._monitor_thread.join(timeout=5)
    finally:
        sup.shutdown()

    assert pipeline.run.call_count == 3
    assert sup.fatal_error is None
    assert sup.phase == Phase.IDLE
    assert "pipeline exploded" in caplog.text


def test_phase_returns_to_idle_when_build_step_raises(supervisor_config, monitor):
    pipeline = mock.Mock()
    pipeline.run.side_effect = ValueError("embedded null byte")
    sup = Supervisor(supervisor_config, pipeline=pipeline, monitor=monitor)

    with pytest.raises(ValueError):
        sup.trigger_cycle()

    assert sup.phase == Phase.IDLE
    assert not sup.is_running


#* --- Concurrency ---
@posix_only
def test_concurrent_cycles_serialize_with_one_live_process(supervisor):
    launched = []
    overlaps = []
    launch = process_utils.launch_process

    def _record(*args, **kwargs):
        # Every earlier child must already be gone when a new one starts.
        overlaps.extend(p for p in launched if p.poll() is None)
        process = launch(*args, **kwargs)
        launched.append(process)
        return process

    with mock.patch.object(process_utils, "launch_process", side_effect=_record):
        workers = [threading.Thread(target=supervisor.trigger_cycle, args=("manual",)) for _ in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

    assert supervisor.build_count == 4
    assert overlaps == []
    assert len(launched) == 4
    assert [p for p in launched if p.poll() is None] == [supervisor.current_process]
