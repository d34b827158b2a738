from __future__ import annotations

import shlex
import signal
import threading
import time
from pathlib import Path
from typing import Callable, List

import pytest

import supertask

FAST_BACKOFF = supertask.RestartPolicy(backoff_seconds=0.05, backoff_max_seconds=0.2, reset_after_seconds=30)


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _alive(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except (FileNotFoundError, ProcessLookupError):
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def test_restart_policy_backoff() -> None:
    policy = supertask.RestartPolicy(backoff_seconds=1, backoff_max_seconds=5)
    assert [policy.delay_for(n) for n in range(1, 7)] == [0.0, 1, 2, 4, 5, 5]


def test_crashing_service_is_restarted(tmp_path: Path) -> None:
    marker = tmp_path / "starts"
    service = supertask.Service(name="flaky", command=f"echo x >> {shlex.quote(str(marker))}; exit 1")
    supervisor = supertask.ServiceSupervisor([service], policy=FAST_BACKOFF)
    supervisor.start("flaky")
    try:
        assert _wait_for(lambda: supervisor.snapshot()["flaky"].restart_count >= 3)
    finally:
        supervisor.stop_all(grace_seconds=1)

    state = supervisor.snapshot()["flaky"]
    assert state.desired_state == supertask.DESIRED_STOPPED
    assert state.pid is None
    assert state.last_exit_code is not None
    assert len(marker.read_text(encoding="utf-8").splitlines()) >= 3
    crashes = [item for item in supervisor.history if item.reason == supertask.EXIT_CRASHED]
    assert len(crashes) >= 3
    assert crashes[0].delay_seconds == 0.0
    assert crashes[1].delay_seconds == pytest.approx(0.05)


def test_restart_limit_leaves_service_stopped() -> None:
    service = supertask.Service(name="doomed", command="exit 4", max_restarts=2)
    supervisor = supertask.ServiceSupervisor([service], policy=FAST_BACKOFF)
    supervisor.start("doomed")
    try:
        assert _wait_for(lambda: supervisor.snapshot()["doomed"].gave_up)
    finally:
        supervisor.stop_all(grace_seconds=1)

    state = supervisor.snapshot()["doomed"]
    assert state.restart_count == 2
    assert state.last_exit_code == 4
    assert state.desired_state == supertask.DESIRED_STOPPED
    assert [item.reason for item in supervisor.history][-1] == supertask.EXIT_GAVE_UP


def test_spawn_failure_counts_as_crash(tmp_path: Path) -> None:
    service = supertask.Service(name="broken", command="true", working_dir=tmp_path / "missing", max_restarts=1)
    supervisor = supertask.ServiceSupervisor([service], policy=FAST_BACKOFF)
    supervisor.start("broken")
    try:
        assert _wait_for(lambda: supervisor.snapshot()["broken"].gave_up)
    finally:
        supervisor.stop_all(grace_seconds=1)

    state = supervisor.snapshot()["broken"]
    assert state.restart_count == 1
    assert state.last_exit_code is None
    assert all(item.error for item in supervisor.history)


def test_start_and_stop_are_idempotent() -> None:
    supervisor = supertask.ServiceSupervisor([supertask.Service(name="sleeper", command="sleep 30")])
    supervisor.start("sleeper")
    try:
        assert _wait_for(lambda: supervisor.snapshot()["sleeper"].pid is not None)
        first_pid = supervisor.snapshot()["sleeper"].pid
        supervisor.start("sleeper")
        time.sleep(0.2)
        assert supervisor.snapshot()["sleeper"].pid == first_pid

        supervisor.stop("sleeper", grace_seconds=2)
        supervisor.stop("sleeper", grace_seconds=2)
        state = supervisor.snapshot()["sleeper"]
        assert state.pid is None
        assert state.restart_count == 0

        supervisor.start("sleeper")
        assert _wait_for(lambda: supervisor.snapshot()["sleeper"].pid not in (None, first_pid))
    finally:
        supervisor.stop_all(grace_seconds=2)
    assert supervisor.snapshot()["sleeper"].pid is None


def test_stop_leaves_no_orphaned_children(tmp_path: Path) -> None:
    if not Path("/proc").is_dir():
        pytest.skip("needs /proc")
    pid_file = tmp_path / "child.pid"
    command = f"sleep 30 & echo $! > {shlex.quote(str(pid_file))}; wait"
    supervisor = supertask.ServiceSupervisor([supertask.Service(name="parent", command=command)])
    supervisor.start("parent")
    try:
        assert _wait_for(lambda: pid_file.exists() and pid_file.read_text(encoding="utf-8").strip() != "")
        leader_pid = supervisor.snapshot()["parent"].pid
        child_pid = int(pid_file.read_text(encoding="utf-8").strip())
        assert leader_pid is not None
        assert _alive(child_pid)
    finally:
        supervisor.stop_all(grace_seconds=2)

    assert _wait_for(lambda: not _alive(leader_pid) and not _alive(child_pid), timeout=3)


def test_unknown_service_rejected() -> None:
    supervisor = supertask.ServiceSupervisor([])
    with pytest.raises(supertask.SupertaskError, match='Unknown service "ghost"'):
        supervisor.start("ghost")


def test_start_all_respects_autostart() -> None:
    supervisor = supertask.ServiceSupervisor(
        [
            supertask.Service(name="auto", command="sleep 30"),
            supertask.Service(name="manual", command="sleep 30", autostart=False),
        ]
    )
    supervisor.start_all()
    try:
        assert _wait_for(lambda: supervisor.snapshot()["auto"].pid is not None)
        assert supervisor.snapshot()["manual"].pid is None
        assert supervisor.snapshot()["manual"].desired_state == supertask.DESIRED_STOPPED
    finally:
        supervisor.stop_all(grace_seconds=2)


def test_engine_runs_event_every_second() -> None:
    event = supertask.Event(name="tick", commands=("true",), interval=supertask.parse_interval("1"))
    engine = supertask.Engine(
        supertask.Registry(events=[event]),
        supertask.EngineSettings(tick_seconds=1.0, log_file=None),
    )
    engine.start()
    time.sleep(5)
    assert engine.stop(grace_seconds=2)
    assert 4 <= engine.scheduler.snapshot()["tick"].run_count <= 6


def test_engine_reload_adds_services_and_keeps_event_state() -> None:
    event = supertask.Event(name="once", commands=("true",), interval=supertask.parse_interval("hourly"))
    registry = supertask.Registry(events=[event])
    engine = supertask.Engine(registry, supertask.EngineSettings(tick_seconds=0.1, log_file=None))
    engine.start()
    try:
        assert _wait_for(lambda: engine.scheduler.snapshot()["once"].run_count == 1)
        engine.reload_config(
            supertask.Registry(events=[event], services=[supertask.Service(name="sleeper", command="sleep 30")])
        )
        assert _wait_for(lambda: engine.supervisor.snapshot()["sleeper"].pid is not None)
        assert engine.scheduler.snapshot()["once"].run_count == 1
    finally:
        assert engine.stop(grace_seconds=2)
    assert engine.supervisor.snapshot()["sleeper"].pid is None


def test_engine_rejects_dangling_requirement() -> None:
    event = supertask.Event(
        name="gated",
        commands=("true",),
        interval=supertask.parse_interval("daily"),
        requirement="missing",
    )
    with pytest.raises(supertask.ConfigError):
        supertask.Engine(supertask.Registry(events=[event]))


def test_run_forever_reloads_until_stopped() -> None:
    first = supertask.Event(name="once", commands=("true",), interval=supertask.parse_interval("hourly"))
    extra = supertask.Event(name="extra", commands=("true",), interval=supertask.parse_interval("hourly"))
    engine = supertask.Engine(
        supertask.Registry(events=[first]),
        supertask.EngineSettings(tick_seconds=0.1, log_file=None),
    )
    stop_event = threading.Event()
    reload_event = threading.Event()
    runner = threading.Thread(
        target=engine.run_forever,
        args=(stop_event,),
        kwargs={
            "reload_event": reload_event,
            "load_registry": lambda: supertask.Registry(events=[first, extra]),
            "poll_seconds": 0.05,
        },
    )
    runner.start()
    try:
        assert _wait_for(lambda: engine.scheduler.snapshot()["once"].run_count == 1)
        reload_event.set()
        assert _wait_for(lambda: "extra" in engine.scheduler.snapshot())
        assert _wait_for(lambda: engine.scheduler.snapshot()["extra"].run_count == 1)
    finally:
        stop_event.set()
        runner.join(timeout=15)
    assert not runner.is_alive()
    assert engine.scheduler.snapshot()["once"].run_count == 1


def _record_signals(monkeypatch: pytest.MonkeyPatch) -> List[int]:
    sent: List[int] = []
    original = supertask.signal_process_group

    def recording(proc, sig: int) -> None:
        sent.append(sig)
        original(proc, sig)

    monkeypatch.setattr(supertask, "signal_process_group", recording)
    return sent


def test_terminate_process_skips_kill_after_clean_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = _record_signals(monkeypatch)
    proc = supertask.spawn_process("sleep 30", capture=False)
    assert supertask.terminate_process(proc, grace_seconds=2) != 0
    assert sent == [signal.SIGTERM]


def test_terminate_process_kills_group_that_ignores_sigterm(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = _record_signals(monkeypatch)
    proc = supertask.spawn_process("trap '' TERM; sleep 30", capture=False)
    time.sleep(0.2)
    started = time.monotonic()
    supertask.terminate_process(proc, grace_seconds=0.3)
    assert sent == [signal.SIGTERM, signal.SIGKILL]
    assert time.monotonic() - started < 3


def test_start_during_stop_is_not_counted_as_crash() -> None:
    command = "trap 'sleep 0.5; exit 0' TERM; sleep 30 & wait"
    supervisor = supertask.ServiceSupervisor(
        [supertask.Service(name="slow-exit", command=command)],
        policy=FAST_BACKOFF,
    )
    supervisor.start("slow-exit")
    try:
        assert _wait_for(lambda: supervisor.snapshot()["slow-exit"].pid is not None)
        first_pid = supervisor.snapshot()["slow-exit"].pid
        time.sleep(0.2)

        stopper = threading.Thread(target=supervisor.stop, args=("slow-exit",), kwargs={"grace_seconds": 5})
        stopper.start()
        assert _wait_for(
            lambda: supervisor.snapshot()["slow-exit"].desired_state == supertask.DESIRED_STOPPED,
            timeout=2,
        )
        supervisor.start("slow-exit")
        stopper.join(timeout=5)
        assert not stopper.is_alive()

        assert _wait_for(lambda: supervisor.snapshot()["slow-exit"].pid not in (None, first_pid))
        state = supervisor.snapshot()["slow-exit"]
        assert state.restart_count == 0
        assert state.desired_state == supertask.DESIRED_RUNNING
    finally:
        supervisor.stop_all(grace_seconds=2)
    assert not any(item.reason == supertask.EXIT_CRASHED for item in supervisor.history)
