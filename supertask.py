#!/usr/bin/env python3
"""
supertask.py

YAML-driven local orchestrator: recurring events, requirement gates and
supervised services.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None


LOG_FILE = "supertask.log"
DEFAULT_CONFIG = "supertask.yaml"
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_CHECK_TIMEOUT_SECONDS = 60
DEFAULT_TICK_SECONDS = 1.0
DEFAULT_GRACE_SECONDS = 10.0
DEFAULT_KILL_GRACE_SECONDS = 5.0
DEFAULT_SKIP_WARN_THRESHOLD = 5
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 60.0
DEFAULT_RESET_AFTER_SECONDS = 30.0
SPAWN_FAILED_EXIT_CODE = -2
EXIT_HISTORY_SIZE = 100
MAX_INTERVAL_SECONDS = 100 * 366 * 86400
CLOCK_STEP_TOLERANCE_SECONDS = 1.0
FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
}
UNIT_ALIASES = {
    "s": "second",
    "sec": "second",
    "secs": "second",
    "m": "minute",
    "min": "minute",
    "mins": "minute",
    "h": "hour",
    "hr": "hour",
    "hrs": "hour",
    "d": "day",
    "w": "week",
    "wk": "week",
    "wks": "week",
}
# phrase -> (multiplier, unit)
NAMED_FREQUENCIES: Dict[str, Tuple[int, str]] = {
    "secondly": (1, "second"),
    "minutely": (1, "minute"),
    "hourly": (1, "hour"),
    "daily": (1, "day"),
    "nightly": (1, "day"),
    "weekly": (1, "week"),
    "fortnightly": (2, "week"),
}
# "every <word> <unit>" multipliers
EVERY_WORDS = {"other": 2}
# "<word> per <unit>" divisors
TIMES_WORDS = {"once": 1, "twice": 2, "thrice": 3}

KIND_FIXED_SECONDS = "fixed_seconds"
KIND_NAMED = "named"
KIND_TIMES_PER_UNIT = "times_per_unit"
KIND_EVERY_N_UNITS = "every_n_units"

INTEGER_RE = re.compile(r"^[+-]?\d+$")
SHORTHAND_RE = re.compile(r"^([+-]?\d+)\s*([smhdw])$")
EVERY_RE = re.compile(r"^every\s+(?:(other|[+-]?\d+)\s+)?([a-z]+)$")
TIMES_PER_RE = re.compile(r"^(?:(once|twice|thrice)|([+-]?\d+)\s+times?)\s+(?:per|a|an|each)\s+([a-z]+)$")

OUTCOME_OK = "ok"
OUTCOME_FAILURE = "failure"
OUTCOME_PARTIAL_FAILURE = "partial_failure"
OUTCOME_SKIPPED = "skipped"
REASON_REQUIREMENT_NOT_MET = "requirement_not_met"

STATE_IDLE = "idle"
STATE_RUNNING = "running"
DESIRED_RUNNING = "running"
DESIRED_STOPPED = "stopped"

EXIT_CRASHED = "crashed"
EXIT_STOPPED = "stopped"
EXIT_GAVE_UP = "restart_limit"

SCHEMA_EXAMPLE = """\
# supertask.yaml
version: 1

settings:
  tick_seconds: 1          # scheduler resolution
  grace_seconds: 10        # shutdown drain window
  log_file: supertask.log  # relative to this file
  restart:
    max_restarts: null     # null = restart forever
    backoff_seconds: 1
    backoff_max_seconds: 60
    reset_after_seconds: 30

defaults:
  working_dir: .
  timeout: 3600            # per command, seconds

requirements:
  - name: online
    check: ping -c 1 -W 2 1.1.1.1
    timeout: 10

events:
  - name: backup
    interval: twice per day  # 90 | hourly | every other day | 3 times per hour | every 5 minutes | 15m
    requirement: online
    parallel: false
    commands:
      - restic backup ~/work
      - restic forget --keep-daily 7
    monitor: notify-send "backup: $SUPERTASK_OUTCOME"

services:
  - name: docs
    command: python -m http.server 8000
    working_dir: ./site
    autostart: true
    max_restarts: 5
"""


class SupertaskError(Exception):
    """Base error for supertask."""


class ConfigError(SupertaskError):
    """Config validation error."""


class ExecutionError(SupertaskError):
    """A command could not be spawned."""


logger = logging.getLogger("supertask")
UTC = timezone.utc


def setup_logging(log_file: Optional[str] = None) -> logging.Logger:
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handlers = logger.handlers
    if not any(type(handler) is logging.StreamHandler for handler in handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file and not any(isinstance(handler, logging.FileHandler) for handler in handlers):
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Error: cannot open settings.log_file {log_file}: {exc}") from exc
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _shift(value: datetime, delta: timedelta) -> datetime:
    """``value + delta``, saturating at the end of the calendar instead of overflowing."""
    try:
        return value + delta
    except OverflowError:
        return FAR_FUTURE


def format_period(period: timedelta) -> str:
    seconds = period.total_seconds()
    for unit in ("week", "day", "hour", "minute", "second"):
        unit_seconds = UNIT_SECONDS[unit]
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            count = int(seconds // unit_seconds)
            return f"{count} {unit}" + ("" if count == 1 else "s")
    return f"{seconds:g} seconds"


@dataclass(frozen=True)
class ScheduleExpression:
    kind: str  # fixed_seconds | named | times_per_unit | every_n_units
    count: int
    unit: str
    text: str
    period: timedelta

    def compute_next(self, last_run: Optional[datetime], now: Optional[datetime] = None) -> datetime:
        """Next due instant: ``now`` for a fresh event, else one period after ``last_run``."""
        if last_run is None:
            return _ensure_aware_utc(now or utc_now())
        return _shift(_ensure_aware_utc(last_run), self.period)

    def describe(self) -> str:
        return f"every {format_period(self.period)} ({self.period.total_seconds():g}s)"


def _positive_count(raw: str, text: str, field_path: str) -> int:
    count = int(raw)
    if count <= 0:
        raise ConfigError(f'Error: {field_path} count must be >= 1, got "{text}".')
    return count


def _normalize_unit(token: str, field_path: str) -> str:
    if token in UNIT_SECONDS:
        return token
    if token.endswith("s") and token[:-1] in UNIT_SECONDS:
        return token[:-1]
    if token in UNIT_ALIASES:
        return UNIT_ALIASES[token]
    raise ConfigError(
        f'Error: Unknown interval unit "{token}" at {field_path}; use one of {sorted(UNIT_SECONDS)}.'
    )


def _expression(kind: str, count: int, unit: str, text: str, field_path: str) -> ScheduleExpression:
    base = UNIT_SECONDS[unit]
    seconds = base / count if kind == KIND_TIMES_PER_UNIT else base * count
    if seconds > MAX_INTERVAL_SECONDS:
        raise ConfigError(f'Error: {field_path} "{text}" is longer than 100 years.')
    try:
        period = timedelta(seconds=seconds)
    except OverflowError as exc:
        raise ConfigError(f'Error: {field_path} "{text}" is out of range.') from exc
    if period <= timedelta(0):
        raise ConfigError(f'Error: {field_path} "{text}" resolves to less than one microsecond.')
    return ScheduleExpression(kind=kind, count=count, unit=unit, text=text, period=period)


def parse_interval(value: Any, field_path: str = "interval") -> ScheduleExpression:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"Error: {field_path} must be an interval phrase or integer seconds.")
    text = " ".join(str(value).strip().lower().split())
    if not text:
        raise ConfigError(f"Error: {field_path} cannot be empty.")

    if INTEGER_RE.match(text):
        count = _positive_count(text, text, field_path)
        return _expression(KIND_FIXED_SECONDS, count, "second", text, field_path)

    if text in NAMED_FREQUENCIES:
        count, unit = NAMED_FREQUENCIES[text]
        return _expression(KIND_NAMED, count, unit, text, field_path)

    match = SHORTHAND_RE.match(text)
    if match:
        count = _positive_count(match.group(1), text, field_path)
        unit = _normalize_unit(match.group(2), field_path)
        return _expression(KIND_EVERY_N_UNITS, count, unit, text, field_path)

    match = EVERY_RE.match(text)
    if match:
        raw_count, raw_unit = match.group(1), match.group(2)
        if raw_count is None:
            count = 1
        elif raw_count in EVERY_WORDS:
            count = EVERY_WORDS[raw_count]
        else:
            count = _positive_count(raw_count, text, field_path)
        return _expression(KIND_EVERY_N_UNITS, count, _normalize_unit(raw_unit, field_path), text, field_path)

    match = TIMES_PER_RE.match(text)
    if match:
        word, raw_count, raw_unit = match.group(1), match.group(2), match.group(3)
        count = TIMES_WORDS[word] if word else _positive_count(raw_count, text, field_path)
        return _expression(KIND_TIMES_PER_UNIT, count, _normalize_unit(raw_unit, field_path), text, field_path)

    raise ConfigError(f'Error: Unrecognized interval "{value}" at {field_path}.')


@dataclass(frozen=True)
class Requirement:
    name: str
    check: str
    timeout: Optional[float] = DEFAULT_CHECK_TIMEOUT_SECONDS
    working_dir: Optional[Path] = None


@dataclass(frozen=True)
class Event:
    name: str
    commands: Tuple[str, ...]
    interval: ScheduleExpression
    parallel: bool = False
    requirement: Optional[str] = None
    monitor: Optional[str] = None
    timeout: Optional[float] = DEFAULT_TIMEOUT_SECONDS
    working_dir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass(frozen=True)
class Service:
    name: str
    command: str
    working_dir: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    autostart: bool = True
    max_restarts: Optional[int] = None


@dataclass(frozen=True)
class RestartPolicy:
    max_restarts: Optional[int] = None
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    reset_after_seconds: float = DEFAULT_RESET_AFTER_SECONDS

    def delay_for(self, rapid_failures: int) -> float:
        """Immediate retry after the first rapid failure, then capped exponential backoff."""
        if rapid_failures <= 1:
            return 0.0
        return min(self.backoff_max_seconds, self.backoff_seconds * (2 ** (rapid_failures - 2)))


@dataclass(frozen=True)
class EngineSettings:
    tick_seconds: float = DEFAULT_TICK_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    log_file: Optional[str] = LOG_FILE
    skip_warn_threshold: int = DEFAULT_SKIP_WARN_THRESHOLD
    restart: RestartPolicy = field(default_factory=RestartPolicy)


@dataclass(frozen=True)
class Registry:
    events: List[Event] = field(default_factory=list)
    requirements: List[Requirement] = field(default_factory=list)
    services: List[Service] = field(default_factory=list)

    def requirement(self, name: Optional[str]) -> Optional[Requirement]:
        if not name:
            return None
        return next((item for item in self.requirements if item.name == name), None)


def _check_unique(names: List[str], kind: str) -> None:
    seen: Set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigError(f'Error: Duplicate {kind} name "{name}".')
        seen.add(name)


def validate_registry(registry: Registry) -> None:
    """Semantic checks the loader cannot do alone: unique names, resolvable requirements."""
    _check_unique([event.name for event in registry.events], "event")
    _check_unique([item.name for item in registry.requirements], "requirement")
    _check_unique([service.name for service in registry.services], "service")
    known = {item.name for item in registry.requirements}
    for event in registry.events:
        if event.requirement and event.requirement not in known:
            raise ConfigError(
                f'Error: Event "{event.name}" references unknown requirement "{event.requirement}".'
            )


@dataclass
class CommandResult:
    command: str
    exit_code: int
    duration_seconds: float
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


def build_env(overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
    env = os.environ.copy()
    if overrides:
        env.update({k: str(v) for k, v in overrides.items() if v is not None})
    return env


def spawn_process(
    command: str,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    capture: bool = True,
) -> subprocess.Popen:
    """Start ``command`` through the shell as the leader of a new process group."""
    pipe = subprocess.PIPE if capture else None
    try:
        return subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd) if cwd else None,
            env=build_env(env),
            stdout=pipe,
            stderr=pipe,
            text=True,
            start_new_session=True,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        raise ExecutionError(f'Failed to spawn "{command}": {exc}') from exc


def signal_process_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.poll() is None:
            proc.send_signal(sig)


def terminate_process(proc: subprocess.Popen, grace_seconds: float) -> int:
    """SIGTERM the group; SIGKILL it if the leader is still alive after ``grace_seconds``."""
    signal_process_group(proc, signal.SIGTERM)
    try:
        code = proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        signal_process_group(proc, signal.SIGKILL)
        code = proc.wait()
    return code


class CommandExecutor:
    """Runs shell commands to completion and tracks live children for shutdown."""

    def __init__(self, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS):
        self.kill_grace_seconds = kill_grace_seconds
        self._lock = threading.Lock()
        self._live: Set[subprocess.Popen] = set()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._live)

    def run(
        self,
        command: str,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        if self.cancelled:
            raise ExecutionError(f'Not starting "{command}": executor is shutting down.')
        started = time.monotonic()
        proc = spawn_process(command, cwd=cwd, env=env, capture=True)
        with self._lock:
            self._live.add(proc)
            cancelled = self._cancelled.is_set()
        if cancelled:
            signal_process_group(proc, signal.SIGTERM)

        timed_out = False
        try:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning("Command timed out after %ss; terminating: %s", timeout, command)
                signal_process_group(proc, signal.SIGTERM)
                try:
                    stdout, stderr = proc.communicate(timeout=self.kill_grace_seconds)
                except subprocess.TimeoutExpired:
                    signal_process_group(proc, signal.SIGKILL)
                    stdout, stderr = proc.communicate()
        finally:
            with self._lock:
                self._live.discard(proc)

        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            duration_seconds=time.monotonic() - started,
            timed_out=timed_out,
            stdout=stdout or "",
            stderr=stderr or "",
        )

    def terminate_all(self) -> int:
        """Refuse new commands and SIGTERM every in-flight one."""
        self._cancelled.set()
        return self._signal_all(signal.SIGTERM)

    def kill_all(self) -> int:
        self._cancelled.set()
        return self._signal_all(signal.SIGKILL)

    def _signal_all(self, sig: int) -> int:
        with self._lock:
            live = list(self._live)
        for proc in live:
            signal_process_group(proc, sig)
        return len(live)


def evaluate_requirement(requirement: Requirement, executor: CommandExecutor, run_id: str = "-") -> bool:
    try:
        result = executor.run(requirement.check, timeout=requirement.timeout, cwd=requirement.working_dir)
    except ExecutionError as exc:
        logger.warning("[%s] Requirement %s could not be evaluated: %s", run_id, requirement.name, exc)
        return False
    if result.timed_out:
        logger.warning(
            "[%s] Requirement %s timed out after %ss.", run_id, requirement.name, requirement.timeout
        )
    logger.info(
        "[%s] Requirement %s %s (code=%s, %.2fs)",
        run_id,
        requirement.name,
        "passed" if result.success else "not met",
        result.exit_code,
        result.duration_seconds,
    )
    return result.success


@dataclass(frozen=True)
class EventOutcome:
    kind: str  # ok | failure | partial_failure | skipped
    run_id: str
    reason: Optional[str] = None
    index: Optional[int] = None
    exit_code: Optional[int] = None
    results: Tuple[CommandResult, ...] = ()
    duration_seconds: float = 0.0
    monitor_result: Optional[CommandResult] = None

    @property
    def success(self) -> bool:
        return self.kind == OUTCOME_OK


def make_run_id(name: str, started: datetime) -> str:
    return f"{name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"


def run_command(
    event: Event,
    command: str,
    executor: CommandExecutor,
    run_id: str,
    position: int,
) -> CommandResult:
    logger.info("[%s] [%s/%s] Running %s", run_id, position + 1, len(event.commands), command)
    try:
        result = executor.run(command, timeout=event.timeout, env=event.env, cwd=event.working_dir)
    except ExecutionError as exc:
        logger.error("[%s] %s", run_id, exc)
        return CommandResult(
            command=command,
            exit_code=SPAWN_FAILED_EXIT_CODE,
            duration_seconds=0.0,
            stderr=str(exc),
            error="spawn_failed",
        )

    if result.success:
        logger.info("[%s] Command succeeded: %s (%.2fs)", run_id, command, result.duration_seconds)
    else:
        logger.error(
            "[%s] Command failed: %s (code=%s, timed_out=%s, duration=%.2fs)",
            run_id,
            command,
            result.exit_code,
            result.timed_out,
            result.duration_seconds,
        )
        if result.stderr:
            logger.error("[%s] stderr: %s", run_id, result.stderr.strip()[:1000])
    return result


def _run_parallel(event: Event, executor: CommandExecutor, run_id: str) -> Tuple[str, List[CommandResult]]:
    with ThreadPoolExecutor(
        max_workers=max(1, len(event.commands)),
        thread_name_prefix=f"supertask-{event.name}",
    ) as pool:
        futures = [
            pool.submit(run_command, event, command, executor, run_id, idx)
            for idx, command in enumerate(event.commands)
        ]
        results = [future.result() for future in futures]
    kind = OUTCOME_OK if all(result.success for result in results) else OUTCOME_FAILURE
    return kind, results


def build_monitor_env(event: Event, outcome: EventOutcome) -> Dict[str, str]:
    env: Dict[str, str] = dict(event.env)
    env.update(
        {
            "SUPERTASK_EVENT": event.name,
            "SUPERTASK_RUN_ID": outcome.run_id,
            "SUPERTASK_OUTCOME": outcome.kind,
            "SUPERTASK_SUCCESS": "1" if outcome.success else "0",
        }
    )
    if outcome.reason is not None:
        env["SUPERTASK_REASON"] = outcome.reason
    if outcome.index is not None:
        env["SUPERTASK_FAILED_INDEX"] = str(outcome.index)
    if outcome.exit_code is not None:
        env["SUPERTASK_EXIT_CODE"] = str(outcome.exit_code)
    return env


def run_monitor(event: Event, outcome: EventOutcome, executor: CommandExecutor) -> Optional[CommandResult]:
    if not event.monitor:
        return None
    try:
        result = executor.run(
            event.monitor,
            timeout=event.timeout,
            env=build_monitor_env(event, outcome),
            cwd=event.working_dir,
        )
    except ExecutionError as exc:
        logger.warning("[%s] Monitor for %s could not run: %s", outcome.run_id, event.name, exc)
        return CommandResult(
            command=event.monitor,
            exit_code=SPAWN_FAILED_EXIT_CODE,
            duration_seconds=0.0,
            stderr=str(exc),
            error="spawn_failed",
        )
    if not result.success:
        logger.warning(
            "[%s] Monitor for %s failed (code=%s); event outcome unchanged.",
            outcome.run_id,
            event.name,
            result.exit_code,
        )
    return result


def run_event(
    event: Event,
    requirement: Optional[Requirement],
    executor: CommandExecutor,
    scheduled_for: Optional[datetime] = None,
) -> EventOutcome:
    started = utc_now()
    clock_start = time.monotonic()
    run_id = make_run_id(event.name, started)
    if scheduled_for:
        logger.info("[%s] Starting event %s (scheduled_for=%s)", run_id, event.name, scheduled_for.isoformat())
    else:
        logger.info("[%s] Starting event %s", run_id, event.name)

    gated_off = False
    if event.requirement:
        if requirement is None:
            logger.warning("[%s] Requirement %s is not defined; treating as not met.", run_id, event.requirement)
            gated_off = True
        else:
            gated_off = not evaluate_requirement(requirement, executor, run_id)

    if gated_off:
        logger.info("[%s] Skipping %s: requirement %s not met.", run_id, event.name, event.requirement)
        outcome = EventOutcome(kind=OUTCOME_SKIPPED, run_id=run_id, reason=REASON_REQUIREMENT_NOT_MET)
    elif event.parallel:
        kind, results = _run_parallel(event, executor, run_id)
        outcome = EventOutcome(kind=kind, run_id=run_id, results=tuple(results))
    else:
        results: List[CommandResult] = []
        outcome = None
        for idx, command in enumerate(event.commands):
            result = run_command(event, command, executor, run_id, idx)
            results.append(result)
            if not result.success:
                if idx + 1 < len(event.commands):
                    logger.error("[%s] Aborting remaining %s command(s).", run_id, len(event.commands) - idx - 1)
                outcome = EventOutcome(
                    kind=OUTCOME_PARTIAL_FAILURE,
                    run_id=run_id,
                    index=idx,
                    exit_code=result.exit_code,
                    results=tuple(results),
                )
                break
        if outcome is None:
            outcome = EventOutcome(kind=OUTCOME_OK, run_id=run_id, results=tuple(results))

    outcome = replace(outcome, duration_seconds=time.monotonic() - clock_start)
    logger.info(
        "[%s] Event %s completed with outcome=%s in %.2fs",
        run_id,
        event.name,
        outcome.kind,
        outcome.duration_seconds,
    )
    monitor_result = run_monitor(event, outcome, executor)
    if monitor_result is not None:
        outcome = replace(outcome, monitor_result=monitor_result)
    return outcome


@dataclass
class EventState:
    next_due_at: datetime
    state: str = STATE_IDLE
    last_run_at: Optional[datetime] = None
    last_outcome: Optional[EventOutcome] = None
    run_count: int = 0
    consecutive_skips: int = 0
    triggered: bool = False
    pending_delay: timedelta = timedelta(0)


class EventCell:
    """One event's definition and runtime state; all access goes through ``lock``."""

    def __init__(self, event: Event, now: datetime):
        self.event = event
        self.lock = threading.Lock()
        self.state = EventState(next_due_at=event.interval.compute_next(None, now=now))


EventRunnerFn = Callable[[Event, Optional[Requirement], CommandExecutor, Optional[datetime]], EventOutcome]


class Scheduler:
    """Tick-driven dispatcher: one worker thread per running event, one lock per event."""

    def __init__(
        self,
        registry: Registry,
        executor: Optional[CommandExecutor] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        skip_warn_threshold: int = DEFAULT_SKIP_WARN_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
        runner: EventRunnerFn = run_event,
    ):
        if tick_seconds <= 0:
            raise ConfigError("Error: tick_seconds must be > 0.")
        validate_registry(registry)
        self.registry = registry
        self.executor = executor or CommandExecutor()
        self.tick_seconds = tick_seconds
        self.skip_warn_threshold = skip_warn_threshold
        self._clock = clock
        self._runner = runner
        now = _ensure_aware_utc(clock())
        self._cells: Dict[str, EventCell] = {event.name: EventCell(event, now) for event in registry.events}
        self._requirements: Dict[str, Requirement] = {item.name: item for item in registry.requirements}
        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_tick: Optional[datetime] = None

    def _now(self) -> datetime:
        """The scheduler's notion of now: the latest tick instant, else the clock."""
        return self._last_tick or _ensure_aware_utc(self._clock())

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="supertask-scheduler")
        self._thread.start()

    def _loop(self) -> None:
        logger.info(
            "Scheduler started with %s event(s), tick_seconds=%s",
            len(self._cells),
            self.tick_seconds,
        )
        # Tick instants sit on a fixed grid so that "last run + period" lands exactly on a later tick.
        origin = time.monotonic()
        wall_origin = _ensure_aware_utc(self._clock())
        ticks = 0
        tolerance = max(CLOCK_STEP_TOLERANCE_SECONDS, self.tick_seconds)
        while not self._stopping.is_set():
            now = wall_origin + timedelta(seconds=ticks * self.tick_seconds)
            wall = _ensure_aware_utc(self._clock())
            step = (wall - now).total_seconds()
            if abs(step) >= tolerance:
                logger.warning("Wall clock moved by %.2fs; re-anchoring scheduler ticks.", step)
                wall_origin = wall - timedelta(seconds=ticks * self.tick_seconds)
                now = wall
            try:
                self.tick(now)
            except Exception:  # pragma: no cover - defensive
                logger.exception("Scheduler tick failed.")
            ticks += 1
            elapsed_ticks = int((time.monotonic() - origin) // self.tick_seconds)
            if elapsed_ticks > ticks:
                logger.warning("Scheduler fell behind by %s tick(s); skipping ahead.", elapsed_ticks - ticks)
                ticks = elapsed_ticks
            self._stopping.wait(max(0.0, origin + ticks * self.tick_seconds - time.monotonic()))

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Dispatch every idle event that is due at ``now``; returns the dispatched names."""
        now = _ensure_aware_utc(now or self._clock())
        self._last_tick = now
        dispatched: List[str] = []
        if self._stopping.is_set():
            return dispatched
        for cell in list(self._cells.values()):
            if self._dispatch_if_due(cell, now):
                dispatched.append(cell.event.name)
        return dispatched

    def _dispatch_if_due(self, cell: EventCell, now: datetime) -> bool:
        with cell.lock:
            event = cell.event
            if not event.enabled or cell.state.next_due_at > now:
                return False
            if cell.state.state == STATE_RUNNING:
                logger.warning(
                    "Event %s is due but still running since %s; skipping overlapping dispatch.",
                    event.name,
                    cell.state.last_run_at.isoformat() if cell.state.last_run_at else "?",
                )
                return False
            cell.state.state = STATE_RUNNING
            cell.state.last_run_at = now
        requirement = self._requirements.get(event.requirement) if event.requirement else None
        worker = threading.Thread(
            target=self._run_cell,
            args=(cell, event, requirement, now),
            daemon=True,
            name=f"supertask-event-{event.name}",
        )
        with self._workers_lock:
            self._workers.add(worker)
        try:
            worker.start()
        except RuntimeError:
            logger.exception("Could not start a worker for event %s.", event.name)
            with self._workers_lock:
                self._workers.discard(worker)
            self._complete(cell, event, now, None)
            return False
        logger.info("Dispatching %s", event.name)
        return True

    def _run_cell(
        self,
        cell: EventCell,
        event: Event,
        requirement: Optional[Requirement],
        decided_at: datetime,
    ) -> None:
        outcome: Optional[EventOutcome] = None
        try:
            outcome = self._runner(event, requirement, self.executor, decided_at)
        except Exception:
            logger.exception("Event %s crashed while running.", event.name)
        finally:
            try:
                self._complete(cell, event, decided_at, outcome)
            finally:
                with self._workers_lock:
                    self._workers.discard(threading.current_thread())

    def _complete(
        self,
        cell: EventCell,
        event: Event,
        decided_at: datetime,
        outcome: Optional[EventOutcome],
    ) -> None:
        with cell.lock:
            state = cell.state
            if state.triggered:
                next_due = self._now()
            else:
                next_due = _shift(cell.event.interval.compute_next(decided_at), state.pending_delay)
            state.state = STATE_IDLE
            state.run_count += 1
            state.last_outcome = outcome
            state.next_due_at = next_due
            state.triggered = False
            state.pending_delay = timedelta(0)
            if outcome is not None and outcome.kind == OUTCOME_SKIPPED:
                state.consecutive_skips += 1
            else:
                state.consecutive_skips = 0
            skips = state.consecutive_skips
        if skips and skips == self.skip_warn_threshold:
            logger.warning(
                "Event %s skipped %s times in a row: requirement %s keeps failing.",
                event.name,
                skips,
                event.requirement,
            )
        logger.info("Next run for %s: %s", event.name, next_due.isoformat())

    def _cell(self, name: str) -> EventCell:
        cell = self._cells.get(name)
        if cell is None:
            raise SupertaskError(f'Unknown event "{name}".')
        return cell

    def trigger(self, name: str) -> None:
        """Make ``name`` due on the next tick (or right after its current run)."""
        cell = self._cell(name)
        with cell.lock:
            if cell.state.state == STATE_RUNNING:
                cell.state.triggered = True
            else:
                cell.state.next_due_at = self._now()
        logger.info("Event %s triggered.", name)

    def delay(self, name: str, amount: Optional[str] = None) -> None:
        """Push ``name`` back by ``amount`` (an interval phrase) or one of its own intervals."""
        cell = self._cell(name)
        if amount is None:
            shift = cell.event.interval.period
        else:
            shift = parse_interval(amount, "delay").period
        with cell.lock:
            if cell.state.state == STATE_RUNNING:
                cell.state.pending_delay += shift
            else:
                cell.state.next_due_at = _shift(cell.state.next_due_at, shift)
        logger.info("Event %s delayed by %s.", name, format_period(shift))

    def snapshot(self) -> Dict[str, EventState]:
        states: Dict[str, EventState] = {}
        for name, cell in list(self._cells.items()):
            with cell.lock:
                states[name] = replace(cell.state)
        return states

    def running(self) -> List[str]:
        return [name for name, state in self.snapshot().items() if state.state == STATE_RUNNING]

    def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for in-flight runs; True when none remain."""
        deadline = time.monotonic() + timeout
        while True:
            with self._workers_lock:
                workers = list(self._workers)
            if not workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            workers[0].join(timeout=remaining)

    def stop(self, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> bool:
        self._stopping.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(1.0, self.tick_seconds * 2))
        in_flight = self.running()
        if in_flight:
            logger.info(
                "Terminating %s in-flight event(s) (%s); grace=%ss",
                len(in_flight),
                ", ".join(in_flight),
                grace_seconds,
            )
        self.executor.terminate_all()
        drained = self.drain(grace_seconds)
        if not drained:
            logger.warning("Grace period elapsed; killing remaining commands.")
            self.executor.kill_all()
            drained = self.drain(self.executor.kill_grace_seconds)
        logger.info("Scheduler stopped.")
        return drained

    def reload(self, registry: Registry) -> None:
        """Swap event definitions; events that keep their name keep their runtime state."""
        validate_registry(registry)
        now = self._now()
        previous = self._cells
        cells: Dict[str, EventCell] = {}
        for event in registry.events:
            cell = previous.get(event.name)
            if cell is None:
                cells[event.name] = EventCell(event, now)
                continue
            with cell.lock:
                if cell.event.interval != event.interval:
                    cell.state.next_due_at = event.interval.compute_next(cell.state.last_run_at, now=now)
                cell.event = event
            cells[event.name] = cell
        self._requirements = {item.name: item for item in registry.requirements}
        self._cells = cells
        self.registry = registry
        removed = sorted(set(previous) - set(cells))
        logger.info("Scheduler reloaded: %s event(s), removed=%s", len(cells), removed or "none")


@dataclass
class ServiceState:
    desired_state: str = DESIRED_STOPPED
    pid: Optional[int] = None
    restart_count: int = 0
    last_exit_code: Optional[int] = None
    rapid_failures: int = 0
    started_at: Optional[datetime] = None
    gave_up: bool = False


@dataclass(frozen=True)
class ServiceExit:
    service_name: str
    reason: str  # crashed | stopped | restart_limit
    exit_code: Optional[int]
    runtime_seconds: float
    restart_count: int
    delay_seconds: float
    exited_at: datetime
    error: Optional[str] = None


class ServiceCell:
    def __init__(self, service: Service):
        self.service = service
        self.lock = threading.Lock()
        self.state = ServiceState()
        self.process: Optional[subprocess.Popen] = None
        self.thread: Optional[threading.Thread] = None
        self.wake = threading.Event()
        self.generation = 0


class ServiceSupervisor:
    """Keeps services alive: one supervision thread per service, one thread collecting exits."""

    def __init__(
        self,
        services: List[Service],
        policy: Optional[RestartPolicy] = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        _check_unique([service.name for service in services], "service")
        self.policy = policy or RestartPolicy()
        self.kill_grace_seconds = kill_grace_seconds
        self.history: Deque[ServiceExit] = deque(maxlen=EXIT_HISTORY_SIZE)
        self._cells: Dict[str, ServiceCell] = {service.name: ServiceCell(service) for service in services}
        self._exits: "Queue[Optional[ServiceExit]]" = Queue()
        self._aggregator: Optional[threading.Thread] = None
        self._aggregator_lock = threading.Lock()
        self._active = False

    def _cell(self, name: str) -> ServiceCell:
        cell = self._cells.get(name)
        if cell is None:
            raise SupertaskError(f'Unknown service "{name}".')
        return cell

    def _ensure_aggregator(self) -> None:
        with self._aggregator_lock:
            if self._aggregator is None or not self._aggregator.is_alive():
                self._aggregator = threading.Thread(
                    target=self._collect_exits,
                    daemon=True,
                    name="supertask-service-exits",
                )
                self._aggregator.start()

    def _collect_exits(self) -> None:
        while True:
            item = self._exits.get()
            if item is None:
                return
            self.history.append(item)
            if item.reason == EXIT_CRASHED:
                logger.warning(
                    "Service %s exited unexpectedly (code=%s after %.2fs); restart #%s in %.2fs",
                    item.service_name,
                    item.exit_code,
                    item.runtime_seconds,
                    item.restart_count,
                    item.delay_seconds,
                )
            elif item.reason == EXIT_GAVE_UP:
                logger.error(
                    "Service %s exited (code=%s) and exhausted its restart limit after %s restart(s); leaving it stopped.",
                    item.service_name,
                    item.exit_code,
                    item.restart_count,
                )
            else:
                logger.info("Service %s stopped (code=%s).", item.service_name, item.exit_code)

    def start_all(self) -> None:
        self._active = True
        for name, cell in list(self._cells.items()):
            if cell.service.autostart:
                self.start(name)

    def start(self, name: str) -> None:
        cell = self._cell(name)
        with cell.lock:
            cell.state.desired_state = DESIRED_RUNNING
            cell.state.gave_up = False
            if cell.thread is not None and cell.thread.is_alive():
                return
            cell.wake.clear()
            cell.thread = threading.Thread(
                target=self._supervise,
                args=(cell,),
                daemon=True,
                name=f"supertask-service-{name}",
            )
            thread = cell.thread
        self._ensure_aggregator()
        thread.start()

    def _supervise(self, cell: ServiceCell) -> None:
        try:
            self._supervise_loop(cell)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Supervision of %s crashed.", cell.service.name)
            with cell.lock:
                cell.state.desired_state = DESIRED_STOPPED
                cell.process = None
                cell.state.pid = None
        finally:
            with cell.lock:
                if cell.thread is threading.current_thread():
                    cell.thread = None

    def _supervise_loop(self, cell: ServiceCell) -> None:
        service = cell.service
        while True:
            with cell.lock:
                generation = cell.generation
                if cell.state.desired_state != DESIRED_RUNNING:
                    return

            started = time.monotonic()
            exit_code: Optional[int] = None
            error: Optional[str] = None
            try:
                proc: Optional[subprocess.Popen] = spawn_process(
                    service.command,
                    cwd=service.working_dir,
                    env=service.env,
                    capture=False,
                )
            except ExecutionError as exc:
                proc = None
                error = str(exc)
                logger.error("Service %s failed to start: %s", service.name, exc)

            if proc is not None:
                with cell.lock:
                    cell.process = proc
                    cell.state.pid = proc.pid
                    cell.state.started_at = utc_now()
                    stop_now = cell.state.desired_state != DESIRED_RUNNING or cell.generation != generation
                logger.info("Service %s started (pid=%s): %s", service.name, proc.pid, service.command)
                if stop_now:
                    terminate_process(proc, self.kill_grace_seconds)
                exit_code = proc.wait()

            runtime = time.monotonic() - started
            delay = 0.0
            with cell.lock:
                cell.process = None
                cell.state.pid = None
                cell.state.last_exit_code = exit_code
                if cell.state.desired_state != DESIRED_RUNNING or cell.generation != generation:
                    reason = EXIT_STOPPED
                else:
                    if runtime >= self.policy.reset_after_seconds:
                        cell.state.rapid_failures = 0
                    cell.state.rapid_failures += 1
                    limit = service.max_restarts if service.max_restarts is not None else self.policy.max_restarts
                    if limit is not None and cell.state.restart_count >= limit:
                        reason = EXIT_GAVE_UP
                        cell.state.desired_state = DESIRED_STOPPED
                        cell.state.gave_up = True
                    else:
                        reason = EXIT_CRASHED
                        cell.state.restart_count += 1
                        delay = self.policy.delay_for(cell.state.rapid_failures)
                        cell.wake.clear()
                restart_count = cell.state.restart_count
            self._exits.put(
                ServiceExit(
                    service_name=service.name,
                    reason=reason,
                    exit_code=exit_code,
                    runtime_seconds=runtime,
                    restart_count=restart_count,
                    delay_seconds=delay,
                    exited_at=utc_now(),
                    error=error,
                )
            )
            if reason == EXIT_STOPPED:
                continue
            if reason == EXIT_GAVE_UP:
                return
            if delay > 0:
                cell.wake.wait(delay)

    def stop(self, name: str, grace_seconds: Optional[float] = None) -> None:
        self._stop_cells([self._cell(name)], grace_seconds)

    def _stop_cells(self, cells: List[ServiceCell], grace_seconds: Optional[float]) -> None:
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        targets: List[Tuple[ServiceCell, Optional[subprocess.Popen], Optional[threading.Thread]]] = []
        for cell in cells:
            with cell.lock:
                cell.state.desired_state = DESIRED_STOPPED
                cell.generation += 1
                targets.append((cell, cell.process, cell.thread))
            cell.wake.set()

        for cell, proc, _ in targets:
            if proc is not None:
                logger.info("Stopping service %s (pid=%s)", cell.service.name, proc.pid)
                signal_process_group(proc, signal.SIGTERM)
        deadline = time.monotonic() + grace
        for cell, proc, _ in targets:
            if proc is None:
                continue
            try:
                proc.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning("Service %s ignored SIGTERM; killing.", cell.service.name)
                signal_process_group(proc, signal.SIGKILL)
                proc.wait()

        join_deadline = time.monotonic() + grace + self.kill_grace_seconds
        for cell, _, thread in targets:
            if thread is None or thread is threading.current_thread():
                continue
            # a concurrent start() hands the thread back to a new run; stop waiting then
            while thread.is_alive() and time.monotonic() < join_deadline:
                with cell.lock:
                    if cell.state.desired_state == DESIRED_RUNNING:
                        break
                thread.join(timeout=min(0.1, max(0.0, join_deadline - time.monotonic())))

    def stop_all(self, grace_seconds: Optional[float] = None) -> None:
        self._active = False
        self._stop_cells(list(self._cells.values()), grace_seconds)
        with self._aggregator_lock:
            aggregator = self._aggregator
            self._aggregator = None
        if aggregator is not None:
            self._exits.put(None)
            aggregator.join(timeout=2.0)
        logger.info("Service supervisor stopped.")

    def snapshot(self) -> Dict[str, ServiceState]:
        states: Dict[str, ServiceState] = {}
        for name, cell in list(self._cells.items()):
            with cell.lock:
                states[name] = replace(cell.state)
        return states

    def reload(self, services: List[Service]) -> None:
        _check_unique([service.name for service in services], "service")
        previous = self._cells
        cells: Dict[str, ServiceCell] = {}
        retired: List[ServiceCell] = []
        fresh: List[str] = []
        for service in services:
            cell = previous.get(service.name)
            if cell is not None and cell.service == service:
                cells[service.name] = cell
                continue
            if cell is not None:
                retired.append(cell)
            cells[service.name] = ServiceCell(service)
            fresh.append(service.name)
        retired.extend(cell for name, cell in previous.items() if name not in cells)
        if retired:
            self._stop_cells(retired, None)
        self._cells = cells
        if self._active:
            for name in fresh:
                if cells[name].service.autostart:
                    self.start(name)
        logger.info(
            "Service supervisor reloaded: %s service(s), restarted/added=%s",
            len(cells),
            fresh or "none",
        )


class Engine:
    """Scheduler and service supervisor behind start/stop/reload."""

    def __init__(
        self,
        registry: Registry,
        settings: Optional[EngineSettings] = None,
        executor: Optional[CommandExecutor] = None,
    ):
        validate_registry(registry)
        self.registry = registry
        self.settings = settings or EngineSettings()
        self.executor = executor or CommandExecutor()
        self.scheduler = Scheduler(
            registry,
            executor=self.executor,
            tick_seconds=self.settings.tick_seconds,
            skip_warn_threshold=self.settings.skip_warn_threshold,
        )
        self.supervisor = ServiceSupervisor(registry.services, policy=self.settings.restart)

    def start(self) -> None:
        logger.info(
            "Starting engine: %s event(s), %s requirement(s), %s service(s)",
            len(self.registry.events),
            len(self.registry.requirements),
            len(self.registry.services),
        )
        self.supervisor.start_all()
        self.scheduler.start()

    def stop(self, grace_seconds: Optional[float] = None) -> bool:
        grace = self.settings.grace_seconds if grace_seconds is None else grace_seconds
        drained = self.scheduler.stop(grace)
        self.supervisor.stop_all(grace)
        logger.info("Engine stopped (drained=%s).", drained)
        return drained

    def reload_config(self, registry: Registry) -> None:
        validate_registry(registry)
        self.scheduler.reload(registry)
        self.supervisor.reload(registry.services)
        self.registry = registry

    def run_forever(
        self,
        stop_event: threading.Event,
        reload_event: Optional[threading.Event] = None,
        load_registry: Optional[Callable[[], Registry]] = None,
        poll_seconds: float = 0.5,
    ) -> bool:
        """Start, block until ``stop_event`` is set, then stop.

        When ``reload_event`` fires, ``load_registry`` is called and the result
        swapped in; a failed reload keeps the running config.
        """
        self.start()
        try:
            while not stop_event.wait(poll_seconds):
                if reload_event is None or not reload_event.is_set():
                    continue
                reload_event.clear()
                if load_registry is None:
                    continue
                try:
                    self.reload_config(load_registry())
                except SupertaskError as exc:
                    logger.error("Reload failed; keeping the running config: %s", exc)
        finally:
            drained = self.stop()
        return drained


def require_yaml_dependency() -> None:
    if yaml is None:
        raise SupertaskError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: Optional[int], minimum: int = 1) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def _ensure_list(value: Any, field_path: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Error: {field_path} must be a list.")
    return value


def parse_env(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping of variable names to values.")
    env: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key:
            raise ConfigError(f"Error: {field_path} keys must be non-empty strings.")
        if not isinstance(value, (str, int, float, bool)):
            raise ConfigError(f"Error: {field_path}.{key} must be a scalar value.")
        env[key] = str(value)
    return env


def parse_commands(raw: Any, field_path: str) -> Tuple[str, ...]:
    if isinstance(raw, str):
        return (ensure_str(raw, field_path),)
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a command string or a non-empty list.")
    return tuple(ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(raw))


def _resolve_working_dir(value: Any, config_dir: Path, field_path: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty path string.")
    raw = Path(value.strip()).expanduser()
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    resolved = resolved.resolve()
    if not resolved.exists() or not resolved.is_dir():
        raise ConfigError(f"Error: working directory does not exist at {field_path}: {resolved}")
    return resolved


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(raw: Any, config_dir: Path, field_path: str = "settings") -> EngineSettings:
    raw = ensure_mapping(raw, field_path, {"tick_seconds", "grace_seconds", "log_file", "skip_warn_threshold", "restart"})
    tick_seconds = ensure_number(raw.get("tick_seconds"), f"{field_path}.tick_seconds", DEFAULT_TICK_SECONDS, 0.01)
    grace_seconds = ensure_number(raw.get("grace_seconds"), f"{field_path}.grace_seconds", DEFAULT_GRACE_SECONDS)
    skip_warn_threshold = ensure_int(
        raw.get("skip_warn_threshold"),
        f"{field_path}.skip_warn_threshold",
        DEFAULT_SKIP_WARN_THRESHOLD,
        1,
    )
    log_file: Optional[str] = None
    log_raw = raw.get("log_file", LOG_FILE)
    if log_raw is not None:
        log_path = Path(ensure_str(log_raw, f"{field_path}.log_file")).expanduser()
        log_file = str(log_path if log_path.is_absolute() else (config_dir / log_path).resolve())

    restart_path = f"{field_path}.restart"
    restart_raw = ensure_mapping(
        raw.get("restart"),
        restart_path,
        {"max_restarts", "backoff_seconds", "backoff_max_seconds", "reset_after_seconds"},
    )
    restart = RestartPolicy(
        max_restarts=ensure_int(restart_raw.get("max_restarts"), f"{restart_path}.max_restarts", None, 0),
        backoff_seconds=ensure_number(
            restart_raw.get("backoff_seconds"), f"{restart_path}.backoff_seconds", DEFAULT_BACKOFF_SECONDS
        ),
        backoff_max_seconds=ensure_number(
            restart_raw.get("backoff_max_seconds"),
            f"{restart_path}.backoff_max_seconds",
            DEFAULT_BACKOFF_MAX_SECONDS,
        ),
        reset_after_seconds=ensure_number(
            restart_raw.get("reset_after_seconds"),
            f"{restart_path}.reset_after_seconds",
            DEFAULT_RESET_AFTER_SECONDS,
        ),
    )
    return EngineSettings(
        tick_seconds=tick_seconds,
        grace_seconds=grace_seconds,
        log_file=log_file,
        skip_warn_threshold=skip_warn_threshold,
        restart=restart,
    )


def parse_requirements(raw: Any, default_working_dir: Path, config_dir: Path) -> List[Requirement]:
    requirements: List[Requirement] = []
    for idx, item_raw in enumerate(_ensure_list(raw, "requirements")):
        path = f"requirements[{idx}]"
        item = ensure_mapping(item_raw, path, {"name", "check", "timeout", "working_dir"})
        if not item:
            raise ConfigError(f"Error: {path} must be a non-empty mapping.")
        working_dir = default_working_dir
        if "working_dir" in item:
            working_dir = _resolve_working_dir(item["working_dir"], config_dir, f"{path}.working_dir")
        requirements.append(
            Requirement(
                name=ensure_str(item.get("name"), f"{path}.name"),
                check=ensure_str(item.get("check"), f"{path}.check"),
                timeout=ensure_int(item.get("timeout"), f"{path}.timeout", DEFAULT_CHECK_TIMEOUT_SECONDS, 1),
                working_dir=working_dir,
            )
        )
    return requirements


def parse_events(raw: Any, default_working_dir: Path, default_timeout: int, config_dir: Path) -> List[Event]:
    events: List[Event] = []
    for idx, item_raw in enumerate(_ensure_list(raw, "events")):
        path = f"events[{idx}]"
        item = ensure_mapping(
            item_raw,
            path,
            {
                "name",
                "interval",
                "commands",
                "parallel",
                "requirement",
                "monitor",
                "timeout",
                "working_dir",
                "env",
                "enabled",
            },
        )
        if not item:
            raise ConfigError(f"Error: {path} must be a non-empty mapping.")
        working_dir = default_working_dir
        if "working_dir" in item:
            working_dir = _resolve_working_dir(item["working_dir"], config_dir, f"{path}.working_dir")
        requirement = item.get("requirement")
        monitor = item.get("monitor")
        events.append(
            Event(
                name=ensure_str(item.get("name"), f"{path}.name"),
                commands=parse_commands(item.get("commands"), f"{path}.commands"),
                interval=parse_interval(item.get("interval"), f"{path}.interval"),
                parallel=ensure_bool(item.get("parallel"), f"{path}.parallel", False),
                requirement=ensure_str(requirement, f"{path}.requirement") if requirement is not None else None,
                monitor=ensure_str(monitor, f"{path}.monitor") if monitor is not None else None,
                timeout=ensure_int(item.get("timeout"), f"{path}.timeout", default_timeout, 1),
                working_dir=working_dir,
                env=parse_env(item.get("env"), f"{path}.env"),
                enabled=ensure_bool(item.get("enabled"), f"{path}.enabled", True),
            )
        )
    return events


def parse_services(raw: Any, default_working_dir: Path, config_dir: Path) -> List[Service]:
    services: List[Service] = []
    for idx, item_raw in enumerate(_ensure_list(raw, "services")):
        path = f"services[{idx}]"
        item = ensure_mapping(
            item_raw,
            path,
            {"name", "command", "working_dir", "env", "autostart", "max_restarts"},
        )
        if not item:
            raise ConfigError(f"Error: {path} must be a non-empty mapping.")
        working_dir = default_working_dir
        if "working_dir" in item:
            working_dir = _resolve_working_dir(item["working_dir"], config_dir, f"{path}.working_dir")
        services.append(
            Service(
                name=ensure_str(item.get("name"), f"{path}.name"),
                command=ensure_str(item.get("command"), f"{path}.command"),
                working_dir=working_dir,
                env=parse_env(item.get("env"), f"{path}.env"),
                autostart=ensure_bool(item.get("autostart"), f"{path}.autostart", True),
                max_restarts=ensure_int(item.get("max_restarts"), f"{path}.max_restarts", None, 0),
            )
        )
    return services


def load_config(config_path: Path) -> Tuple[Registry, EngineSettings]:
    payload = _load_config_payload(config_path)
    config_dir = config_path.parent

    unknown_top = set(payload.keys()) - {"version", "settings", "defaults", "requirements", "events", "services"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    settings = parse_settings(payload.get("settings"), config_dir)
    defaults = ensure_mapping(payload.get("defaults"), "defaults", {"working_dir", "timeout"})
    default_working_dir = _resolve_working_dir(defaults.get("working_dir", "."), config_dir, "defaults.working_dir")
    default_timeout = ensure_int(defaults.get("timeout"), "defaults.timeout", DEFAULT_TIMEOUT_SECONDS, 1)

    registry = Registry(
        events=parse_events(payload.get("events"), default_working_dir, default_timeout, config_dir),
        requirements=parse_requirements(payload.get("requirements"), default_working_dir, config_dir),
        services=parse_services(payload.get("services"), default_working_dir, config_dir),
    )
    if not registry.events and not registry.services:
        raise ConfigError("Error: config must define at least one event or service.")
    validate_registry(registry)
    return registry, settings


def command_validate(config_path: Path) -> int:
    registry, _ = load_config(config_path)
    enabled_count = sum(1 for event in registry.events if event.enabled)
    print(f"Config valid: {config_path}")
    print(f"Events: {len(registry.events)} ({enabled_count} enabled)")
    print(f"Requirements: {len(registry.requirements)}")
    print(f"Services: {len(registry.services)}")
    return 0


def command_parse(expressions: List[str]) -> int:
    exit_code = 0
    for text in expressions:
        try:
            expression = parse_interval(text, "expression")
        except ConfigError as exc:
            print(f"{text}: {exc}")
            exit_code = 1
            continue
        print(f"{text}: {expression.describe()} [{expression.kind}]")
    return exit_code


def _print_table(rows: List[Tuple[str, ...]]) -> None:
    widths = [max(len(row[col]) for row in rows) for col in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def command_list(config_path: Path, table: bool) -> int:
    registry, _ = load_config(config_path)
    if table:
        rows: List[Tuple[str, ...]] = [("KIND", "NAME", "SCHEDULE", "DETAIL")]
        for event in registry.events:
            mode = "parallel" if event.parallel else "sequential"
            gate = f", requires {event.requirement}" if event.requirement else ""
            state = "" if event.enabled else ", disabled"
            rows.append(
                ("event", event.name, event.interval.describe(), f"{len(event.commands)} command(s), {mode}{gate}{state}")
            )
        for item in registry.requirements:
            rows.append(("requirement", item.name, "-", item.check))
        for service in registry.services:
            rows.append(("service", service.name, "autostart" if service.autostart else "manual", service.command))
        _print_table(rows)
        return 0

    for event in registry.events:
        print("=" * 80)
        print(f"Event: {event.name} (enabled={event.enabled})")
        print(f"Interval: {event.interval.text} -> {event.interval.describe()}")
        print(f"Mode: {'parallel' if event.parallel else 'sequential'} | timeout={event.timeout}s")
        if event.requirement:
            print(f"Requirement: {event.requirement}")
        if event.monitor:
            print(f"Monitor: {event.monitor}")
        print("Commands:")
        for command in event.commands:
            print(f"- {command}")
    for item in registry.requirements:
        print("=" * 80)
        print(f"Requirement: {item.name}")
        print(f"Check: {item.check} | timeout={item.timeout}s")
    for service in registry.services:
        print("=" * 80)
        print(f"Service: {service.name} (autostart={service.autostart})")
        print(f"Command: {service.command}")
        if service.max_restarts is not None:
            print(f"Max restarts: {service.max_restarts}")
    print("=" * 80)
    return 0


def command_run(config_path: Path, event_names: List[str]) -> int:
    registry, _ = load_config(config_path)
    by_name = {event.name: event for event in registry.events}
    if event_names:
        unknown = [name for name in event_names if name not in by_name]
        if unknown:
            raise SupertaskError(f"Unknown event(s): {', '.join(unknown)}.")
        selected = [by_name[name] for name in event_names]
    else:
        selected = [event for event in registry.events if event.enabled]
        if not selected:
            raise SupertaskError("No enabled events selected.")

    executor = CommandExecutor()
    exit_code = 0
    for event in selected:
        outcome = run_event(event, registry.requirement(event.requirement), executor)
        if not outcome.success:
            exit_code = 1
    return exit_code


def command_start(config_path: Path) -> int:
    registry, settings = load_config(config_path)
    setup_logging(settings.log_file)
    engine = Engine(registry, settings)
    stop_event = threading.Event()
    reload_event = threading.Event()

    def handle_stop(signum: int, _frame: Any) -> None:
        logger.info("Received %s; shutting down.", signal.Signals(signum).name)
        stop_event.set()

    def handle_reload(_signum: int, _frame: Any) -> None:
        reload_event.set()

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, handle_stop),
        signal.SIGTERM: signal.signal(signal.SIGTERM, handle_stop),
        signal.SIGHUP: signal.signal(signal.SIGHUP, handle_reload),
    }

    def load_registry() -> Registry:
        logger.info("Reloading config from %s", config_path)
        return load_config(config_path)[0]

    try:
        engine.run_forever(stop_event, reload_event=reload_event, load_registry=load_registry)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return 0


def command_schema() -> int:
    print(SCHEMA_EXAMPLE, end="")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="supertask: run events on intervals, gate them on requirements, keep services alive",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to supertask YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    add_config(subparsers.add_parser("start", help="Run the scheduler and services in the foreground"))
    add_config(subparsers.add_parser("validate", help="Validate config"))

    list_parser = subparsers.add_parser("list", help="Summarize events, requirements and services")
    add_config(list_parser)
    list_parser.add_argument("-t", "--table", action="store_true", help="Show a table instead of a list")

    run_parser = subparsers.add_parser("run", help="Run events once, now")
    add_config(run_parser)
    run_parser.add_argument("events", nargs="*", help="Event names (default: all enabled events)")

    parse_parser = subparsers.add_parser("parse", help="Show how interval expressions are interpreted")
    parse_parser.add_argument("expressions", nargs="+", help="Interval expressions, e.g. 'twice per day'")

    subparsers.add_parser("schema", help="Show an annotated example config")
    add_config(subparsers.add_parser("config", help="Show the resolved config path"))

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    config_path = Path(args.config or DEFAULT_CONFIG).expanduser().resolve()

    try:
        if args.command == "start":
            return command_start(config_path)
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "list":
            return command_list(config_path, table=args.table)
        if args.command == "run":
            return command_run(config_path, event_names=args.events)
        if args.command == "parse":
            return command_parse(args.expressions)
        if args.command == "schema":
            return command_schema()
        if args.command == "config":
            print(config_path)
            return 0
        raise SupertaskError(f"Unsupported command: {args.command}")
    except SupertaskError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
