"""A simple interval-based background scheduler."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Union

_log = logging.getLogger(__name__)

Job = Callable[[], None]
Interval = Union[timedelta, int, float]


class SchedulerError(ValueError):
    """Raised for invalid schedules and invalid scheduler usage."""


@dataclass(frozen=True)
class _ScheduledJob:
    name: str
    interval: float
    job: Job


class Scheduler:
    """Stores periodic jobs and runs each in its own background thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: list[_ScheduledJob] = []
        self._threads: list[threading.Thread] = []
        self._stop_event: threading.Event | None = None
        self._started = False

    def add_func(self, name: str, interval: Interval, job: Job) -> None:
        """Register a periodic job; only allowed before the scheduler starts."""
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        if seconds <= 0:
            raise SchedulerError(f"scheduler: interval for {name!r} must be positive")
        if job is None:
            raise SchedulerError(f"scheduler: job for {name!r} is nil")
        with self._lock:
            if self._started:
                raise SchedulerError(f"scheduler: cannot add job {name!r} after start")
            self._jobs.append(_ScheduledJob(name=name, interval=seconds, job=job))

    def start(self) -> None:
        """Begin background execution for all registered jobs."""
        with self._lock:
            if self._started:
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._started = True
            self._threads = [
                threading.Thread(
                    target=self._run_job,
                    args=(item, stop_event),
                    name=f"scheduler-{item.name}",
                    daemon=True,
                )
                for item in self._jobs
            ]
            for thread in self._threads:
                thread.start()

    def stop(self) -> None:
        """Signal all jobs to stop and wait for their threads to finish."""
        with self._lock:
            stop_event = self._stop_event
            threads = list(self._threads)
        if stop_event is not None:
            stop_event.set()
        for thread in threads:
            thread.join()
        with self._lock:
            self._started = False
            self._stop_event = None
            self._threads = []

    def started(self) -> bool:
        """Report whether the scheduler was started and not stopped yet."""
        with self._lock:
            return self._started

    def _run_job(self, item: _ScheduledJob, stop_event: threading.Event) -> None:
        self._run_job_safely(item)
        while not stop_event.wait(item.interval):
            self._run_job_safely(item)

    @staticmethod
    def _run_job_safely(item: _ScheduledJob) -> None:
        try:
            item.job()
        except Exception:
            _log.exception("scheduled job failed: %s", item.name)


_NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)([^\d.]*)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"-300ms"``."""
    rest = text
    sign = 1
    if rest[:1] in ("+", "-"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise SchedulerError(f"time: invalid duration {text!r}")

    total_nanos = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise SchedulerError(f"time: invalid duration {text!r}")
        number, unit = match.groups()
        if not unit:
            raise SchedulerError(f"time: missing unit in duration {text!r}")
        factor = _NANOS_PER_UNIT.get(unit)
        if factor is None:
            raise SchedulerError(f"time: unknown unit {unit!r} in duration {text!r}")
        try:
            total_nanos += Decimal(number) * factor
        except InvalidOperation as exc:
            raise SchedulerError(f"time: invalid duration {text!r}") from exc
        pos = match.end()

    return timedelta(microseconds=sign * (int(total_nanos) // 1000))


_KNOWN_SPECS = {
    "*/5 * * * *": timedelta(minutes=5),
    "0 * * * *": timedelta(hours=1),
    "0 */6 * * *": timedelta(hours=6),
    "0 0 * * *": timedelta(hours=24),
}


def parse_interval(spec: str) -> timedelta:
    """Convert a limited cron-like expression or ``@every <duration>`` into an interval."""
    normalized = spec.strip()
    if not normalized:
        raise SchedulerError("scheduler: empty schedule")

    if normalized.startswith("@every "):
        return parse_duration(normalized[len("@every "):].strip())

    known = _KNOWN_SPECS.get(normalized)
    if known is not None:
        return known

    parts = normalized.split()
    if len(parts) != 5:
        raise SchedulerError(f"scheduler: unsupported cron expression {spec!r}")
    minute, hour, *tail = parts
    wildcard_tail = all(item == "*" for item in tail)

    if minute.startswith("*/") and hour == "*" and wildcard_tail:
        try:
            return parse_duration(minute[2:] + "m")
        except SchedulerError as exc:
            raise SchedulerError(f"scheduler: parse minutes from {spec!r}: {exc}") from exc

    if minute == "0" and hour.startswith("*/") and wildcard_tail:
        try:
            return parse_duration(hour[2:] + "h")
        except SchedulerError as exc:
            raise SchedulerError(f"scheduler: parse hours from {spec!r}: {exc}") from exc

    raise SchedulerError(f"scheduler: unsupported cron expression {spec!r}")