"""Scheduled collection and discovery sweeps with bounded per-server concurrency."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Protocol, Sequence

from logmonitor.locks import LockManager

_INACTIVE = "inactive"


class ServerRepository(Protocol):
    def list_servers(self) -> Sequence[Any]: ...


class LogFileRepository(Protocol):
    def list_log_files_by_server(self, server_id: str) -> Sequence[Any]: ...


class Collector(Protocol):
    def collect_log_file(self, server: Any, log_file: Any) -> Any: ...


class Discovery(Protocol):
    def discover_and_sync(self, server: Any) -> Any: ...


class HealthTracker(Protocol):
    def should_skip(self, server: Any) -> bool: ...

    def record_success(self, server_id: str) -> Any: ...

    def record_failure(self, server: Any, error: BaseException | None) -> Any: ...

    def record_degraded(self, server_id: str, message: str) -> Any: ...


@dataclass(frozen=True)
class RunnerOptions:
    """Bounded concurrency settings; non-positive values fall back to one worker."""

    max_server_workers: int = 0
    max_log_file_workers_per_host: int = 0

    def normalized(self) -> RunnerOptions:
        return RunnerOptions(
            max_server_workers=max(self.max_server_workers, 0) or 1,
            max_log_file_workers_per_host=max(self.max_log_file_workers_per_host, 0) or 1,
        )


def _is_inactive(server: Any) -> bool:
    status = getattr(server, "status", "")
    return getattr(status, "value", status) == _INACTIVE


class _ServerSweep:
    """Shared server-level orchestration for scheduled sweeps."""

    _kind = "sweep"

    def __init__(
        self,
        servers: ServerRepository,
        *,
        health: HealthTracker | None,
        lock_manager: LockManager | None,
        options: RunnerOptions | None,
        logger: logging.Logger | None,
        stop_event: threading.Event | None,
    ) -> None:
        self._servers = servers
        self._health = health
        self._lock_manager = lock_manager
        self.options = (options or RunnerOptions()).normalized()
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = stop_event or threading.Event()

    def run(self) -> None:
        """Execute one sweep over all registered servers."""
        try:
            servers = list(self._servers.list_servers())
        except Exception as exc:
            self._logger.error("list servers for %s: %s", self._kind, exc)
            return
        with ThreadPoolExecutor(max_workers=self.options.max_server_workers) as pool:
            for server in servers:
                if self._stop_event.is_set():
                    break
                pool.submit(self._guarded_process, server)

    def _guarded_process(self, server: Any) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._handle_server(server)
        except Exception:
            self._logger.exception("%s failed for server %s", self._kind, server.name)

    def _handle_server(self, server: Any) -> None:
        if _is_inactive(server):
            self._logger.debug("skip %s because server is inactive: %s", self._kind, server.name)
            return
        if self._health is not None and self._health.should_skip(server):
            self._logger.debug(
                "skip %s because server is in backoff: %s until %s",
                self._kind,
                server.name,
                getattr(server, "backoff_until", None),
            )
            return
        with self._server_lock(server) as acquired:
            if not acquired:
                self._logger.debug("skip %s because server is locked: %s", self._kind, server.name)
                return
            self._process_server(server)

    def _process_server(self, server: Any) -> None:
        raise NotImplementedError

    @contextmanager
    def _server_lock(self, server: Any) -> Iterator[bool]:
        if self._lock_manager is None:
            yield True
            return
        unlock = self._lock_manager.try_lock(f"server:{server.id}")
        if unlock is None:
            yield False
            return
        try:
            yield True
        finally:
            unlock()

    def _record_success(self, server: Any) -> None:
        if self._health is None:
            return
        try:
            self._health.record_success(server.id)
        except Exception as exc:
            self._logger.warning("record health success for %s: %s", server.name, exc)

    def _record_failure(self, server: Any, error: BaseException | None) -> None:
        if self._health is None:
            return
        try:
            self._health.record_failure(server, error)
        except Exception as exc:
            self._logger.warning("record health failure for %s: %s", server.name, exc)

    def _record_degraded(self, server: Any, message: str) -> None:
        if self._health is None:
            return
        try:
            self._health.record_degraded(server.id, message)
        except Exception as exc:
            self._logger.warning("record health degradation for %s: %s", server.name, exc)


class _CollectionSummary:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.success_count = 0
        self.failure_count = 0
        self.first_error: BaseException | None = None


class CollectionRunner(_ServerSweep):
    """Collects new entries from the active log files of every server."""

    _kind = "collection"

    def __init__(
        self,
        servers: ServerRepository,
        log_files: LogFileRepository,
        collector: Collector,
        *,
        health: HealthTracker | None = None,
        lock_manager: LockManager | None = None,
        options: RunnerOptions | None = None,
        logger: logging.Logger | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        super().__init__(
            servers,
            health=health,
            lock_manager=lock_manager,
            options=options,
            logger=logger,
            stop_event=stop_event,
        )
        self._log_files = log_files
        self._collector = collector

    def run(self) -> None:
        """Execute one collection sweep for all active server log files."""
        super().run()

    def _process_server(self, server: Any) -> None:
        try:
            log_files = list(self._log_files.list_log_files_by_server(server.id))
        except Exception as exc:
            self._record_failure(server, exc)
            self._logger.error("list log files for %s: %s", server.name, exc)
            return

        active = [log_file for log_file in log_files if log_file.is_active]
        if not active:
            self._logger.debug("skip collection because server has no active log files: %s", server.name)
            return

        summary = self._collect_all(server, active)
        if summary.failure_count == 0:
            self._record_success(server)
        elif summary.success_count == 0:
            self._record_failure(server, summary.first_error)
        else:
            self._record_degraded(
                server,
                f"collection partially failed for {summary.failure_count} of {len(active)} log files",
            )

    def _collect_all(self, server: Any, log_files: list[Any]) -> _CollectionSummary:
        summary = _CollectionSummary()

        def collect(log_file: Any) -> None:
            if self._stop_event.is_set():
                return
            try:
                self._collector.collect_log_file(server, log_file)
            except Exception as exc:
                with summary.lock:
                    if summary.first_error is None:
                        summary.first_error = exc
                    summary.failure_count += 1
                self._logger.error("collect log entries for %s %s: %s", server.name, log_file.path, exc)
                return
            with summary.lock:
                summary.success_count += 1

        with ThreadPoolExecutor(max_workers=self.options.max_log_file_workers_per_host) as pool:
            for log_file in log_files:
                if self._stop_event.is_set():
                    break
                pool.submit(collect, log_file)
        return summary


class DiscoveryRunner(_ServerSweep):
    """Discovers remote log files on every server and syncs them into storage."""

    _kind = "discovery"

    def __init__(
        self,
        servers: ServerRepository,
        discovery: Discovery,
        *,
        health: HealthTracker | None = None,
        lock_manager: LockManager | None = None,
        options: RunnerOptions | None = None,
        logger: logging.Logger | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        super().__init__(
            servers,
            health=health,
            lock_manager=lock_manager,
            options=options,
            logger=logger,
            stop_event=stop_event,
        )
        self._discovery = discovery

    def run(self) -> None:
        """Execute one discovery sweep for all registered servers."""
        super().run()

    def _process_server(self, server: Any) -> None:
        try:
            self._discovery.discover_and_sync(server)
        except Exception as exc:
            self._record_failure(server, exc)
            self._logger.error("discover logs for %s: %s", server.name, exc)
            return
        self._record_success(server)