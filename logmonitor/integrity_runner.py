"""Scheduled integrity checks with bounded per-server concurrency."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from logmonitor.locks import LockManager
from logmonitor.runners import (
    HealthTracker,
    LogFileRepository,
    RunnerOptions,
    ServerRepository,
    _ServerSweep,
)

_STATUS_ERROR = "error"
_STATUS_TAMPERED = "tampered"


class IntegrityChecker(Protocol):
    def check_log_file(self, server: Any, log_file: Any) -> Any: ...


class _CheckStatusError(Exception):
    """An integrity check that finished with an error status."""


def _status_of(result: Any) -> str:
    status = getattr(result, "status", "")
    return getattr(status, "value", status)


def build_integrity_degraded_message(failure_count: int, tampered_count: int, total: int) -> str:
    """Summarize partial integrity issues on a reachable server."""
    if failure_count > 0 and tampered_count > 0:
        return (
            f"integrity completed with {failure_count} check errors and "
            f"{tampered_count} tampered log files out of {total}"
        )
    if failure_count > 0:
        return f"integrity partially failed for {failure_count} of {total} log files"
    return f"integrity detected tampering in {tampered_count} of {total} log files"


class _IntegritySummary:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.success_count = 0
        self.failure_count = 0
        self.tampered_count = 0
        self.first_error: BaseException | None = None

    def fail(self, error: BaseException) -> None:
        with self.lock:
            if self.first_error is None:
                self.first_error = error
            self.failure_count += 1

    def succeed(self, tampered: bool) -> None:
        with self.lock:
            self.success_count += 1
            if tampered:
                self.tampered_count += 1


class IntegrityRunner(_ServerSweep):
    """Runs integrity checks for the active log files of every server."""

    _kind = "integrity"

    def __init__(
        self,
        servers: ServerRepository,
        log_files: LogFileRepository,
        integrity: IntegrityChecker,
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
        self._integrity = integrity

    def run(self) -> None:
        """Execute integrity checks for all active log files across all servers."""
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
            self._logger.debug("skip integrity because server has no active log files: %s", server.name)
            return

        summary = self._check_all(server, active)
        if summary.failure_count == 0 and summary.tampered_count == 0:
            self._record_success(server)
        elif summary.success_count == 0:
            self._record_failure(server, summary.first_error)
        else:
            self._record_degraded(
                server,
                build_integrity_degraded_message(
                    summary.failure_count, summary.tampered_count, len(active)
                ),
            )

    def _check_all(self, server: Any, log_files: list[Any]) -> _IntegritySummary:
        summary = _IntegritySummary()

        def check(log_file: Any) -> None:
            if self._stop_event.is_set():
                return
            try:
                result = self._integrity.check_log_file(server, log_file)
            except Exception as exc:
                summary.fail(exc)
                self._logger.error("integrity check for %s %s: %s", server.name, log_file.path, exc)
                return
            status = _status_of(result) if result is not None else ""
            if status == _STATUS_ERROR:
                message = getattr(result, "error_message", "") or ""
                summary.fail(_CheckStatusError(message))
                self._logger.warning(
                    "integrity check returned error status for %s %s: %s",
                    server.name,
                    log_file.path,
                    message,
                )
                return
            summary.succeed(status == _STATUS_TAMPERED)

        with ThreadPoolExecutor(max_workers=self.options.max_log_file_workers_per_host) as pool:
            for log_file in log_files:
                if self._stop_event.is_set():
                    break
                pool.submit(check, log_file)
        return summary