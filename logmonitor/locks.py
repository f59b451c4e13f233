"""Lightweight in-process locks for background job isolation."""

from __future__ import annotations

import threading
from typing import Callable


class LockManager:
    """Best-effort non-blocking locks keyed by string."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._locked: set[str] = set()

    def try_lock(self, key: str) -> Callable[[], None] | None:
        """Acquire ``key`` if it is free and return its release function, else ``None``."""
        with self._mutex:
            if key in self._locked:
                return None
            self._locked.add(key)

        def unlock() -> None:
            with self._mutex:
                self._locked.discard(key)

        return unlock