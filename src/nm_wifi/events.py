"""Per-key ordered work queues used to apply daemon signals."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

_STOP = object()


class SerialDispatcher:
    """Run submitted callables in order per key, concurrently across keys.

    Each key (a device object path, or ``"settings"``) gets a dedicated
    daemon worker thread created on first use. Work submitted under the same
    key is executed strictly in submission order; work under different keys
    may interleave.
    """

    def __init__(self, *, name: str = "nm-wifi-events") -> None:
        self._name = name
        self._queues: dict[Hashable, queue.SimpleQueue] = {}
        self._threads: dict[Hashable, threading.Thread] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._closed = False

    # ------------------------------ operations -----------------------------
    def submit(self, key: Hashable, func: Callable[..., Any], *args: Any) -> bool:
        """Queue ``func(*args)`` behind earlier work for ``key``."""

        with self._lock:
            if self._closed:
                return False
            work_queue = self._queues.get(key)
            if work_queue is None:
                work_queue = queue.SimpleQueue()
                self._queues[key] = work_queue
                thread = threading.Thread(
                    target=self._worker,
                    args=(key, work_queue),
                    name=f"{self._name}:{key}",
                    daemon=True,
                )
                self._threads[key] = thread
                thread.start()
            self._pending += 1
            work_queue.put((func, args))
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued item has run. Returns ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    @property
    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._queues)

    def close(self, timeout: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            queues = list(self._queues.values())
            threads = list(self._threads.values())
        for work_queue in queues:
            work_queue.put(_STOP)
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout=timeout)

    # ----------------------------- implementation --------------------------
    def _worker(self, key: Hashable, work_queue: queue.SimpleQueue) -> None:
        while True:
            item = work_queue.get()
            if item is _STOP:
                return
            func, args = item
            try:
                func(*args)
            except Exception:
                logger.exception("Failed to apply event for %s", key)
            finally:
                with self._idle:
                    self._pending -= 1
                    if not self._pending:
                        self._idle.notify_all()


__all__ = ["SerialDispatcher"]
