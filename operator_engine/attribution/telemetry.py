"""
Telemetry Channel — best-effort background work.

Attribution writes and memory ingestion run here so they never delay or
fail the user-facing execute path. Tasks run one at a time, in submission
order, on a single daemon worker.
"""

import queue
import threading
from typing import Any, Callable, Optional

from operator_engine.logging import get_logger
from operator_engine.sanitize import sanitize_error_message

logger = get_logger("operator_engine.telemetry")


class TelemetryChannel:
    """Bounded queue + worker thread. Failures are logged, never raised."""

    def __init__(self, max_size: int = 256):
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_size)
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dropped = 0
        self.failed = 0

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._run, name="operator-engine-telemetry", daemon=True
                )
                self._worker.start()

    def submit(self, fn: Callable[..., Any], *args: Any, label: str = "", **kwargs: Any) -> bool:
        """Queue a task. Returns False when the queue is full and the task was dropped."""
        self._ensure_worker()
        try:
            self._queue.put_nowait((fn, args, kwargs, label or getattr(fn, "__name__", "task")))
        except queue.Full:
            self.dropped += 1
            logger.warning("telemetry.dropped", label=label, queue_size=self._queue.maxsize)
            return False
        return True

    def _run(self) -> None:
        while True:
            fn, args, kwargs, label = self._queue.get()
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                self.failed += 1
                logger.error("telemetry.task_failed", label=label, error=sanitize_error_message(exc))
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued task has run."""
        self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.unfinished_tasks
