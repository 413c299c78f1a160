"""
scheduler.py
-------------
Continuation triggers for batch jobs.

A trigger is the pair (job_id, cursor). Delivery is at-least-once: the
controller ignores triggers whose cursor no longer matches the persisted
job, so duplicates are harmless.

Three hosts are provided:
    - InlineScheduler:   queues triggers; run_pending() drains them in a loop.
                         Used by tests and by long-lived processes.
    - ThreadedScheduler: runs each trigger on a daemon thread right away.
    - DeferredScheduler: only records the trigger. The persisted cursor is
                         picked up by the next `resume` tick (cron-style).
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, List, Tuple

from core.exceptions import SchedulingError

logger = logging.getLogger(__name__)

Trigger = Tuple[str, int]
Handler = Callable[[str, int], object]


class ContinuationScheduler(ABC):
    """Abstract trigger host. The controller attaches its run_batch handler."""

    def __init__(self):
        self._handler: Handler | None = None

    def attach(self, handler: Handler) -> None:
        self._handler = handler

    @abstractmethod
    def schedule(self, job_id: str, cursor: int) -> None:
        """
        Hands off (job_id, cursor) without running it on the caller's stack.

        Raises:
            SchedulingError: If the trigger cannot be accepted.
        """
        ...

    def _require_handler(self) -> Handler:
        if self._handler is None:
            raise SchedulingError("No batch handler attached to scheduler")
        return self._handler


class InlineScheduler(ContinuationScheduler):
    """FIFO trigger queue, drained explicitly by run_pending()."""

    def __init__(self):
        super().__init__()
        self.pending: Deque[Trigger] = deque()
        self.history: List[Trigger] = []

    def schedule(self, job_id: str, cursor: int) -> None:
        self._require_handler()
        logger.debug(f"Queued continuation for job {job_id} at cursor {cursor}")
        self.pending.append((job_id, cursor))
        self.history.append((job_id, cursor))

    def run_pending(self, max_triggers: int | None = None) -> int:
        """
        Delivers queued triggers, including ones scheduled while draining.

        Returns:
            Number of triggers delivered.
        """
        handler = self._require_handler()
        delivered = 0
        while self.pending and (max_triggers is None or delivered < max_triggers):
            job_id, cursor = self.pending.popleft()
            handler(job_id, cursor)
            delivered += 1
        return delivered


class ThreadedScheduler(ContinuationScheduler):
    """Runs every trigger on its own daemon thread."""

    def __init__(self):
        super().__init__()
        self._threads: List[threading.Thread] = []

    def schedule(self, job_id: str, cursor: int) -> None:
        handler = self._require_handler()
        thread = threading.Thread(
            target=self._deliver,
            args=(handler, job_id, cursor),
            name=f"batch-{job_id[:8]}-{cursor}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            raise SchedulingError(f"Failed to schedule next batch: {e}") from e
        self._threads.append(thread)

    def join(self, timeout: float | None = None) -> None:
        """Waits for every trigger delivered so far, including chained ones."""
        while self._threads:
            self._threads.pop(0).join(timeout)

    @staticmethod
    def _deliver(handler: Handler, job_id: str, cursor: int) -> None:
        try:
            handler(job_id, cursor)
        except Exception as e:
            logger.error(f"Background batch for job {job_id} at cursor {cursor} failed: {e}")


class DeferredScheduler(ContinuationScheduler):
    """Records triggers only; the persisted job cursor is the durable trigger."""

    def __init__(self):
        super().__init__()
        self.history: List[Trigger] = []

    def schedule(self, job_id: str, cursor: int) -> None:
        logger.info(f"Job {job_id}: continuation at cursor {cursor} deferred to the next resume tick.")
        self.history.append((job_id, cursor))
