"""
Poll / subscribe access to job state.

The job record is the only rendezvous point between the caller who started a
job and the provider callback that finishes it. Callers either pull (``poll``,
``iter_updates``) or get pushed every transition (``subscribe``).
"""

import time
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_TIMEOUT = 10 * 60.0


class JobEventBus:
    """In-process publish/subscribe of job snapshots, keyed by job id."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, listener: Callable) -> Callable[[], None]:
        with self._lock:
            self._listeners[job_id].append(listener)

        def unsubscribe():
            with self._lock:
                listeners = self._listeners.get(job_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(job_id, None)

        return unsubscribe

    def publish(self, record):
        with self._lock:
            listeners = list(self._listeners.get(record.id, []))
        for listener in listeners:
            try:
                listener(record)
            except Exception as e:
                # A broken listener must not break the transition that fired it
                logger.warning(f"Job listener for {record.id} raised: {e}")


class JobWatcher:
    """Exposes job state to the front end by push or pull."""

    def __init__(self, orchestrator, events: JobEventBus, sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        self.orchestrator = orchestrator
        self.events = events
        self._sleep = sleep
        self._monotonic = monotonic

    def subscribe(self, job_id: str, user_id: str, callback: Callable) -> Callable[[], None]:
        """Call ``callback(view)`` on every transition of the job.

        Ownership is checked once up front. The current view is delivered
        immediately so the subscriber never misses a transition that happened
        before it registered.
        """
        current = self.orchestrator.get_job_status(job_id, user_id)

        def _on_change(record):
            callback(self.orchestrator.view_for(record))

        unsubscribe = self.events.subscribe(job_id, _on_change)
        callback(current)
        return unsubscribe

    def poll(self, job_id: str, user_id: str, interval: float = DEFAULT_POLL_INTERVAL,
             timeout: float = DEFAULT_POLL_TIMEOUT):
        """Block until the job is terminal and return its final view."""
        last = None
        for view in self.iter_updates(job_id, user_id, interval=interval, timeout=timeout):
            last = view
        if last is None or not last.is_terminal:
            raise TimeoutError(f"Job {job_id} did not finish within {timeout:.0f}s")
        return last

    def iter_updates(self, job_id: str, user_id: str, interval: float = DEFAULT_POLL_INTERVAL,
                     timeout: Optional[float] = DEFAULT_POLL_TIMEOUT) -> Iterator:
        """Yield a view each time the job's status changes, ending at a terminal state.

        Stops silently when ``timeout`` elapses.
        """
        deadline = None if timeout is None else self._monotonic() + timeout
        last_status = None
        while True:
            view = self.orchestrator.get_job_status(job_id, user_id)
            if view.status != last_status:
                last_status = view.status
                yield view
            if view.is_terminal:
                return
            if deadline is not None and self._monotonic() >= deadline:
                return
            self._sleep(interval)
