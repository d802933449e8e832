"""
Status event fan-out.

Delivers job/run status notifications to observers (UI, CLI, tests).
Delivery happens on a dispatcher thread in publish order, so a slow or failing
subscriber never blocks job execution. Events are delivered at most once and
are not replayed to late subscribers.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from scheduler.models import Job, JobRun

logger = logging.getLogger(__name__)


@dataclass
class StatusEvent:
    """A job/run status change"""
    job: Job
    run: Optional[JobRun] = None
    message: Optional[str] = None  # set for reports such as an invalid cron


Subscriber = Callable[[StatusEvent], None]

_STOP = object()


class StatusEventBus:
    """In-memory publish/subscribe bus for status events"""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)
        logger.debug(f"Subscribed {getattr(callback, '__name__', repr(callback))}")

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: StatusEvent):
        """Queue an event for delivery and return immediately"""
        if self._closed:
            logger.debug(f"Event bus closed, dropping event for job {event.job.id}")
            return
        self._ensure_dispatcher()
        self._queue.put(event)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every event published so far has been delivered.

        Returns:
            True if drained, False on timeout or if the bus is closed
        """
        if self._closed:
            return False
        self._ensure_dispatcher()
        marker = threading.Event()
        self._queue.put(marker)
        return marker.wait(timeout)

    def close(self, timeout: Optional[float] = 5.0):
        """Stop the dispatcher after delivering already queued events"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._queue.put(_STOP)
            thread.join(timeout)

    def _ensure_dispatcher(self):
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._dispatch_loop, name="status-event-bus", daemon=True
                )
                self._thread.start()

    def _dispatch_loop(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if isinstance(item, threading.Event):
                item.set()
                continue
            self._deliver(item)

    def _deliver(self, event: StatusEvent):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    f"Status subscriber {getattr(callback, '__name__', repr(callback))} "
                    f"failed for job {event.job.id}: {e}"
                )
