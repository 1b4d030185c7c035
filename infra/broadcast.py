"""
Best-effort state fan-out to viewers.

The scheduler publishes one message per completed cycle (and per manual
action). Delivery runs on a daemon worker thread behind a bounded queue, so
publishing never blocks the ledger; when the queue is full the update is
dropped with a warning.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]

_STOP = object()


class Broadcaster:
    """Bounded-queue publisher with a single delivery thread."""

    def __init__(self, max_queue: int = 256):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0
        self.delivered = 0

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="Broadcaster", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        if not self._thread:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Broadcast queue full at shutdown; worker will exit with the process")
        self._thread.join(timeout=timeout)
        self._thread = None

    def publish(self, message: Dict[str, Any]) -> bool:
        """Enqueue without blocking. Returns False when dropped."""
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Broadcast queue full; dropped {message.get('type', 'update')} update")
            return False

    def flush(self, timeout: float = 2.0) -> bool:
        """Wait until queued messages are delivered (tests and shutdown)."""
        done = threading.Event()

        def _waiter():
            self._queue.join()
            done.set()

        threading.Thread(target=_waiter, daemon=True).start()
        return done.wait(timeout)

    def _run(self) -> None:
        while True:
            message = self._queue.get()
            try:
                if message is _STOP:
                    return
                self._deliver(message)
            finally:
                self._queue.task_done()

    def _deliver(self, message: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(message)
            except Exception as exc:
                # A failing viewer must not stop delivery to the others
                logger.warning(f"Broadcast subscriber {getattr(callback, '__name__', callback)} failed: {exc}")
        self.delivered += 1


__all__ = ["Broadcaster"]
