"""Per-job fan-out of progress events.

Publishing never blocks: each subscriber owns a bounded queue and an event
is dropped for any subscriber whose queue is full. There is no replay, so a
subscriber only sees what is published after it subscribed. A terminal event
is delivered to current subscribers and then closes the job's channel.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)

TERMINAL_EVENT_STATUSES = frozenset({"completed", "error", "cancelled"})

_END = object()


@dataclass
class ProgressEvent:
    status: str
    chunk: Optional[int] = None
    total: Optional[int] = None
    message: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    troubleshooting: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EVENT_STATUSES

    @classmethod
    def progress(cls, chunk: int, total: int, message: str = "") -> "ProgressEvent":
        return cls(status="progress", chunk=chunk, total=total, message=message)

    @classmethod
    def completed(cls, outputs: List[str]) -> "ProgressEvent":
        return cls(status="completed", outputs=list(outputs))

    @classmethod
    def failed(cls, error: str, troubleshooting: Optional[List[str]] = None) -> "ProgressEvent":
        return cls(status="error", error=error, troubleshooting=list(troubleshooting or []))

    @classmethod
    def cancelled(cls, message: str = "Job cancelled") -> "ProgressEvent":
        return cls(status="cancelled", message=message)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status}
        for key in ("chunk", "total", "message", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.outputs:
            data["outputs"] = list(self.outputs)
        if self.troubleshooting:
            data["troubleshooting"] = list(self.troubleshooting)
        return data


class Subscription:
    def __init__(self, hub: "ProgressHub", job_id: str, maxsize: int) -> None:
        self._hub = hub
        self.job_id = job_id
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._ended = threading.Event()
        self.dropped = 0

    @property
    def ended(self) -> bool:
        return self._ended.is_set()

    def _offer(self, event: ProgressEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def _finish(self, final: Optional[ProgressEvent] = None) -> None:
        # The terminal event and the end marker must always fit, so older
        # progress events are discarded to make room for them.
        items = [final, _END] if final is not None else [_END]
        for item in items:
            while True:
                try:
                    self._queue.put_nowait(item)
                    break
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Return the next event, or ``None`` on timeout or once the stream ended."""
        if self.ended:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _END:
            self._ended.set()
            return None
        return item

    def listen(self, heartbeat: Optional[float] = None) -> Iterator[Optional[ProgressEvent]]:
        """Yield events until the stream ends.

        With ``heartbeat`` set, ``None`` is yielded whenever no event arrived
        within that many seconds so callers can keep a transport alive.
        """
        while not self.ended:
            event = self.get(timeout=heartbeat)
            if event is None:
                if self.ended:
                    return
                if heartbeat is not None:
                    yield None
                continue
            yield event

    def __iter__(self) -> Iterator[ProgressEvent]:
        for event in self.listen():
            if event is not None:
                yield event

    def close(self) -> None:
        self._hub.unsubscribe(self)
        self._ended.set()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()


class ProgressHub:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._closed: Set[str] = set()

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id, self._queue_size)
        with self._lock:
            if job_id in self._closed:
                subscription._finish()
                return subscription
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            try:
                subscribers.remove(subscription)
            except ValueError:
                return
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)

    def publish(self, job_id: str, event: ProgressEvent) -> int:
        """Deliver ``event`` to current subscribers; return how many received it."""
        with self._lock:
            if job_id in self._closed:
                return 0
            subscribers = list(self._subscribers.get(job_id, ()))
            if event.is_terminal:
                self._closed.add(job_id)
                self._subscribers.pop(job_id, None)

        delivered = 0
        for subscription in subscribers:
            if event.is_terminal:
                subscription._finish(event)
                delivered += 1
                continue
            before = subscription.dropped
            subscription._offer(event)
            if subscription.dropped == before:
                delivered += 1
        if delivered < len(subscribers):
            logger.debug("Dropped progress event for %d slow subscriber(s) of job %s", len(subscribers) - delivered, job_id)
        return delivered

    def close(self, job_id: str) -> None:
        with self._lock:
            self._closed.add(job_id)
            subscribers = self._subscribers.pop(job_id, [])
        for subscription in subscribers:
            subscription._finish()

    def is_closed(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._closed

    def forget(self, job_id: str) -> None:
        """Drop all bookkeeping for a job that no longer exists."""
        self.close(job_id)
        with self._lock:
            self._closed.discard(job_id)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))
