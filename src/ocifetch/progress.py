"""Progress reporting for blob transfers.

The transfer engine reports byte counts to a send-only sink. The receiving
side belongs to the caller: it can drain a ProgressChannel from another
thread, or drive a rich progress bar directly with RichProgressSink.

Closing the receiving side of a channel makes the next send fail with
ProgressChannelClosed, which the engine treats as cancellation.
"""

from __future__ import annotations

import queue
import threading
from typing import Iterator, List, Optional, Protocol, runtime_checkable

from .errors import OciFetchError


class ProgressChannelClosed(OciFetchError):
    """The receiving side of a progress sink is gone."""
    pass


@runtime_checkable
class ProgressSink(Protocol):
    """Send-only end of a progress channel.

    Implementations raise ProgressChannelClosed from send() when nobody is
    listening any more.
    """

    def send(self, nbytes: int) -> None:
        ...

    def close(self) -> None:
        ...


_CLOSED = object()

# Seconds a blocked sender waits before re-checking for a disconnect
_SEND_POLL_INTERVAL = 0.05


class ProgressChannel:
    """Queue-backed progress channel.

    The engine holds the channel as a sink (send/close); the caller iterates
    it to receive byte counts until the engine closes it.

    Args:
        maxsize: Bound on undelivered events; 0 means unbounded. A bounded
            channel blocks the sender when full, until the receiver reads or
            disconnects.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self._disconnected = False

    @property
    def closed(self) -> bool:
        """Whether the sending side has been released."""
        return self._closed

    def send(self, nbytes: int) -> None:
        if nbytes < 0:
            raise ValueError(f"progress byte count must be non-negative: {nbytes}")
        with self._lock:
            if self._closed:
                raise RuntimeError("send on a released progress channel")
        if not self._put(nbytes):
            raise ProgressChannelClosed("progress receiver disconnected")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("progress channel released twice")
            self._closed = True
        self._put(_CLOSED)

    def _put(self, item: object) -> bool:
        """Enqueue item; False if the receiver is gone before it fits."""
        while True:
            with self._lock:
                if self._disconnected:
                    return False
            try:
                self._queue.put(item, timeout=_SEND_POLL_INTERVAL)
                return True
            except queue.Full:
                # Re-check for a disconnect while blocked
                continue

    def disconnect(self) -> None:
        """Drop the receiving side; later sends raise ProgressChannelClosed."""
        with self._lock:
            self._disconnected = True

    def recv(self, timeout: Optional[float] = None) -> Optional[int]:
        """Receive one byte count, or None once the sender has closed."""
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Keep the marker for any other reader
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[int]:
        while True:
            item = self.recv()
            if item is None:
                return
            yield item

    def drain(self) -> List[int]:
        """Collect every pending event without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)


class RichProgressSink:
    """Progress sink that advances a task on a rich Progress display."""

    def __init__(self, progress, task_id):
        self.progress = progress
        self.task_id = task_id
        self.closed = False

    def send(self, nbytes: int) -> None:
        if self.closed:
            raise ProgressChannelClosed("progress display already finished")
        self.progress.advance(self.task_id, nbytes)

    def close(self) -> None:
        self.closed = True
        self.progress.refresh()


__all__ = [
    "ProgressChannel",
    "ProgressChannelClosed",
    "ProgressSink",
    "RichProgressSink",
]
