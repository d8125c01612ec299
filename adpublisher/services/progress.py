from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

_END = object()


class ProgressChannel:
    """
    Single-producer, single-consumer event channel backed by a bounded queue.

    The producer blocks while the buffer is full; once the consumer calls
    `close()` (for example when an HTTP client disconnects) every further
    `emit` is dropped instead of blocking. The consumer iteration ends after
    the producer calls `finish()`.
    """

    def __init__(self, maxsize: int = 256, *, put_timeout: float = 0.25) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._put_timeout = put_timeout

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _put(self, item: Any) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=self._put_timeout)
                return True
            except queue.Full:
                continue
        return False

    def emit(self, event: Any) -> bool:
        return self._put(event)

    def finish(self) -> None:
        self._put(_END)

    def close(self) -> None:
        self._closed.set()

    def __iter__(self) -> Iterator[Any]:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item

    def start(self, target: Callable[["ProgressChannel"], None], *, name: str = "progress-worker") -> threading.Thread:
        def _run() -> None:
            try:
                target(self)
            except Exception:  # noqa: BLE001
                logger.exception("progress.worker_failed", extra={"worker": name})
            finally:
                self.finish()

        thread = threading.Thread(target=_run, name=name, daemon=True)
        thread.start()
        return thread
