import logging
import queue
import threading
import time

logger = logging.getLogger(__name__)

# 100 is reserved for "package uploaded"; encoding alone never reports it.
ENCODE_CEILING = 99


class ProgressAggregator:
    """
    Fold sequential per-rendition progress (0..100 each) into one job-level
    percentage: floor((completed * 100 + current) / total).
    """

    def __init__(self, total: int, ceiling: int = ENCODE_CEILING):
        if total <= 0:
            raise ValueError("Cannot aggregate progress over an empty ladder")
        self.total = total
        self.ceiling = ceiling
        self.completed = 0
        self._current = 0.0
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def update(self, percent: float) -> int:
        """Feed the running rendition's progress; returns the global value."""
        percent = max(0.0, min(100.0, float(percent)))
        self._current = max(self._current, percent)
        return self._recompute()

    def complete_rendition(self) -> int:
        if self.completed >= self.total:
            raise RuntimeError("All renditions are already complete")
        self.completed += 1
        self._current = 0.0
        return self._recompute()

    def _recompute(self) -> int:
        # Integer floor keeps e.g. 2 of 3 done at exactly 66.
        raw = int((self.completed * 100 + self._current) // self.total)
        self._value = max(self._value, min(raw, self.ceiling))
        return self._value


class ProgressPublisher:
    """
    Hands progress values to ``publish`` on a background thread so the
    encoder is never held up by the broker. Updates that would not raise the
    last submitted value are skipped; when the queue is full the update is
    dropped.
    """

    _STOP = object()

    def __init__(self, publish, *, maxsize: int = 16, name: str = "progress-publisher"):
        self._publish = publish
        self._queue = queue.Queue(maxsize=maxsize)
        self._last = -1
        self._closed = False
        self._abandoned = threading.Event()
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)
        self._thread.start()

    def submit(self, percent: int) -> bool:
        if self._closed or percent <= self._last:
            return False
        try:
            self._queue.put_nowait(percent)
        except queue.Full:
            logger.debug("Progress queue full, dropping %s%%", percent)
            return False
        self._last = percent
        return True

    def close(self, timeout: float | None = 30.0) -> None:
        """
        Deliver everything already accepted, then stop the thread. If the
        broker is stuck, pending updates are discarded once ``timeout`` runs
        out and nothing is published after this returns, apart from a call
        that was already in flight.
        """
        if self._closed:
            return
        self._closed = True
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            self._discard_pending()
            self._queue.put_nowait(self._STOP)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        self._thread.join(remaining)
        if self._thread.is_alive():
            self._abandoned.set()
            logger.warning("Progress publisher did not drain within %ss, discarding the rest", timeout)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _discard_pending(self):
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            logger.debug("Discarding undelivered progress %s%%", item)

    def _drain(self):
        while True:
            item = self._queue.get()
            if item is self._STOP or self._abandoned.is_set():
                return
            try:
                self._publish(item)
            except Exception:
                logger.warning("Dropping progress update %s%%", item, exc_info=True)
