"""
Background delivery of enforcement signals.

The worker hands payloads over and carries on; one sender thread drains a bounded queue into
the sinks, so a slow or unreachable controller never holds a tick. Each sink gets its own
circuit breaker when one is configured.
"""
import logging
import queue
import threading

from tq.resilience import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

_STOP = object()


def _sink_name(sink):
    return getattr(sink, "name", type(sink).__name__)


class SignalDispatcher:
    def __init__(self, sinks, breaker_config=None, max_pending=1000):
        self.sinks = list(sinks)
        self._breakers = {}
        if breaker_config:
            for sink in self.sinks:
                self._breakers[id(sink)] = CircuitBreaker(
                    failure_threshold=int(breaker_config.get("failure_threshold", 5)),
                    window_sec=float(breaker_config.get("window_sec", 60)),
                    open_sec=float(breaker_config.get("open_sec", 30)),
                    name=_sink_name(sink),
                )
        self._queue = queue.Queue(maxsize=max_pending)
        self._thread = None
        self._start_lock = threading.Lock()
        self.dropped = 0

    def _ensure_sender(self):
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._drain, name="tq-signal-sender", daemon=True)
                self._thread.start()

    def submit(self, payloads):
        """Queue payloads for delivery without waiting on any sink."""
        if not self.sinks:
            return
        self._ensure_sender()
        for payload in payloads:
            try:
                self._queue.put_nowait(payload)
            except queue.Full:
                self.dropped += 1
                logger.error(
                    "signal queue full (%d pending); dropped %s for user=%s node=%s",
                    self._queue.qsize(), payload.get("action"), payload.get("user_id"), payload.get("node_id"),
                )

    def _drain(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, payload):
        for sink in self.sinks:
            breaker = self._breakers.get(id(sink))
            try:
                if breaker is not None:
                    breaker.call(lambda: sink.emit(payload))
                else:
                    sink.emit(payload)
            except CircuitOpenError:
                logger.warning("sink %s circuit open; dropped %s for user=%s node=%s",
                               _sink_name(sink), payload.get("action"), payload.get("user_id"), payload.get("node_id"))
            except Exception as exc:
                logger.error("sink %s delivery failed: %s", _sink_name(sink), exc)

    def flush(self):
        """Wait until every payload submitted so far has been handed to the sinks."""
        if self._thread is not None and self._thread.is_alive():
            self._queue.join()

    def close(self, timeout=10.0):
        """Deliver what is pending, then stop the sender thread."""
        if self._thread is None or not self._thread.is_alive():
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("signal sender still busy after %.1fs; %d payload(s) pending",
                           timeout, self._queue.qsize())
