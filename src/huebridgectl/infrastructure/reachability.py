import logging
import threading
from typing import Callable

from huebridgectl.infrastructure.subnet_gateway import local_ipv4_address

LOG = logging.getLogger(__name__)

ReachabilityCallback = Callable[[bool], None]


class InterfaceReachabilityMonitor:
    """Polls for a routable IPv4 address and reports when it appears or goes away.

    The watcher thread runs while at least one subscriber is attached.
    """

    def __init__(
        self,
        interval_s: float = 2.0,
        local_address: Callable[[], str | None] = local_ipv4_address,
    ) -> None:
        self.interval_s = interval_s
        self._local_address = local_address
        self._lock = threading.Lock()
        self._callbacks: list[ReachabilityCallback] = []
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, callback: ReachabilityCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)
            if self._stop is None:
                self._stop = threading.Event()
                self._thread = threading.Thread(
                    target=self._watch,
                    args=(self._stop,),
                    name="reachability",
                    daemon=True,
                )
                self._thread.start()

        def unsubscribe() -> None:
            self._unsubscribe(callback)

        return unsubscribe

    def _unsubscribe(self, callback: ReachabilityCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
            if self._callbacks or self._stop is None:
                return
            stop, thread = self._stop, self._thread
            self._stop = None
            self._thread = None
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval_s + 1.0)

    def _watch(self, stop: threading.Event) -> None:
        reachable = self._local_address() is not None
        LOG.debug("reachability watch begin reachable=%s interval_s=%.1f", reachable, self.interval_s)
        while not stop.wait(self.interval_s):
            current = self._local_address() is not None
            if current == reachable:
                continue
            reachable = current
            LOG.info("network path changed reachable=%s", reachable)
            with self._lock:
                callbacks = list(self._callbacks)
            for callback in callbacks:
                try:
                    callback(reachable)
                except Exception as exc:
                    LOG.warning("reachability callback failed: %s", exc)
        LOG.debug("reachability watch stopped")
