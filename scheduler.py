import logging
import threading
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class DebounceScheduler:
    """
    Per-key deferred callbacks. Arming a key replaces any timer already armed
    for it, so a burst of arms results in a single callback after the last one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: Dict[str, Tuple[threading.Timer, Callable[[], None]]] = {}

    def arm(self, key: str, delay: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(delay, self._fire, args=(key,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous[0].cancel()
            self._timers[key] = (timer, callback)
            timer.start()

    def cancel(self, key: str) -> bool:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def pending(self, key: str) -> bool:
        with self._lock:
            return key in self._timers

    def run_now(self, key: str) -> bool:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        self._run(key, entry[1])
        return True

    def shutdown(self, run_pending: bool = True) -> None:
        with self._lock:
            entries = list(self._timers.items())
            self._timers.clear()
        for key, (timer, callback) in entries:
            timer.cancel()
            if run_pending:
                self._run(key, callback)

    def _fire(self, key: str) -> None:
        current = threading.current_thread()
        with self._lock:
            entry = self._timers.get(key)
            # superseded by a later arm or already taken by run_now/cancel
            if entry is None or entry[0] is not current:
                return
            del self._timers[key]
        self._run(key, entry[1])

    def _run(self, key: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Deferred callback for %s failed", key)
