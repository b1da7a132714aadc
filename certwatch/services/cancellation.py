"""
One-shot cancellation signal shared by the watchdog and the serving component.
"""
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional


class CancellationSource(Enum):
    """What triggered cancellation."""
    CERTIFICATE = "certificate"
    SIGNAL = "signal"
    SHUTDOWN = "shutdown"


class CancellationSignal:
    """
    Idempotent latch: the first ``fire`` wins, later calls have no effect.

    Consumers either block in ``wait`` or register a callback that runs
    once when the signal fires.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None
        self.source: Optional[CancellationSource] = None

    def fire(self, reason: str, source: CancellationSource = CancellationSource.SHUTDOWN) -> bool:
        """
        Trigger cancellation.

        Returns:
            True if this call fired the signal, False if it had already fired
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self.source = source
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        self.logger.debug(f"Cancellation fired by {source.value}: {reason}")
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once on firing, or immediately if already fired."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancellation fires; returns False on timeout."""
        return self._event.wait(timeout)

    def _run_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            self.logger.exception("Cancellation callback failed")
