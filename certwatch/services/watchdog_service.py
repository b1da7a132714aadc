"""
Certificate watchdog: periodic re-validation and termination signal handling.
"""
import logging
import signal
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import schedule

from ..security.models import ValidationOutcome
from ..security.security_service import SecurityService, recheck_deadline
from .cancellation import CancellationSignal, CancellationSource
from .logging_service import LoggingService, PerformanceMonitor


HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class WatchdogState(Enum):
    """Lifecycle of the watchdog loop."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class WatchdogService:
    """Re-validates certificates on a timer and fires cancellation on failure or signal."""

    def __init__(self,
                 security_service: SecurityService,
                 cancellation: CancellationSignal,
                 check_interval: float = 300,
                 recheck_margin: float = 60,
                 clock: Optional[Callable[[], datetime]] = None,
                 install_signal_handlers: bool = True,
                 performance_monitor: Optional[PerformanceMonitor] = None,
                 logging_service: Optional[LoggingService] = None):
        """
        Initialize the watchdog.

        Args:
            security_service: Validates the certificate store
            cancellation: Signal consumed by the serving component
            check_interval: Seconds between periodic checks
            recheck_margin: Extra seconds added to each periodic deadline
            clock: Returns the current UTC time (defaults to the system clock)
            install_signal_handlers: Handle SIGINT/SIGTERM when started from the main thread
            performance_monitor: Records validation durations
            logging_service: Attaches structured context to shutdown records
        """
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")

        self.security_service = security_service
        self.cancellation = cancellation
        self.check_interval = float(check_interval)
        self.recheck_margin = float(recheck_margin)
        self.install_signal_handlers = install_signal_handlers
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.logging_service = logging_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.logger = logging.getLogger(__name__)
        self._scheduler = schedule.Scheduler()
        self._wakeup = threading.Event()
        self._stop_requested = threading.Event()
        self._pending_signal: Optional[int] = None
        self._previous_handlers: Dict[int, Any] = {}
        self._thread: Optional[threading.Thread] = None
        self._next_due: Optional[float] = None
        self._state = WatchdogState.IDLE
        self._state_lock = threading.Lock()

        self.last_outcome: Optional[ValidationOutcome] = None
        self.tick_count = 0

    @property
    def state(self) -> WatchdogState:
        return self._state

    def start(self) -> None:
        """
        Start periodic validation in a background thread.

        Raises:
            RuntimeError: If the watchdog was already started
        """
        with self._state_lock:
            if self._state is not WatchdogState.IDLE:
                raise RuntimeError(f"Watchdog cannot be started from state {self._state.value}")
            self._state = WatchdogState.RUNNING

        self._scheduler.every(self.check_interval).seconds.do(self.tick)
        self._next_due = time.monotonic() + self.check_interval
        self.cancellation.add_callback(self._wakeup.set)

        if self.install_signal_handlers:
            self._install_signal_handlers()

        self._thread = threading.Thread(target=self._run, name="certwatch-watchdog", daemon=True)
        self._thread.start()

        self.logger.info(f"Certificate watchdog started (checking every {self.check_interval:g}s)")

    def stop(self, timeout: float = 5) -> None:
        """Stop the loop without firing cancellation. Safe to call more than once."""
        self._stop_requested.set()
        self._wakeup.set()

        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

        self._scheduler.clear()
        self._restore_signal_handlers()
        self._set_stopped()

    def notify_signal(self, signum: int) -> None:
        """Record a termination request and wake the loop; safe from any thread."""
        self._pending_signal = signum
        self._wakeup.set()

    def tick(self):
        """
        Run one periodic check.

        Returns:
            schedule.CancelJob once the certificates are judged invalid, so the
            timer is released; None otherwise
        """
        now = self._clock()
        deadline = recheck_deadline(
            now,
            timedelta(seconds=self.check_interval),
            timedelta(seconds=self.recheck_margin)
        )
        self.tick_count += 1
        self.logger.info("Validating certificates")

        try:
            with self.performance_monitor.measure_operation("certificate_validation") as result:
                outcome = self.security_service.validate(deadline, now=now)
                result['success'] = outcome.is_valid
                result['error_message'] = None if outcome.is_valid else str(outcome)
        except Exception as e:
            self.logger.exception("Shutting down: certificate validation failed unexpectedly")
            self._shutdown(f"certificate validation error: {e}", CancellationSource.CERTIFICATE)
            return schedule.CancelJob

        self.last_outcome = outcome
        if outcome.is_valid:
            self.logger.info("Certificates are valid")
            return None

        self._log_shutdown(
            'error',
            f"Shutting down: certificates invalid by {deadline.isoformat()}: {outcome}",
            str(outcome),
            CancellationSource.CERTIFICATE
        )
        self._shutdown(str(outcome), CancellationSource.CERTIFICATE)
        return schedule.CancelJob

    def get_status(self) -> Dict[str, Any]:
        """Get watchdog status information."""
        next_run = None
        if self._state is WatchdogState.RUNNING and self._next_due is not None:
            next_run = self._clock() + timedelta(seconds=max(self._next_due - time.monotonic(), 0))
        return {
            'state': self._state.value,
            'check_interval_seconds': self.check_interval,
            'recheck_margin_seconds': self.recheck_margin,
            'tick_count': self.tick_count,
            'next_check': next_run.isoformat() if next_run else None,
            'last_outcome': str(self.last_outcome) if self.last_outcome else None,
            'cancelled': self.cancellation.is_set(),
            'cancellation_reason': self.cancellation.reason,
            'validation_stats': self.performance_monitor.get_operation_stats("certificate_validation")
        }

    def _run(self) -> None:
        """Wait for the next tick, a signal, or cancellation from elsewhere."""
        try:
            while not self._stop_requested.is_set():
                # Monotonic timing: wall-clock steps do not move the next check
                self._wakeup.wait(max(self._next_due - time.monotonic(), 0))
                self._wakeup.clear()

                if self._pending_signal is not None:
                    self._handle_signal(self._pending_signal)
                    break
                if self._stop_requested.is_set() or self.cancellation.is_set():
                    break
                if time.monotonic() < self._next_due:
                    continue

                self._next_due = time.monotonic() + self.check_interval
                # Due on the monotonic clock, regardless of schedule's wall-clock next_run
                self._scheduler.run_all()
                if self.cancellation.is_set():
                    break
        except Exception as e:
            self.logger.exception("Certificate watchdog loop failed")
            self._shutdown(f"watchdog loop failed: {e}", CancellationSource.CERTIFICATE)
        finally:
            self._scheduler.clear()
            self._set_stopped()
            self.logger.debug("Certificate watchdog loop exited")

    def _handle_signal(self, signum: int) -> None:
        name = signal.Signals(signum).name
        # Termination requests bypass validation
        reason = f"received {name}"
        if self._shutdown(reason, CancellationSource.SIGNAL):
            self._log_shutdown('warning', f"Shutting down: {reason}", reason, CancellationSource.SIGNAL)
        else:
            self.logger.info(f"Received {name}, shutdown already in progress")

    def _log_shutdown(self, level: str, message: str, reason: str,
                      source: CancellationSource) -> None:
        if self.logging_service:
            self.logging_service.log_with_context(
                level, message, logger_name=__name__, reason=reason, source=source.value
            )
        else:
            getattr(self.logger, level)(message)

    def _shutdown(self, reason: str, source: CancellationSource) -> bool:
        fired = self.cancellation.fire(reason, source)
        self._set_stopped()
        return fired

    def _set_stopped(self) -> None:
        with self._state_lock:
            self._state = WatchdogState.STOPPED

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self.logger.warning("Not in the main thread, termination signals will not be handled")
            return

        def signal_handler(signum, frame):
            self.notify_signal(signum)

        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, signal_handler)

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
