"""
Tests for the cancellation signal and the certificate watchdog loop.
"""
import datetime as datetime_module
import os
import shutil
import signal
import tempfile
import threading
import time
import types
import unittest
from datetime import timedelta
from unittest.mock import Mock, patch

import schedule

from certwatch.models.config import Config
from certwatch.security.models import InvalidReason, ValidationOutcome
from certwatch.security.security_service import SecurityService
from certwatch.services.cancellation import CancellationSignal, CancellationSource
from certwatch.services.watchdog_service import WatchdogService, WatchdogState
from tests.cert_helpers import create_ca, create_cert, utcnow, write_store


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class HourBehindDatetime(datetime_module.datetime):
    """Wall clock stepped back by an hour, as after an NTP correction."""

    @classmethod
    def now(cls, tz=None):
        return datetime_module.datetime.now(tz) - timedelta(hours=1)


def stepped_back_datetime_module():
    module = types.ModuleType("datetime")
    module.__dict__.update(datetime_module.__dict__)
    module.datetime = HourBehindDatetime
    return module


def invalid_outcome():
    return ValidationOutcome.invalid(InvalidReason.EXPIRED_BY_DEADLINE, "certificate expires soon")


class TestCancellationSignal(unittest.TestCase):
    """Test cases for CancellationSignal."""

    def test_fire_once(self):
        cancellation = CancellationSignal()

        self.assertFalse(cancellation.is_set())
        self.assertTrue(cancellation.fire("certificates expiring", CancellationSource.CERTIFICATE))
        self.assertFalse(cancellation.fire("received SIGTERM", CancellationSource.SIGNAL))

        self.assertTrue(cancellation.is_set())
        self.assertEqual(cancellation.reason, "certificates expiring")
        self.assertEqual(cancellation.source, CancellationSource.CERTIFICATE)

    def test_concurrent_fire_has_single_winner(self):
        cancellation = CancellationSignal()
        calls = []
        cancellation.add_callback(lambda: calls.append(1))
        barrier = threading.Barrier(16)
        results = []

        def fire(i):
            barrier.wait()
            results.append(cancellation.fire(f"trigger {i}"))

        threads = [threading.Thread(target=fire, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(len(calls), 1)

    def test_callback_after_fire_runs_immediately(self):
        cancellation = CancellationSignal()
        cancellation.fire("done")
        callback = Mock()

        cancellation.add_callback(callback)

        callback.assert_called_once()

    def test_wait(self):
        cancellation = CancellationSignal()
        self.assertFalse(cancellation.wait(timeout=0.01))

        threading.Timer(0.05, cancellation.fire, args=("later",)).start()
        self.assertTrue(cancellation.wait(timeout=2))

    def test_failing_callback_does_not_stop_others(self):
        cancellation = CancellationSignal()
        second = Mock()
        cancellation.add_callback(Mock(side_effect=RuntimeError("boom")))
        cancellation.add_callback(second)

        with self.assertLogs('certwatch.services.cancellation', level='ERROR'):
            self.assertTrue(cancellation.fire("stop"))

        second.assert_called_once()


class TestWatchdogTick(unittest.TestCase):
    """Test cases for single periodic checks with a fake clock."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ca_cert, self.ca_key = create_ca()
        self.issued_at = utcnow()
        self.clock = FakeClock(self.issued_at)
        self.cancellation = CancellationSignal()
        self.security_service = SecurityService(Config(cert_dir=self.temp_dir))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, validity):
        cert, key = create_cert(
            self.ca_cert, self.ca_key,
            not_before=self.issued_at,
            not_after=self.issued_at + validity
        )
        write_store(self.temp_dir, cert, key, [self.ca_cert])

    def _watchdog(self, security_service=None):
        return WatchdogService(
            security_service or self.security_service,
            self.cancellation,
            check_interval=300,
            recheck_margin=60,
            clock=self.clock,
            install_signal_handlers=False
        )

    def test_short_lived_certificate_cancels_on_first_tick(self):
        """Ten minute certificate, five minute interval, one minute margin."""
        self._write(timedelta(minutes=10))
        watchdog = self._watchdog()

        self.clock.advance(minutes=5)
        result = watchdog.tick()

        self.assertIs(result, schedule.CancelJob)
        self.assertTrue(self.cancellation.is_set())
        self.assertEqual(self.cancellation.source, CancellationSource.CERTIFICATE)
        self.assertIn("expired_by_deadline", self.cancellation.reason)
        self.assertEqual(watchdog.last_outcome.reason, InvalidReason.EXPIRED_BY_DEADLINE)
        self.assertEqual(watchdog.state, WatchdogState.STOPPED)
        self.assertEqual(watchdog.tick_count, 1)

    def test_expiry_within_interval_plus_margin_is_caught(self):
        self._write(timedelta(minutes=10))
        watchdog = self._watchdog()

        # Deadline at 3m30s is 9m30s, still inside the ten minutes
        self.clock.advance(minutes=3, seconds=30)
        self.assertIsNone(watchdog.tick())
        self.assertFalse(self.cancellation.is_set())

        # Deadline at 4m01s is 10m01s
        self.clock.advance(seconds=31)
        self.assertIs(watchdog.tick(), schedule.CancelJob)
        self.assertTrue(self.cancellation.is_set())

    def test_long_lived_certificate_never_cancels(self):
        self._write(timedelta(hours=24))
        watchdog = self._watchdog()

        with self.assertLogs('certwatch.services.watchdog_service', level='INFO') as logs:
            for _ in range(12 * 12):
                self.clock.advance(minutes=5)
                self.assertIsNone(watchdog.tick())

        self.assertFalse(self.cancellation.is_set())
        self.assertTrue(watchdog.last_outcome.is_valid)
        self.assertEqual(watchdog.tick_count, 144)
        self.assertIn("Certificates are valid", logs.output[-1])

    def test_rotation_between_ticks(self):
        self._write(timedelta(hours=1))
        watchdog = self._watchdog()
        self.clock.advance(minutes=40)
        self.assertIsNone(watchdog.tick())

        # Rotated material lands before the next check
        self.issued_at = self.clock.now
        self._write(timedelta(hours=24))
        self.clock.advance(minutes=15)
        self.assertIsNone(watchdog.tick())
        self.assertFalse(self.cancellation.is_set())

    def test_missing_files_cancel(self):
        watchdog = self._watchdog()

        with self.assertLogs('certwatch.services.watchdog_service', level='ERROR') as logs:
            watchdog.tick()

        self.assertTrue(self.cancellation.is_set())
        self.assertIn("Shutting down", logs.output[0])
        self.assertEqual(watchdog.last_outcome.reason, InvalidReason.FILE_UNREADABLE)

    def test_shutdown_is_logged_with_context(self):
        logging_service = Mock()
        watchdog = WatchdogService(
            self.security_service,
            self.cancellation,
            clock=self.clock,
            install_signal_handlers=False,
            logging_service=logging_service
        )

        watchdog.tick()

        logging_service.log_with_context.assert_called_once()
        args, kwargs = logging_service.log_with_context.call_args
        self.assertEqual(args[0], 'error')
        self.assertIn("Shutting down", args[1])
        self.assertEqual(kwargs['logger_name'], 'certwatch.services.watchdog_service')
        self.assertEqual(kwargs['source'], 'certificate')
        self.assertEqual(kwargs['reason'], self.cancellation.reason)
        self.assertIn("file_unreadable", kwargs['reason'])

    def test_unexpected_validation_error_cancels(self):
        security_service = Mock()
        security_service.validate.side_effect = RuntimeError("disk on fire")
        watchdog = self._watchdog(security_service)

        with self.assertLogs('certwatch.services.watchdog_service', level='ERROR'):
            result = watchdog.tick()

        self.assertIs(result, schedule.CancelJob)
        self.assertEqual(self.cancellation.source, CancellationSource.CERTIFICATE)
        self.assertIn("disk on fire", self.cancellation.reason)

    def test_tick_passes_recheck_deadline(self):
        security_service = Mock()
        security_service.validate.return_value = ValidationOutcome.valid()
        watchdog = self._watchdog(security_service)

        watchdog.tick()

        security_service.validate.assert_called_once_with(
            self.issued_at + timedelta(minutes=6), now=self.issued_at
        )

    def test_get_status(self):
        self._write(timedelta(hours=24))
        watchdog = self._watchdog()
        watchdog.tick()

        status = watchdog.get_status()

        self.assertEqual(status['state'], 'idle')
        self.assertEqual(status['tick_count'], 1)
        self.assertEqual(status['last_outcome'], 'certificates are valid')
        self.assertFalse(status['cancelled'])
        self.assertEqual(status['validation_stats']['success_count'], 1)


class TestWatchdogLoop(unittest.TestCase):
    """Test cases for the background loop."""

    def setUp(self):
        self.cancellation = CancellationSignal()
        self.security_service = Mock()
        self.security_service.validate.return_value = ValidationOutcome.valid()
        self.watchdogs = []

    def tearDown(self):
        for watchdog in self.watchdogs:
            watchdog.stop()

    def _watchdog(self, check_interval=3600, install_signal_handlers=False, **kwargs):
        watchdog = WatchdogService(
            self.security_service,
            self.cancellation,
            check_interval=check_interval,
            recheck_margin=0,
            install_signal_handlers=install_signal_handlers,
            **kwargs
        )
        self.watchdogs.append(watchdog)
        return watchdog

    def _wait_stopped(self, watchdog):
        watchdog._thread.join(timeout=5)
        self.assertFalse(watchdog._thread.is_alive())
        self.assertEqual(watchdog.state, WatchdogState.STOPPED)

    def test_start_and_stop(self):
        watchdog = self._watchdog()
        self.assertEqual(watchdog.state, WatchdogState.IDLE)

        watchdog.start()
        self.assertEqual(watchdog.state, WatchdogState.RUNNING)
        self.assertIsNotNone(watchdog.get_status()['next_check'])

        watchdog.stop()
        self._wait_stopped(watchdog)
        self.assertFalse(self.cancellation.is_set())

        # stop is idempotent
        watchdog.stop()

    def test_start_twice_raises(self):
        watchdog = self._watchdog()
        watchdog.start()

        with self.assertRaises(RuntimeError):
            watchdog.start()

        watchdog.stop()
        with self.assertRaises(RuntimeError):
            watchdog.start()

    def test_signal_during_wait_cancels_immediately(self):
        """Test that termination does not wait for the hour-long timer."""
        watchdog = self._watchdog(check_interval=3600)
        watchdog.start()

        watchdog.notify_signal(signal.SIGTERM)

        self.assertTrue(self.cancellation.wait(timeout=2))
        self.assertEqual(self.cancellation.source, CancellationSource.SIGNAL)
        self.assertEqual(self.cancellation.reason, "received SIGTERM")
        self._wait_stopped(watchdog)
        self.security_service.validate.assert_not_called()

    def test_timer_tick_cancels_on_invalid_certificates(self):
        self.security_service.validate.return_value = invalid_outcome()
        watchdog = self._watchdog(check_interval=1)
        watchdog.start()

        self.assertTrue(self.cancellation.wait(timeout=5))
        self.assertEqual(self.cancellation.source, CancellationSource.CERTIFICATE)
        self._wait_stopped(watchdog)
        self.assertEqual(self.security_service.validate.call_count, 1)

    def test_timer_keeps_running_while_valid(self):
        watchdog = self._watchdog(check_interval=1)
        watchdog.start()

        self.assertFalse(self.cancellation.wait(timeout=2.5))
        self.assertGreaterEqual(watchdog.tick_count, 2)
        self.assertEqual(watchdog.state, WatchdogState.RUNNING)

    def test_wall_clock_step_back_does_not_delay_checks(self):
        """Test that ticks keep their interval after the wall clock jumps back an hour."""
        watchdog = self._watchdog(check_interval=0.3)
        watchdog.start()

        with patch.object(schedule, 'datetime', stepped_back_datetime_module()):
            deadline = time.monotonic() + 5
            while self.security_service.validate.call_count < 2 and time.monotonic() < deadline:
                time.sleep(0.05)

        self.assertGreaterEqual(self.security_service.validate.call_count, 2)
        self.assertFalse(self.cancellation.is_set())
        self.assertEqual(watchdog.state, WatchdogState.RUNNING)

    def test_loop_failure_cancels(self):
        """Test that an error outside validation still shuts the server down."""
        clock = Mock(side_effect=OverflowError("date value out of range"))
        watchdog = self._watchdog(check_interval=0.2, clock=clock)

        with self.assertLogs('certwatch.services.watchdog_service', level='ERROR') as logs:
            watchdog.start()
            self.assertTrue(self.cancellation.wait(timeout=5))
            self._wait_stopped(watchdog)

        self.assertEqual(self.cancellation.source, CancellationSource.CERTIFICATE)
        self.assertIn("watchdog loop failed", self.cancellation.reason)
        self.assertIn("date value out of range", self.cancellation.reason)
        self.assertIn("Certificate watchdog loop failed", logs.output[0])
        self.security_service.validate.assert_not_called()

    def test_signal_shutdown_is_logged_with_context(self):
        logging_service = Mock()
        watchdog = self._watchdog(logging_service=logging_service)
        watchdog.start()

        watchdog.notify_signal(signal.SIGTERM)

        self._wait_stopped(watchdog)
        logging_service.log_with_context.assert_called_once_with(
            'warning',
            "Shutting down: received SIGTERM",
            logger_name='certwatch.services.watchdog_service',
            reason="received SIGTERM",
            source='signal'
        )

    def test_external_cancellation_stops_loop(self):
        watchdog = self._watchdog()
        watchdog.start()

        self.cancellation.fire("server asked to stop")

        self._wait_stopped(watchdog)

    def test_certificate_and_signal_fire_once(self):
        """Test that racing triggers fire the cancellation a single time."""
        self.security_service.validate.return_value = invalid_outcome()
        fired = []
        self.cancellation.add_callback(lambda: fired.append(1))
        watchdog = self._watchdog()
        watchdog.start()
        barrier = threading.Barrier(2)

        def tick():
            barrier.wait()
            watchdog.tick()

        def terminate():
            barrier.wait()
            watchdog.notify_signal(signal.SIGINT)

        threads = [threading.Thread(target=tick), threading.Thread(target=terminate)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self._wait_stopped(watchdog)
        self.assertEqual(len(fired), 1)
        self.assertIn(self.cancellation.source,
                      (CancellationSource.CERTIFICATE, CancellationSource.SIGNAL))

    @unittest.skipUnless(os.name == 'posix', "requires POSIX signals")
    def test_os_signal_is_handled(self):
        previous = signal.getsignal(signal.SIGTERM)
        watchdog = self._watchdog(install_signal_handlers=True)
        watchdog.start()
        self.assertIsNot(signal.getsignal(signal.SIGTERM), previous)

        os.kill(os.getpid(), signal.SIGTERM)

        self.assertTrue(self.cancellation.wait(timeout=5))
        self.assertEqual(self.cancellation.source, CancellationSource.SIGNAL)

        watchdog.stop()
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous)


if __name__ == '__main__':
    unittest.main()
