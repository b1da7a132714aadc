"""
Services package for the certificate watchdog.
"""

from .cancellation import CancellationSignal, CancellationSource
from .config_service import ConfigService, parse_duration
from .logging_service import LoggingService
from .watchdog_service import WatchdogService, WatchdogState

__all__ = [
    'CancellationSignal',
    'CancellationSource',
    'ConfigService',
    'parse_duration',
    'LoggingService',
    'WatchdogService',
    'WatchdogState'
]
