"""
Logging and monitoring service for the certificate watchdog.
"""
import json
import logging
import logging.handlers
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict
from contextlib import contextmanager
import threading


CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    module: str
    function: str
    line_number: int
    thread_id: int
    process_id: int
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceMetric:
    """Performance metric data structure."""
    operation: str
    duration_ms: float
    timestamp: str
    success: bool
    error_message: Optional[str] = None


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            thread_id=record.thread,
            process_id=record.process,
            extra_data=getattr(record, 'extra_data', None)
        )

        if record.exc_info:
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)


class PerformanceMonitor:
    """Duration tracking for repeated operations such as certificate checks."""

    def __init__(self, max_metrics: int = 1000):
        self.metrics: List[PerformanceMetric] = []
        self.max_metrics = max_metrics
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def measure_operation(self, operation: str):
        """
        Context manager to measure operation performance.

        The yielded dict may be given a ``success`` key to record a failed
        outcome that did not raise.
        """
        start_time = time.monotonic()
        result = {'success': True, 'error_message': None}

        try:
            yield result
        except Exception as e:
            result['success'] = False
            result['error_message'] = str(e)
            raise
        finally:
            duration_ms = (time.monotonic() - start_time) * 1000

            metric = PerformanceMetric(
                operation=operation,
                duration_ms=duration_ms,
                timestamp=datetime.now().isoformat(),
                success=result['success'],
                error_message=result['error_message']
            )

            with self.lock:
                self.metrics.append(metric)
                del self.metrics[:-self.max_metrics]

            self.logger.debug(
                f"Performance metric: {operation}",
                extra={'extra_data': asdict(metric)}
            )

    def get_operation_stats(self, operation: str) -> Dict[str, Any]:
        """Get statistics for a specific operation."""
        with self.lock:
            metrics = [m for m in self.metrics if m.operation == operation]

        if not metrics:
            return {}

        durations = [m.duration_ms for m in metrics]
        success_count = sum(1 for m in metrics if m.success)

        return {
            'operation': operation,
            'total_calls': len(metrics),
            'success_count': success_count,
            'failure_count': len(metrics) - success_count,
            'avg_duration_ms': sum(durations) / len(durations),
            'max_duration_ms': max(durations),
            'last_run': metrics[-1].timestamp
        }


class LoggingService:
    """Sets up process logging from configuration."""

    def __init__(self, config):
        """Initialize logging service with configuration."""
        self.config = config
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.info("Logging service initialized")

    def _setup_logging(self):
        """Setup console and optional JSON file logging."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

        if self.config.log_file_path:
            Path(self.config.log_file_path).parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=self.config.log_file_path,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(JSONFormatter())
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)

        # werkzeug logs every request at INFO
        logging.getLogger('werkzeug').setLevel(max(log_level, logging.WARNING))

    def log_with_context(self, level: str, message: str, logger_name: str = 'certwatch', **context):
        """Log message with additional context data."""
        logger = logging.getLogger(logger_name)
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message, extra={'extra_data': context})

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall health status of the logging system."""
        root_logger = logging.getLogger()
        return {
            'status': 'healthy' if root_logger.handlers else 'unconfigured',
            'level': logging.getLevelName(root_logger.level),
            'log_file': self.config.log_file_path or None,
            'timestamp': datetime.now().isoformat()
        }
