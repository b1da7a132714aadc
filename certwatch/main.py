"""
Main application entry point for the certificate watchdog.
Validates certificates before serving, then serves until the watchdog cancels.
"""

import sys
import logging
import argparse
from datetime import datetime, timezone
from enum import IntEnum
from typing import Callable, Optional

from .app import ServingComponent, WebhookServer
from .models.config import Config
from .security import SecurityService, ValidationOutcome
from .services.cancellation import CancellationSignal
from .services.config_service import ConfigService
from .services.logging_service import LoggingService
from .services.watchdog_service import WatchdogService


class ExitCode(IntEnum):
    """Process exit statuses."""
    OK = 0
    FAILURE = 1


class StartupValidationError(Exception):
    """Raised when the certificates are already unusable at startup."""

    def __init__(self, outcome: ValidationOutcome):
        super().__init__(f"refusing to start: {outcome}")
        self.outcome = outcome


ServingFactory = Callable[
    [Config, SecurityService, WatchdogService, Optional[LoggingService]],
    ServingComponent
]


def create_webhook_server(config: Config, security_service: SecurityService,
                          watchdog: WatchdogService,
                          logging_service: Optional[LoggingService]) -> ServingComponent:
    """Default serving component: the TLS Flask server."""
    return WebhookServer(
        config,
        security_service,
        status_provider=watchdog.get_status,
        logging_service=logging_service
    )


class CertWatchApplication:
    """Bootstraps certificate validation, the watchdog and the serving component."""

    def __init__(self, config: Config,
                 serving_factory: Optional[ServingFactory] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 install_signal_handlers: bool = True,
                 configure_logging: bool = True):
        """
        Initialize the application.

        Args:
            config: Loaded configuration
            serving_factory: Builds the serving component (defaults to the TLS Flask server)
            clock: Returns the current UTC time (defaults to the system clock)
            install_signal_handlers: Let the watchdog handle SIGINT/SIGTERM
            configure_logging: Replace root logging handlers from the configuration
        """
        self.config = config
        self.serving_factory = serving_factory or create_webhook_server
        self.install_signal_handlers = install_signal_handlers
        self.configure_logging = configure_logging
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

        self.logging_service: Optional[LoggingService] = None
        self.security_service: Optional[SecurityService] = None
        self.startup_outcome: Optional[ValidationOutcome] = None
        self.cancellation: Optional[CancellationSignal] = None
        self.watchdog: Optional[WatchdogService] = None
        self.serving: Optional[ServingComponent] = None
        self._initialized = False

    def initialize(self) -> None:
        """
        Set up logging and run the startup certificate check.

        Raises:
            StartupValidationError: If the certificates are unusable within the startup margin
        """
        if self.configure_logging:
            self.logging_service = LoggingService(self.config)

        self.security_service = SecurityService(self.config)

        self.logger.info(f"Validating certificates in {self.config.cert_dir}")
        outcome = self.security_service.validate_for_startup(now=self._clock())
        self.startup_outcome = outcome

        if not outcome.is_valid:
            self.logger.error(f"Refusing to start: {outcome}")
            raise StartupValidationError(outcome)

        self.logger.info(f"Certificates are valid until {outcome.certificate.not_after.isoformat()}")
        self._initialized = True

    def run(self) -> ExitCode:
        """
        Start the watchdog and block in the serving component.

        Returns:
            ExitCode.OK after a cancellation-driven shutdown, ExitCode.FAILURE if
            the serving component failed or stopped on its own
        """
        if not self._initialized:
            raise RuntimeError("Application not initialized. Call initialize() first.")

        self.cancellation = CancellationSignal()
        self.watchdog = WatchdogService(
            self.security_service,
            self.cancellation,
            check_interval=self.config.check_interval_seconds,
            recheck_margin=self.config.recheck_margin_seconds,
            clock=self._clock,
            install_signal_handlers=self.install_signal_handlers,
            logging_service=self.logging_service
        )
        self.serving = self.serving_factory(
            self.config, self.security_service, self.watchdog, self.logging_service
        )

        self.watchdog.start()
        self.logger.info("Starting server")
        try:
            self.serving.run(self.cancellation)
        except Exception:
            self.logger.exception("Problem running server")
            return ExitCode.FAILURE
        finally:
            self.watchdog.stop()

        if not self.cancellation.is_set():
            self.logger.error("Server stopped without a shutdown request")
            return ExitCode.FAILURE

        self.logger.info(
            f"Shutdown complete ({self.cancellation.source.value}: {self.cancellation.reason})"
        )
        return ExitCode.OK

    def get_status(self) -> dict:
        """Get application status information."""
        status = {
            'initialized': self._initialized,
            'cert_dir': self.config.cert_dir,
            'startup_outcome': str(self.startup_outcome) if self.startup_outcome else None,
            'cancelled': self.cancellation.is_set() if self.cancellation else False,
        }

        if self.watchdog:
            status['watchdog'] = self.watchdog.get_status()

        return status


def build_parser() -> argparse.ArgumentParser:
    """Command line flags; every flag overrides the configuration file."""
    parser = argparse.ArgumentParser(
        description='Serve TLS and shut down before the served certificates become invalid'
    )
    parser.add_argument('--config', '-c', help='Configuration file path')
    parser.add_argument('--cert-dir', dest='cert_dir', help='Directory holding the certificates')
    parser.add_argument('--cert-name', dest='cert_name', help='Certificate file name (default: tls.crt)')
    parser.add_argument('--key-name', dest='key_name', help='Private key file name (default: tls.key)')
    parser.add_argument('--ca-name', dest='ca_name', help='CA bundle file name (default: ca.crt)')
    parser.add_argument('--dns-name', dest='dns_name', help='DNS name to validate certificates with')
    parser.add_argument('--check-interval', dest='check_interval_seconds',
                        help='Certificate check interval, e.g. 300 or 5m (default: 5m)')
    parser.add_argument('--startup-margin', dest='startup_margin_seconds',
                        help='Minimum remaining validity at startup (default: 1h)')
    parser.add_argument('--recheck-margin', dest='recheck_margin_seconds',
                        help='Extra lookahead added to each periodic check (default: 1m)')
    parser.add_argument('--host', help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, help='Port to bind to (default: 9443)')
    parser.add_argument('--loglevel', dest='log_level',
                        help='Log level: debug, info, warn, error, dpanic, panic, fatal (default: info)')
    parser.add_argument('--log-file', dest='log_file_path', help='Additional JSON log file')
    parser.add_argument('--check-config', action='store_true',
                        help='Validate configuration and certificates, then exit')
    parser.add_argument('--write-default-config', metavar='PATH',
                        help='Write an example configuration file and exit')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    config_service = ConfigService()

    if args.write_default_config:
        config_service.create_default_config_file(args.write_default_config)
        print(f"Configuration written to: {args.write_default_config}")
        sys.exit(ExitCode.OK)

    overrides = {
        name: getattr(args, name)
        for name in (
            'cert_dir', 'cert_name', 'key_name', 'ca_name', 'dns_name',
            'check_interval_seconds', 'startup_margin_seconds', 'recheck_margin_seconds',
            'host', 'port', 'log_level', 'log_file_path'
        )
    }

    try:
        config = config_service.load_config(args.config, **overrides)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(ExitCode.FAILURE)

    app = CertWatchApplication(config)

    try:
        app.initialize()
    except StartupValidationError:
        sys.exit(ExitCode.FAILURE)

    if args.check_config:
        print("Configuration check passed")
        print(f"Certificate directory: {config.cert_dir}")
        print(f"Certificates: {app.startup_outcome.certificate.subject}, "
              f"valid until {app.startup_outcome.certificate.not_after.isoformat()}")
        sys.exit(ExitCode.OK)

    sys.exit(app.run())


if __name__ == '__main__':
    main()
