"""
Flask application and TLS server guarded by the certificate watchdog.
"""
from abc import ABC, abstractmethod
from flask import Flask, jsonify
from werkzeug.serving import make_server
import logging
import threading
from typing import Any, Callable, Dict, Optional
from datetime import datetime

from .security import SecurityService
from .services.cancellation import CancellationSignal
from .services.logging_service import LoggingService


class ServingComponent(ABC):
    """Anything that runs until a cancellation signal fires or it fails on its own."""

    @abstractmethod
    def run(self, cancellation: CancellationSignal) -> None:
        """
        Serve until ``cancellation`` fires.

        Returns normally after cancellation; raises on its own failure.
        """


class WebhookFlaskApp:
    """Flask application exposing health and certificate status."""

    def __init__(self, config, security_service: SecurityService,
                 status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
                 logging_service: Optional[LoggingService] = None):
        """Initialize the Flask application."""
        self.app = Flask(__name__)
        self.config = config
        self.security_service = security_service
        self.status_provider = status_provider
        self.logging_service = logging_service
        self.cancellation: Optional[CancellationSignal] = None
        self.logger = logging.getLogger(__name__)

        self._setup_routes()
        self._setup_error_handlers()
        self._setup_security_headers()

    def _setup_routes(self):
        """Set up API routes."""

        @self.app.route('/healthz', methods=['GET'])
        def health_check():
            """Liveness endpoint with watchdog status."""
            health_status = {
                'status': 'healthy',
                'service': 'certwatch',
                'timestamp': datetime.now().isoformat()
            }

            if self.status_provider:
                health_status['watchdog'] = self.status_provider()

            if self.logging_service:
                health_status['logging'] = self.logging_service.get_health_status()

            return jsonify(health_status)

        @self.app.route('/readyz', methods=['GET'])
        def readiness_check():
            """Readiness endpoint; fails once shutdown has been triggered."""
            if self.cancellation is not None and self.cancellation.is_set():
                return jsonify({
                    'status': 'shutting_down',
                    'reason': self.cancellation.reason
                }), 503
            return jsonify({'status': 'ready'})

        @self.app.route('/certs', methods=['GET'])
        def certificate_info():
            """Describe the certificate currently in the store."""
            try:
                info = self.security_service.get_certificate_info()
            except (OSError, ValueError) as e:
                self.logger.error(f"Error reading certificate: {str(e)}")
                return jsonify({'error': 'Failed to read certificate'}), 500

            return jsonify({
                'certificate': info.to_dict(),
                'cert_dir': self.config.cert_dir,
                'timestamp': datetime.now().isoformat()
            })

    def _setup_error_handlers(self):
        """Set up error handlers."""

        @self.app.errorhandler(404)
        def not_found(error):
            return jsonify({
                'error': 'Not found',
                'message': 'The requested endpoint does not exist'
            }), 404

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return jsonify({
                'error': 'Method not allowed',
                'message': 'The requested method is not allowed for this endpoint'
            }), 405

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.error(f"Internal server error: {error}")
            return jsonify({
                'error': 'Internal server error',
                'message': 'An unexpected error occurred'
            }), 500

    def _setup_security_headers(self):
        """Set up security headers for all responses."""

        @self.app.after_request
        def add_security_headers(response):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
            response.headers['X-Content-Type-Options'] = 'nosniff'
            response.headers['X-Frame-Options'] = 'DENY'
            response.headers['Cache-Control'] = 'no-store'
            return response

    def get_app(self) -> Flask:
        """Get the Flask application instance."""
        return self.app


class WebhookServer(ServingComponent):
    """Serves the Flask application over TLS until cancelled."""

    def __init__(self, config, security_service: SecurityService,
                 status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
                 logging_service: Optional[LoggingService] = None):
        self.config = config
        self.security_service = security_service
        self.flask_app = WebhookFlaskApp(config, security_service, status_provider, logging_service)
        self.logger = logging.getLogger(__name__)
        self.ready = threading.Event()
        self.port: Optional[int] = None
        self._server = None

    def run(self, cancellation: CancellationSignal) -> None:
        """Bind, serve and return once ``cancellation`` fires."""
        self.flask_app.cancellation = cancellation
        ssl_context = self.security_service.setup_tls_context()

        self._server = make_server(
            self.config.host,
            self.config.port,
            self.flask_app.get_app(),
            threaded=True,
            ssl_context=ssl_context
        )
        self.port = self._server.server_port

        waiter = threading.Thread(
            target=self._shutdown_on_cancel,
            args=(cancellation,),
            name="certwatch-server-shutdown",
            daemon=True
        )
        waiter.start()

        self.logger.info(f"Starting secure server on https://{self.config.host}:{self.port}")
        self.ready.set()
        try:
            self._server.serve_forever()
        finally:
            self._server.server_close()
            self.logger.info("Server stopped")

    def _shutdown_on_cancel(self, cancellation: CancellationSignal) -> None:
        cancellation.wait()
        self.logger.info(f"Stopping server: {cancellation.reason}")
        self._server.shutdown()
