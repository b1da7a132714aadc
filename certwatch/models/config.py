"""
Configuration data models for the certificate watchdog.
"""
from dataclasses import dataclass
from typing import Optional

from ..security.models import CertificateStoreRef


LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Accepted spellings that are not stdlib level names
LOG_LEVEL_ALIASES = {
    "WARN": "WARNING",
    "FATAL": "CRITICAL",
    "DPANIC": "CRITICAL",
    "PANIC": "CRITICAL",
}


def normalize_log_level(value: str) -> str:
    """Map a user supplied level (any case, ``warn``) to a logging level name."""
    level = str(value).strip().upper()
    return LOG_LEVEL_ALIASES.get(level, level)


@dataclass
class Config:
    """Main configuration class containing all watchdog settings."""

    # Certificate store
    cert_dir: str = "/tmp/k8s-webhook-server/serving-certs"
    cert_name: str = "tls.crt"
    key_name: str = "tls.key"
    ca_name: str = "ca.crt"
    dns_name: Optional[str] = "localhost"
    verify_ca: bool = True

    # Watchdog settings
    check_interval_seconds: float = 300
    startup_margin_seconds: float = 3600
    recheck_margin_seconds: float = 60

    # Server settings
    host: str = "0.0.0.0"
    port: int = 9443
    client_cert_optional: bool = False

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = ""

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.log_level = normalize_log_level(self.log_level)
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        if not self.cert_dir:
            raise ValueError("cert_dir must not be empty")

        for name in ("cert_name", "key_name", "ca_name"):
            if not getattr(self, name):
                raise ValueError(f"{name} must not be empty")

        if not isinstance(self.check_interval_seconds, (int, float)) or self.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be a positive number")

        if not isinstance(self.startup_margin_seconds, (int, float)) or self.startup_margin_seconds < 0:
            raise ValueError("startup_margin_seconds must be a non-negative number")

        if not isinstance(self.recheck_margin_seconds, (int, float)) or self.recheck_margin_seconds < 0:
            raise ValueError("recheck_margin_seconds must be a non-negative number")

        if not isinstance(self.port, int) or not (0 <= self.port <= 65535):
            raise ValueError("port must be an integer between 0 and 65535")

        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    @property
    def store(self) -> CertificateStoreRef:
        return CertificateStoreRef(
            cert_dir=self.cert_dir,
            cert_name=self.cert_name,
            key_name=self.key_name,
            ca_name=self.ca_name
        )


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: list[ConfigValidationError]
    warnings: list[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
