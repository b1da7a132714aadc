"""
Configuration service for loading and validating watchdog settings.
"""
import math
import os
import re
import configparser
from typing import Optional, Dict, Any
import logging

from ..models.config import Config, ConfigValidationError, ConfigValidationResult


_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as
    ``90s``, ``5m``, ``1h30m`` or ``250ms``.

    Raises:
        ValueError: If the value is not a valid duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ValueError("Invalid duration: empty value")

    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            raise ValueError(f"Invalid duration: {value!r}")
        return seconds

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


class ConfigService:
    """Service for loading and validating watchdog configuration."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def load_config(self, config_path: Optional[str] = None, **overrides) -> Config:
        """
        Load configuration from a property file and apply overrides.

        Args:
            config_path: Path to the configuration file (defaults only when None)
            **overrides: Config field values that take precedence over the file,
                typically command line flags; None values are ignored

        Returns:
            Config object with loaded settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        config_data = {}
        if config_path is not None:
            if not os.path.exists(config_path):
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            config_data = self._load_config_file(config_path)

        config_kwargs = self._create_config_kwargs(config_data)
        config_kwargs.update(self._convert_overrides(overrides))
        config = Config(**config_kwargs)

        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser()

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Convert to flat dictionary
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        for key, value in config_parser.defaults().items():
            config_data.setdefault(key, value)

        return config_data

    _CONFIG_MAPPING = {
        # Certificate store
        "certs.dir": ("cert_dir", str),
        "certs.cert_name": ("cert_name", str),
        "certs.key_name": ("key_name", str),
        "certs.ca_name": ("ca_name", str),
        "certs.dns_name": ("dns_name", str),
        "certs.verify_ca": ("verify_ca", bool),

        # Watchdog settings
        "watchdog.check_interval": ("check_interval_seconds", "duration"),
        "watchdog.startup_margin": ("startup_margin_seconds", "duration"),
        "watchdog.recheck_margin": ("recheck_margin_seconds", "duration"),

        # Server settings
        "server.host": ("host", str),
        "server.port": ("port", int),
        "server.client_cert_optional": ("client_cert_optional", bool),

        # Application settings
        "app.log_level": ("log_level", str),
        "app.log_file_path": ("log_file_path", str),
    }

    def _create_config_kwargs(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Map configuration file keys to Config fields."""
        field_types = {name: kind for name, kind in self._CONFIG_MAPPING.values()}
        # Unprefixed keys are accepted for every field name
        mapping = dict(self._CONFIG_MAPPING)
        mapping.update({name: (name, kind) for name, kind in field_types.items()})

        config_kwargs = {}
        for config_key, raw_value in config_data.items():
            if config_key not in mapping:
                self.logger.debug(f"Ignoring unknown configuration key: {config_key}")
                continue
            field_name, field_type = mapping[config_key]
            try:
                config_kwargs[field_name] = self._convert_value(raw_value, field_type)
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")

        return config_kwargs

    def _convert_overrides(self, overrides: Dict[str, Any]) -> Dict[str, Any]:
        field_types = {name: kind for name, kind in self._CONFIG_MAPPING.values()}
        converted = {}
        for name, value in overrides.items():
            if value is None:
                continue
            if name not in field_types:
                raise ValueError(f"Unknown configuration field: {name}")
            try:
                converted[name] = self._convert_value(value, field_types[name])
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid value for {name}: {value} ({e})")
        return converted

    def _convert_value(self, raw_value: Any, field_type: Any) -> Any:
        if field_type == bool:
            return self._parse_bool(raw_value)
        if field_type == int:
            return int(raw_value)
        if field_type == "duration":
            return parse_duration(raw_value)
        return str(raw_value) if raw_value is not None else None

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def validate_config(self, config: Config) -> ConfigValidationResult:
        """
        Validate configuration settings.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        if not os.path.isdir(config.cert_dir):
            warnings.append(ConfigValidationError(
                "cert_dir",
                f"Certificate directory does not exist: {config.cert_dir}",
                "warning"
            ))

        for field_name in ("cert_name", "key_name", "ca_name"):
            value = getattr(config, field_name)
            if os.path.basename(value) != value:
                errors.append(ConfigValidationError(
                    field_name,
                    f"{field_name} must be a file name inside cert_dir, got: {value}"
                ))

        if config.check_interval_seconds >= config.startup_margin_seconds:
            warnings.append(ConfigValidationError(
                "check_interval_seconds",
                "Check interval is not shorter than the startup margin; certificates "
                "accepted at startup may expire before the first periodic check",
                "warning"
            ))

        if config.recheck_margin_seconds == 0:
            warnings.append(ConfigValidationError(
                "recheck_margin_seconds",
                "A zero recheck margin leaves no time to restart before expiry",
                "warning"
            ))

        if not config.dns_name:
            warnings.append(ConfigValidationError(
                "dns_name",
                "No DNS name configured; certificate host names will not be checked",
                "warning"
            ))

        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# Certificate watchdog configuration file

[certs]
dir = /tmp/k8s-webhook-server/serving-certs
cert_name = tls.crt
key_name = tls.key
ca_name = ca.crt
# Name the served certificate must cover; leave empty to skip the check
dns_name = localhost
verify_ca = true

[watchdog]
# Durations accept seconds or 90s / 5m / 1h30m
check_interval = 5m
startup_margin = 1h
recheck_margin = 1m

[server]
host = 0.0.0.0
port = 9443
client_cert_optional = false

[app]
log_level = INFO
log_file_path =
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)

        self.logger.info(f"Created default configuration file: {config_path}")
