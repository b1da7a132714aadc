"""
Security service for validating the served certificate store and building the TLS context.
"""
import ipaddress
import logging
import ssl
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization

from .models import CertificateInfo, CertificateStoreRef, InvalidReason, ValidationOutcome


logger = logging.getLogger(__name__)

DEFAULT_STARTUP_MARGIN = timedelta(hours=1)
DEFAULT_RECHECK_MARGIN = timedelta(minutes=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def startup_deadline(now: datetime, margin: timedelta = DEFAULT_STARTUP_MARGIN) -> datetime:
    """Deadline used by the one-off check before serving starts."""
    return now + margin


def recheck_deadline(now: datetime, interval: timedelta,
                     margin: timedelta = DEFAULT_RECHECK_MARGIN) -> datetime:
    """Deadline used by periodic checks: the next check must still have time to react."""
    return now + interval + margin


def validate_certificate_store(store: CertificateStoreRef,
                               deadline: datetime,
                               dns_name: Optional[str] = None,
                               verify_ca: bool = True,
                               now: Optional[datetime] = None) -> ValidationOutcome:
    """
    Decide whether the store's contents are usable through ``deadline``.

    Every call re-reads the files; nothing is cached.

    Args:
        store: Location of the certificate, key and CA bundle
        deadline: Point in time the leaf certificate must still be valid at
        dns_name: Name the leaf must cover (skipped when empty)
        verify_ca: Require the leaf to chain to the CA bundle
        now: Current time (defaults to the system clock)

    Returns:
        ValidationOutcome describing the first failed check, or a valid outcome
    """
    now = now or _utcnow()

    raw = {}
    for label, path in store.files():
        try:
            with open(path, 'rb') as f:
                raw[label] = f.read()
        except OSError as e:
            return ValidationOutcome.invalid(
                InvalidReason.FILE_UNREADABLE,
                f"{label} file missing or unreadable: {path} ({e.strerror or e})",
                file_name=path
            )

    try:
        chain = _load_certificates(raw["certificate"], store.cert_path)
        private_key = _load_private_key(raw["private key"], store.key_path)
        ca_certs = _load_certificates(raw["CA bundle"], store.ca_path)
    except _ParseError as e:
        return ValidationOutcome.invalid(InvalidReason.UNPARSABLE, str(e), file_name=e.path)

    leaf, intermediates = chain[0], chain[1:]
    info = _get_certificate_info(leaf)

    if now < info.not_before:
        return ValidationOutcome.invalid(
            InvalidReason.NOT_YET_VALID,
            f"certificate is not valid before {info.not_before.isoformat()}",
            file_name=store.cert_path,
            certificate=info
        )

    if info.not_after < deadline:
        return ValidationOutcome.invalid(
            InvalidReason.EXPIRED_BY_DEADLINE,
            f"certificate expires at {info.not_after.isoformat()}, "
            f"before deadline {deadline.isoformat()}",
            file_name=store.cert_path,
            certificate=info
        )

    if verify_ca:
        outcome = _verify_chain(leaf, intermediates, ca_certs, deadline, store, info)
        if outcome is not None:
            return outcome

    if dns_name and not _matches_hostname(info, leaf, dns_name):
        return ValidationOutcome.invalid(
            InvalidReason.HOSTNAME_MISMATCH,
            f"certificate is not valid for {dns_name} (names: {', '.join(info.dns_names) or 'none'})",
            file_name=store.cert_path,
            certificate=info
        )

    if _public_key_bytes(private_key.public_key()) != _public_key_bytes(leaf.public_key()):
        return ValidationOutcome.invalid(
            InvalidReason.KEY_MISMATCH,
            "private key does not match the certificate",
            file_name=store.key_path,
            certificate=info
        )

    return ValidationOutcome.valid(info)


class _ParseError(Exception):
    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path


def _load_certificates(data: bytes, path: str) -> List[x509.Certificate]:
    if not data.strip():
        raise _ParseError(path, f"Certificate file is empty: {path}")
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise _ParseError(path, f"Failed to parse certificate {path}: {e}")


def _load_private_key(data: bytes, path: str):
    if not data.strip():
        raise _ParseError(path, f"Private key file is empty: {path}")
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise _ParseError(path, f"Failed to parse private key {path}: {e}")


def _get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    """Extract information from a certificate."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        dns_names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        dns_names = []

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=str(cert.serial_number),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        dns_names=dns_names
    )


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False


def _verify_chain(leaf: x509.Certificate,
                  intermediates: Sequence[x509.Certificate],
                  ca_certs: Sequence[x509.Certificate],
                  deadline: datetime,
                  store: CertificateStoreRef,
                  info: CertificateInfo) -> Optional[ValidationOutcome]:
    """Walk from the leaf to a CA bundle entry; return an invalid outcome on failure."""
    current = leaf
    remaining = list(intermediates)

    while True:
        issuer = next((ca for ca in ca_certs if _issued_by(current, ca)), None)
        path = store.ca_path
        if issuer is None:
            issuer = next((c for c in remaining if _issued_by(current, c)), None)
            path = store.cert_path
        if issuer is None:
            return ValidationOutcome.invalid(
                InvalidReason.CA_MISMATCH,
                f"certificate issued by {current.issuer.rfc4514_string()} "
                f"is not signed by a CA in {store.ca_path}",
                file_name=store.ca_path,
                certificate=info
            )

        if issuer.not_valid_after_utc < deadline:
            return ValidationOutcome.invalid(
                InvalidReason.EXPIRED_BY_DEADLINE,
                f"issuer {issuer.subject.rfc4514_string()} expires at "
                f"{issuer.not_valid_after_utc.isoformat()}, before deadline {deadline.isoformat()}",
                file_name=path,
                certificate=info
            )

        if path == store.ca_path:
            return None

        remaining.remove(issuer)
        current = issuer


def _matches_hostname(info: CertificateInfo, cert: x509.Certificate, dns_name: str) -> bool:
    try:
        address = ipaddress.ip_address(dns_name)
    except ValueError:
        address = None

    if address is not None:
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return False
        return address in san.value.get_values_for_type(x509.IPAddress)

    host = dns_name.lower().rstrip('.')
    for pattern in info.dns_names:
        pattern = pattern.lower().rstrip('.')
        if pattern == host:
            return True
        # Wildcards cover exactly one left-most label
        if pattern.startswith('*.') and '.' in host:
            if host.split('.', 1)[1] == pattern[2:]:
                return True
    return False


def _public_key_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


class SecurityService:
    """Service for validating the served certificates and configuring TLS."""

    def __init__(self, config):
        """Initialize the security service with configuration."""
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.store = config.store

    def validate(self, deadline: datetime, now: Optional[datetime] = None) -> ValidationOutcome:
        """Validate the configured store against ``deadline``."""
        outcome = validate_certificate_store(
            self.store,
            deadline,
            dns_name=self.config.dns_name,
            verify_ca=self.config.verify_ca,
            now=now
        )
        self.logger.debug(f"Validated {self.store.cert_dir} against {deadline.isoformat()}: {outcome}")
        return outcome

    def validate_for_startup(self, now: Optional[datetime] = None) -> ValidationOutcome:
        """Validate with the near-term startup deadline."""
        now = now or _utcnow()
        margin = timedelta(seconds=self.config.startup_margin_seconds)
        return self.validate(startup_deadline(now, margin), now=now)

    def validate_for_recheck(self, now: Optional[datetime] = None) -> ValidationOutcome:
        """Validate with the periodic recheck deadline."""
        now = now or _utcnow()
        return self.validate(
            recheck_deadline(
                now,
                timedelta(seconds=self.config.check_interval_seconds),
                timedelta(seconds=self.config.recheck_margin_seconds)
            ),
            now=now
        )

    def get_certificate_info(self) -> CertificateInfo:
        """Get detailed information about the currently stored leaf certificate."""
        with open(self.store.cert_path, 'rb') as f:
            cert = x509.load_pem_x509_certificates(f.read())[0]
        return _get_certificate_info(cert)

    def setup_tls_context(self) -> ssl.SSLContext:
        """Create the server-side SSL context from the certificate store."""
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)

        context.load_cert_chain(
            certfile=self.store.cert_path,
            keyfile=self.store.key_path
        )

        # CA bundle is offered for optional client verification
        context.load_verify_locations(cafile=self.store.ca_path)
        context.verify_mode = ssl.CERT_OPTIONAL if self.config.client_cert_optional else ssl.CERT_NONE

        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.set_ciphers('ECDHE+AESGCM:ECDHE+CHACHA20:DHE+AESGCM:DHE+CHACHA20:!aNULL:!MD5:!DSS')

        self.logger.info("SSL context configured")
        return context
