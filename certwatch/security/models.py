"""
Security models for certificate store validation.
"""
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class CertificateStoreRef:
    """Location of the certificate, private key and CA bundle served by the process."""
    cert_dir: str
    cert_name: str = "tls.crt"
    key_name: str = "tls.key"
    ca_name: str = "ca.crt"

    def __post_init__(self):
        for field_name in ("cert_name", "key_name", "ca_name"):
            if not getattr(self, field_name):
                raise ValueError(f"{field_name} must not be empty")

    @property
    def cert_path(self) -> str:
        return os.path.join(self.cert_dir, self.cert_name)

    @property
    def key_path(self) -> str:
        return os.path.join(self.cert_dir, self.key_name)

    @property
    def ca_path(self) -> str:
        return os.path.join(self.cert_dir, self.ca_name)

    def files(self) -> List[Tuple[str, str]]:
        """Return (label, path) pairs in the order they are read."""
        return [
            ("certificate", self.cert_path),
            ("private key", self.key_path),
            ("CA bundle", self.ca_path),
        ]


class InvalidReason(Enum):
    """Why a certificate store was judged unusable."""
    FILE_UNREADABLE = "file_unreadable"
    UNPARSABLE = "unparsable"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED_BY_DEADLINE = "expired_by_deadline"
    CA_MISMATCH = "ca_mismatch"
    HOSTNAME_MISMATCH = "hostname_mismatch"
    KEY_MISMATCH = "key_mismatch"


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str
    dns_names: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'subject': self.subject,
            'issuer': self.issuer,
            'serial_number': self.serial_number,
            'not_before': self.not_before.isoformat(),
            'not_after': self.not_after.isoformat(),
            'fingerprint': self.fingerprint,
            'dns_names': list(self.dns_names),
        }


@dataclass
class ValidationOutcome:
    """Result of validating a certificate store against a deadline."""
    is_valid: bool
    reason: Optional[InvalidReason] = None
    message: str = ""
    file_name: Optional[str] = None
    certificate: Optional[CertificateInfo] = None

    @classmethod
    def valid(cls, certificate: Optional[CertificateInfo] = None) -> 'ValidationOutcome':
        """Create a successful validation outcome."""
        return cls(is_valid=True, message="certificates are valid", certificate=certificate)

    @classmethod
    def invalid(cls, reason: InvalidReason, message: str,
                file_name: Optional[str] = None,
                certificate: Optional[CertificateInfo] = None) -> 'ValidationOutcome':
        """Create a failed validation outcome."""
        return cls(
            is_valid=False,
            reason=reason,
            message=message,
            file_name=file_name,
            certificate=certificate
        )

    def __str__(self):
        if self.is_valid:
            return self.message
        return f"{self.reason.value}: {self.message}"
