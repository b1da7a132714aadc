"""
Security package for certificate store validation.
"""
from .models import CertificateStoreRef, CertificateInfo, InvalidReason, ValidationOutcome
from .security_service import (
    SecurityService,
    recheck_deadline,
    startup_deadline,
    validate_certificate_store,
)

__all__ = [
    'CertificateStoreRef',
    'CertificateInfo',
    'InvalidReason',
    'ValidationOutcome',
    'SecurityService',
    'recheck_deadline',
    'startup_deadline',
    'validate_certificate_store'
]
