# uasession/security/__init__.py
"""
Security and observability components.

Modules:
- logging_system: Structured session logging with audit trail
- certificates: Server certificate inspection
"""

from uasession.security.certificates import CertificateInfo, CertificateValidationRequest
from uasession.security.logging_system import (
    EventCategory,
    EventSeverity,
    SessionLogger,
    configure_logging,
    get_logger,
)

__all__ = [
    # Logging
    "SessionLogger",
    "EventSeverity",
    "EventCategory",
    "get_logger",
    "configure_logging",
    # Certificates
    "CertificateInfo",
    "CertificateValidationRequest",
]
