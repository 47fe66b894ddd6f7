# uasession/security/certificates.py
"""
Server certificate inspection for the certificate validation hook.

The engine hands over the server's DER-encoded certificate when it cannot be
validated against the trust list. It is parsed here into a CertificateInfo
and wrapped in a CertificateValidationRequest that observers may accept.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes

__all__ = ["CertificateInfo", "CertificateValidationRequest"]


@dataclass
class CertificateInfo:
    """X.509 certificate information."""

    subject: str
    issuer: str
    serial_number: int
    not_valid_before: datetime
    not_valid_after: datetime
    public_key_algorithm: str
    signature_algorithm: str
    fingerprint_sha256: str

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "CertificateInfo":
        """Create from cryptography X.509 certificate."""
        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=cert.serial_number,
            not_valid_before=cert.not_valid_before_utc,
            not_valid_after=cert.not_valid_after_utc,
            public_key_algorithm=cert.public_key().__class__.__name__,
            signature_algorithm=cert.signature_algorithm_oid._name,
            fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
        )

    @classmethod
    def from_der(cls, der: bytes) -> "CertificateInfo":
        """Create from DER bytes as delivered by the server."""
        return cls.from_x509(x509.load_der_x509_certificate(der))

    @property
    def self_signed(self) -> bool:
        return self.subject == self.issuer

    def is_valid_at(self, when: datetime | None = None) -> bool:
        """True if ``when`` (default: now) lies inside the validity period."""
        when = when or datetime.now(UTC)
        return self.not_valid_before <= when <= self.not_valid_after


@dataclass
class CertificateValidationRequest:
    """
    A server certificate awaiting an accept/reject decision.

    Observers of ``certificate_validation`` set ``accept`` to True to trust
    the certificate for this session. The initial value comes from the
    ``security.auto_accept_untrusted`` setting.
    """

    der: bytes
    info: CertificateInfo | None
    accept: bool = False
