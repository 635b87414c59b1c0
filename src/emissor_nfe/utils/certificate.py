from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate

from emissor_nfe.services.exceptions import CertificateError


@dataclass(frozen=True, repr=False)
class CertificateBundle:
    """Key material extracted from a PKCS#12 bundle. Never written to disk."""

    key_pem: bytes
    cert_pem: bytes
    certificate: Certificate
    chain: list[Certificate] = field(default_factory=list)
    pfx_data: bytes = b""
    password: str = ""

    def __repr__(self) -> str:
        return f"CertificateBundle(subject={self.certificate.subject.rfc4514_string()!r})"


def load_certificate(pfx_data: bytes, password: str) -> CertificateBundle:
    """Extract private key and certificate chain from raw PKCS#12 bytes.

    Raises CertificateError on a wrong passphrase, a corrupt bundle, or a
    bundle without key or certificate.
    """
    if not pfx_data:
        raise CertificateError("Certificado digital nao informado")
    try:
        private_key, certificate, chain = pkcs12.load_key_and_certificates(
            pfx_data, password.encode()
        )
    except ValueError as exc:
        raise CertificateError(f"Certificado invalido ou senha incorreta: {exc}") from exc

    if private_key is None or certificate is None:
        raise CertificateError("Certificate or private key not found in .pfx file")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    return CertificateBundle(
        key_pem=key_pem,
        cert_pem=certificate.public_bytes(Encoding.PEM),
        certificate=certificate,
        chain=list(chain) if chain else [],
        pfx_data=pfx_data,
        password=password,
    )


@contextmanager
def certificate_session(pfx_data: bytes, password: str) -> Iterator[CertificateBundle]:
    """Derive the bundle for one signing/transmission operation only."""
    yield load_certificate(pfx_data, password)


def certificate_info(bundle: CertificateBundle) -> dict:
    """Return subject, issuer, validity window and serial of the bundle's certificate."""
    from datetime import UTC, datetime

    cert = bundle.certificate
    now = datetime.now(UTC)
    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "valid": cert.not_valid_before_utc <= now <= cert.not_valid_after_utc,
        "serial": cert.serial_number,
    }
