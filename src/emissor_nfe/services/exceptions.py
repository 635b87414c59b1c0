from __future__ import annotations

from typing import Any


class NFeError(Exception):
    """Base class for every error raised by the NFe core."""


class ValidationError(NFeError, ValueError):
    """Input rejected before any crypto or network step.

    ``field`` names the offending field (e.g. ``emitente.cnpj``).
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidTransitionError(ValidationError):
    """The requested status change is not allowed from the current status."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Transicao de '{current}' para '{requested}' nao permitida",
            field="status",
        )
        self.current = current
        self.requested = requested


class CertificateError(NFeError):
    """Certificate missing, wrong passphrase, or corrupt PKCS#12 bundle."""


class TransmissionError(NFeError):
    """Transport-level failure talking to SEFAZ.

    The invoice keeps its signed XML and access key so the caller can
    resubmit without re-signing.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableTransmissionError(TransmissionError):
    """Failure where the request certainly did not reach SEFAZ, or SEFAZ was unavailable."""


class SefazRejectError(NFeError):
    """SEFAZ answered, but with a rejection status code."""

    def __init__(
        self,
        message: str,
        c_stat: str | None = None,
        x_motivo: str | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.c_stat = c_stat
        self.x_motivo = x_motivo
        self.response = response


class XmlImportError(NFeError):
    """XML could not be imported; nothing was applied."""
