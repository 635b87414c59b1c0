from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.config import TP_AMB
from emissor_nfe.services.exceptions import ValidationError
from emissor_nfe.utils.certificate import CertificateBundle


@dataclass
class EmissionContext:
    """Session value passed explicitly into every core operation."""

    env: str = "homologacao"
    certificate: CertificateBundle | None = None
    id_lote: str = "1"

    def __post_init__(self) -> None:
        if self.env not in TP_AMB:
            raise ValidationError(f"Ambiente invalido: '{self.env}'", field="ambiente")

    @property
    def tp_amb(self) -> str:
        return TP_AMB[self.env]

    def require_certificate(self) -> CertificateBundle:
        if self.certificate is None:
            raise ValidationError("Certificado digital nao carregado", field="certificado")
        return self.certificate
