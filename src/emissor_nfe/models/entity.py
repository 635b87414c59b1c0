from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Crt(str, Enum):
    """Codigo de Regime Tributario of the issuing company."""

    SIMPLES = "1"
    SIMPLES_EXCESSO = "2"
    NORMAL = "3"

    @property
    def is_simples(self) -> bool:
        # CRT 2 is computed like the normal regime for ICMS
        return self is Crt.SIMPLES


@dataclass(frozen=True)
class Address:
    logradouro: str
    numero: str
    bairro: str
    municipio: str
    codigo_ibge: str  # 7-digit IBGE municipality code
    uf: str
    cep: str

    @classmethod
    def from_dict(cls, d: dict) -> Address:
        return cls(
            logradouro=d["logradouro"],
            numero=str(d.get("numero", "S/N")),
            bairro=d["bairro"],
            municipio=d["municipio"],
            codigo_ibge=str(d["codigoIbge"] if "codigoIbge" in d else d["codigo_ibge"]),
            uf=d["uf"].upper(),
            cep=str(d["cep"]),
        )

    def to_dict(self) -> dict:
        return {
            "logradouro": self.logradouro,
            "numero": self.numero,
            "bairro": self.bairro,
            "municipio": self.municipio,
            "codigoIbge": self.codigo_ibge,
            "uf": self.uf,
            "cep": self.cep,
        }


@dataclass(frozen=True)
class Entity:
    """Emitter or recipient of an NF-e."""

    cnpj: str  # CNPJ (14) or, for recipients, CPF (11)
    razao_social: str
    inscricao_estadual: str
    endereco: Address
    crt: Crt = Crt.SIMPLES
    email: str | None = None
    id: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Entity:
        """Create an Entity from a YAML or REST dict (snake_case or camelCase keys)."""
        return cls(
            cnpj=str(d["cnpj"]),
            razao_social=d["razaoSocial"] if "razaoSocial" in d else d["razao_social"],
            inscricao_estadual=str(
                d.get("inscricaoEstadual", d.get("inscricao_estadual", "")) or ""
            ),
            endereco=Address.from_dict(d["endereco"]),
            crt=Crt(str(d.get("crt", "1"))),
            email=d.get("email"),
            id=d.get("id"),
        )

    def to_dict(self) -> dict:
        data = {
            "cnpj": self.cnpj,
            "razaoSocial": self.razao_social,
            "inscricaoEstadual": self.inscricao_estadual,
            "endereco": self.endereco.to_dict(),
            "crt": self.crt.value,
        }
        if self.email:
            data["email"] = self.email
        if self.id:
            data["id"] = self.id
        return data
