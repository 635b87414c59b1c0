"""Tax inputs per line item, modeled per regime.

ICMS is either ``IcmsSimples`` (CSOSN, Simples Nacional) or ``IcmsNormal``
(CST, regime normal); each block only accepts the codes of its own regime.
``IcmsImportado`` holds any other official code read from third-party XML,
with the values the issuer computed; it is never emitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from emissor_nfe.services.exceptions import ValidationError

ZERO = Decimal("0.00")

CSOSN_COM_CREDITO = frozenset({"101"})
CSOSN_SEM_CREDITO = frozenset({"102", "103", "300", "400"})

CST_ICMS_TRIBUTADO = frozenset({"00", "20", "90"})
CST_ICMS_ISENTO = frozenset({"40", "41", "50"})

CSOSN_TABELA = frozenset({"101", "102", "103", "201", "202", "203", "300", "400", "500", "900"})
CST_ICMS_TABELA = frozenset({
    "00", "02", "10", "15", "20", "30", "40", "41", "50", "51", "53", "60", "61", "70", "90",
})

CST_PIS_COFINS_TRIBUTADO = frozenset({"01", "02"})
CST_PIS_COFINS_QUANTIDADE = frozenset({"03"})
CST_PIS_COFINS_NAO_TRIBUTADO = frozenset({
    "04", "05", "06", "07", "08", "09",
    "49", "50", "51", "52", "53", "54", "55", "56",
    "60", "61", "62", "63", "64", "65", "66", "67",
    "70", "71", "72", "73", "74", "75",
    "98", "99",
})

CST_IPI_TRIBUTADO = frozenset({"00", "49", "50", "99"})
CST_IPI_NAO_TRIBUTADO = frozenset({"01", "02", "03", "04", "05", "51", "52", "53", "54", "55"})
CST_IPI_PADRAO = "53"

ORIGENS = frozenset(str(i) for i in range(9))


def _dec(value: object) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


def _check_origem(origem: str) -> None:
    if origem not in ORIGENS:
        raise ValidationError(f"Origem da mercadoria invalida: '{origem}'", field="origem")


@dataclass(frozen=True)
class IcmsSimples:
    """ICMS for CRT 1 (Simples Nacional), selected by CSOSN."""

    csosn: str = "102"
    origem: str = "0"
    aliquota_credito: Decimal = ZERO  # pCredSN, only meaningful for CSOSN 101

    def __post_init__(self) -> None:
        if self.csosn not in CSOSN_COM_CREDITO | CSOSN_SEM_CREDITO:
            raise ValidationError(f"CSOSN nao suportado: '{self.csosn}'", field="csosn")
        _check_origem(self.origem)
        object.__setattr__(self, "aliquota_credito", _dec(self.aliquota_credito))

    @property
    def gera_credito(self) -> bool:
        return self.csosn in CSOSN_COM_CREDITO


@dataclass(frozen=True)
class IcmsNormal:
    """ICMS for CRT 2/3, selected by CST."""

    cst: str = "00"
    origem: str = "0"
    aliquota: Decimal = ZERO

    def __post_init__(self) -> None:
        if self.cst not in CST_ICMS_TRIBUTADO | CST_ICMS_ISENTO:
            raise ValidationError(f"CST de ICMS nao suportado: '{self.cst}'", field="cst")
        _check_origem(self.origem)
        object.__setattr__(self, "aliquota", _dec(self.aliquota))

    @property
    def tributado(self) -> bool:
        return self.cst in CST_ICMS_TRIBUTADO


@dataclass(frozen=True)
class IcmsImportado:
    """ICMS of an imported NF-e under a code this emitter does not compute.

    ``base`` and ``valor`` are the vBC/vICMS stated in the document and are
    kept as-is by recalculation.
    """

    codigo: str
    origem: str = "0"
    simples: bool = False
    aliquota: Decimal = ZERO
    base: Decimal = ZERO
    valor: Decimal = ZERO

    def __post_init__(self) -> None:
        tabela = CSOSN_TABELA if self.simples else CST_ICMS_TABELA
        if self.codigo not in tabela:
            field = "csosn" if self.simples else "cst"
            raise ValidationError(f"Codigo de ICMS desconhecido: '{self.codigo}'", field=field)
        _check_origem(self.origem)
        for name in ("aliquota", "base", "valor"):
            object.__setattr__(self, name, _dec(getattr(self, name)))


Icms = IcmsSimples | IcmsNormal | IcmsImportado


@dataclass(frozen=True)
class PisCofins:
    """PIS or COFINS block; same code table for both contributions.

    ``aliquota`` is a percentage, except for CST 03 where it is the amount
    in reais per unit sold (vAliqProd).
    """

    cst: str = "07"
    aliquota: Decimal = ZERO

    def __post_init__(self) -> None:
        known = CST_PIS_COFINS_TRIBUTADO | CST_PIS_COFINS_QUANTIDADE | CST_PIS_COFINS_NAO_TRIBUTADO
        if self.cst not in known:
            raise ValidationError(f"CST PIS/COFINS invalido: '{self.cst}'", field="cst")
        object.__setattr__(self, "aliquota", _dec(self.aliquota))

    @property
    def tributado(self) -> bool:
        return self.cst in CST_PIS_COFINS_TRIBUTADO

    @property
    def por_quantidade(self) -> bool:
        return self.cst in CST_PIS_COFINS_QUANTIDADE


@dataclass(frozen=True)
class Ipi:
    cst: str = CST_IPI_PADRAO
    aliquota: Decimal = ZERO
    enquadramento: str = "999"

    def __post_init__(self) -> None:
        if self.cst not in CST_IPI_TRIBUTADO | CST_IPI_NAO_TRIBUTADO:
            raise ValidationError(f"CST de IPI invalido: '{self.cst}'", field="cstIpi")
        object.__setattr__(self, "aliquota", _dec(self.aliquota))

    @property
    def tributado(self) -> bool:
        return self.cst in CST_IPI_TRIBUTADO


@dataclass(frozen=True)
class TaxDetails:
    """Computed bases and values for one line item."""

    base_icms: Decimal = ZERO
    valor_icms: Decimal = ZERO
    credito_icms_sn: Decimal = ZERO
    base_pis: Decimal = ZERO
    valor_pis: Decimal = ZERO
    base_cofins: Decimal = ZERO
    valor_cofins: Decimal = ZERO
    base_ipi: Decimal = ZERO
    valor_ipi: Decimal = ZERO
