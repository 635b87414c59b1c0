from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from emissor_nfe.models.entity import Entity
from emissor_nfe.models.tax import (
    ZERO,
    Icms,
    IcmsImportado,
    IcmsNormal,
    IcmsSimples,
    Ipi,
    PisCofins,
    TaxDetails,
)

SEM_GTIN = "SEM GTIN"


def _dec(value: object) -> Decimal:
    return Decimal(str(value)) if value not in (None, "") else ZERO


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    EDITING = "editing"
    SIGNING = "signing"
    TRANSMITTING = "transmitting"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    CANCELAMENTO = "cancelamento"
    CCE = "cce"

    @property
    def tp_evento(self) -> str:
        return {"cancelamento": "110111", "cce": "110110"}[self.value]


@dataclass(frozen=True)
class LineItem:
    codigo: str
    descricao: str
    ncm: str
    cfop: str
    unidade: str
    quantidade: Decimal
    valor_unitario: Decimal
    icms: Icms = field(default_factory=IcmsSimples)
    pis: PisCofins = field(default_factory=PisCofins)
    cofins: PisCofins = field(default_factory=PisCofins)
    ipi: Ipi | None = None
    gtin: str = SEM_GTIN
    valor_total: Decimal = ZERO  # computed by the tax engine
    tax: TaxDetails = field(default_factory=TaxDetails)  # computed by the tax engine
    id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantidade", _dec(self.quantidade))
        object.__setattr__(self, "valor_unitario", _dec(self.valor_unitario))
        object.__setattr__(self, "valor_total", _dec(self.valor_total))

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        """Build from the REST shape: product fields plus a flat ``tax`` dict."""
        t = d.get("tax", {})
        icms: Icms
        if t.get("icmsImportado"):
            icms = IcmsImportado(
                codigo=t.get("csosn") or t.get("cst") or "",
                origem=str(t.get("origem", "0")),
                simples=bool(t.get("csosn")),
                aliquota=_dec(t.get("aliquotaIcms")),
                base=_dec(t.get("baseCalculoIcms")),
                valor=_dec(t.get("valorIcms")),
            )
        elif t.get("csosn"):
            icms = IcmsSimples(
                csosn=t["csosn"],
                origem=str(t.get("origem", "0")),
                aliquota_credito=_dec(t.get("aliquotaIcms")),
            )
        else:
            icms = IcmsNormal(
                cst=t.get("cst") or "00",
                origem=str(t.get("origem", "0")),
                aliquota=_dec(t.get("aliquotaIcms")),
            )
        ipi = None
        if t.get("cstIpi"):
            ipi = Ipi(
                cst=t["cstIpi"],
                aliquota=_dec(t.get("aliquotaIpi")),
                enquadramento=t.get("codigoEnquadramento") or "999",
            )
        return cls(
            codigo=str(d["codigo"]),
            descricao=d["descricao"],
            ncm=str(d["ncm"]),
            cfop=str(d["cfop"]),
            unidade=d["unidade"],
            quantidade=_dec(d["quantidade"]),
            valor_unitario=_dec(d["valorUnitario"]),
            icms=icms,
            pis=PisCofins(cst=t.get("cstPis") or "07", aliquota=_dec(t.get("aliquotaPis"))),
            cofins=PisCofins(
                cst=t.get("cstCofins") or "07", aliquota=_dec(t.get("aliquotaCofins"))
            ),
            ipi=ipi,
            gtin=d.get("gtin") or SEM_GTIN,
            valor_total=_dec(d.get("valorTotal")),
            tax=TaxDetails(
                base_icms=_dec(t.get("baseCalculoIcms")),
                valor_icms=_dec(t.get("valorIcms")),
                credito_icms_sn=_dec(t.get("creditoIcmsSn")),
                base_pis=_dec(t.get("baseCalculoPis")),
                valor_pis=_dec(t.get("valorPis")),
                base_cofins=_dec(t.get("baseCalculoCofins")),
                valor_cofins=_dec(t.get("valorCofins")),
                base_ipi=_dec(t.get("baseCalculoIpi")),
                valor_ipi=_dec(t.get("valorIpi")),
            ),
            id=d.get("id"),
        )

    def to_dict(self) -> dict:
        tax: dict = {"origem": self.icms.origem}
        if isinstance(self.icms, IcmsImportado):
            tax["csosn" if self.icms.simples else "cst"] = self.icms.codigo
            tax["aliquotaIcms"] = float(self.icms.aliquota)
            tax["icmsImportado"] = True
        elif isinstance(self.icms, IcmsSimples):
            tax["csosn"] = self.icms.csosn
            tax["aliquotaIcms"] = float(self.icms.aliquota_credito)
        else:
            tax["cst"] = self.icms.cst
            tax["aliquotaIcms"] = float(self.icms.aliquota)
        tax.update(
            baseCalculoIcms=float(self.tax.base_icms),
            valorIcms=float(self.tax.valor_icms),
            creditoIcmsSn=float(self.tax.credito_icms_sn),
            cstPis=self.pis.cst,
            baseCalculoPis=float(self.tax.base_pis),
            aliquotaPis=float(self.pis.aliquota),
            valorPis=float(self.tax.valor_pis),
            cstCofins=self.cofins.cst,
            baseCalculoCofins=float(self.tax.base_cofins),
            aliquotaCofins=float(self.cofins.aliquota),
            valorCofins=float(self.tax.valor_cofins),
        )
        if self.ipi is not None:
            tax.update(
                cstIpi=self.ipi.cst,
                baseCalculoIpi=float(self.tax.base_ipi),
                aliquotaIpi=float(self.ipi.aliquota),
                valorIpi=float(self.tax.valor_ipi),
                codigoEnquadramento=self.ipi.enquadramento,
            )
        data = {
            "codigo": self.codigo,
            "gtin": self.gtin,
            "descricao": self.descricao,
            "ncm": self.ncm,
            "cfop": self.cfop,
            "unidade": self.unidade,
            "quantidade": float(self.quantidade),
            "valorUnitario": float(self.valor_unitario),
            "valorTotal": float(self.valor_total),
            "tax": tax,
        }
        if self.id:
            data["id"] = self.id
        return data


@dataclass(frozen=True)
class GlobalValues:
    """Invoice-level adjustments, not distributed over the items."""

    frete: Decimal = ZERO
    seguro: Decimal = ZERO
    desconto: Decimal = ZERO
    outras_despesas: Decimal = ZERO
    modalidade_frete: str = "9"  # 0=emitente, 1=destinatario, 9=sem frete

    def __post_init__(self) -> None:
        for name in ("frete", "seguro", "desconto", "outras_despesas"):
            object.__setattr__(self, name, _dec(getattr(self, name)))

    @classmethod
    def from_dict(cls, d: dict) -> GlobalValues:
        return cls(
            frete=_dec(d.get("frete")),
            seguro=_dec(d.get("seguro")),
            desconto=_dec(d.get("desconto")),
            outras_despesas=_dec(d.get("outrasDespesas")),
            modalidade_frete=str(d.get("modalidadeFrete", "9")),
        )

    def to_dict(self) -> dict:
        return {
            "frete": float(self.frete),
            "seguro": float(self.seguro),
            "desconto": float(self.desconto),
            "outrasDespesas": float(self.outras_despesas),
            "modalidadeFrete": self.modalidade_frete,
        }


_TOTALS_KEYS = {
    "v_bc": "vBC",
    "v_icms": "vICMS",
    "v_prod": "vProd",
    "v_frete": "vFrete",
    "v_seg": "vSeg",
    "v_desc": "vDesc",
    "v_ipi": "vIPI",
    "v_pis": "vPIS",
    "v_cofins": "vCOFINS",
    "v_outro": "vOutro",
    "v_nf": "vNF",
}


@dataclass(frozen=True)
class InvoiceTotals:
    v_bc: Decimal = ZERO
    v_icms: Decimal = ZERO
    v_prod: Decimal = ZERO
    v_frete: Decimal = ZERO
    v_seg: Decimal = ZERO
    v_desc: Decimal = ZERO
    v_ipi: Decimal = ZERO
    v_pis: Decimal = ZERO
    v_cofins: Decimal = ZERO
    v_outro: Decimal = ZERO
    v_nf: Decimal = ZERO

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceTotals:
        return cls(**{attr: _dec(d.get(key)) for attr, key in _TOTALS_KEYS.items()})

    def to_dict(self) -> dict:
        return {key: float(getattr(self, attr)) for attr, key in _TOTALS_KEYS.items()}


@dataclass(frozen=True)
class Payment:
    t_pag: str  # 01=dinheiro, 03=cartao de credito, 17=PIX, 90=sem pagamento
    v_pag: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "v_pag", _dec(self.v_pag))

    @classmethod
    def from_dict(cls, d: dict) -> Payment:
        return cls(t_pag=str(d["tPag"]).zfill(2), v_pag=_dec(d["vPag"]))

    def to_dict(self) -> dict:
        return {"tPag": self.t_pag, "vPag": float(self.v_pag)}


@dataclass(frozen=True)
class InvoiceEvent:
    tipo: EventType
    data: str  # ISO datetime with timezone
    detalhe: str
    protocolo: str
    sequencia: int = 1
    xml: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceEvent:
        return cls(
            tipo=EventType(d["tipo"]),
            data=d["data"],
            detalhe=d.get("detalhe", ""),
            protocolo=d.get("protocolo", ""),
            sequencia=int(d.get("sequencia", 1)),
            xml=d.get("xml"),
        )

    def to_dict(self) -> dict:
        data = {
            "tipo": self.tipo.value,
            "data": self.data,
            "detalhe": self.detalhe,
            "protocolo": self.protocolo,
            "sequencia": self.sequencia,
        }
        if self.xml:
            data["xml"] = self.xml
        return data


@dataclass
class InvoiceData:
    """Aggregate root of an NF-e, from draft to authorization and events.

    Status changes go through ``services.lifecycle``; totals through
    ``services.tax_engine``.
    """

    numero: str
    serie: str
    emitente: Entity
    destinatario: Entity
    produtos: list[LineItem] = field(default_factory=list)
    data_emissao: str = ""  # ISO datetime with timezone, e.g. 2025-01-15T10:00:00-03:00
    natureza_operacao: str = "VENDA DE MERCADORIA"
    global_values: GlobalValues = field(default_factory=GlobalValues)
    totais: InvoiceTotals = field(default_factory=InvoiceTotals)
    pagamento: list[Payment] = field(default_factory=list)
    informacoes_complementares: str = ""
    finalidade: str = "1"  # 1=normal, 2=complementar, 3=ajuste, 4=devolucao
    ref_nfe: str | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    chave_acesso: str | None = None
    xml_assinado: str | None = None
    protocolo: str | None = None
    motivo_rejeicao: str | None = None
    historico_eventos: list[InvoiceEvent] = field(default_factory=list)
    id: str | None = None

    @property
    def key(self) -> str | None:
        """Identity used by stores: the access key once generated, else the id."""
        return self.chave_acesso or self.id

    def events_of(self, tipo: EventType) -> list[InvoiceEvent]:
        return [e for e in self.historico_eventos if e.tipo is tipo]

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceData:
        """Build from the REST backend shape (camelCase keys)."""
        return cls(
            numero=str(d["numero"]),
            serie=str(d["serie"]),
            emitente=Entity.from_dict(d["emitente"]),
            destinatario=Entity.from_dict(d["destinatario"]),
            produtos=[LineItem.from_dict(p) for p in d.get("produtos", [])],
            data_emissao=d.get("dataEmissao", ""),
            natureza_operacao=d.get("naturezaOperacao", "VENDA DE MERCADORIA"),
            global_values=GlobalValues.from_dict(d.get("globalValues", {})),
            totais=InvoiceTotals.from_dict(d.get("totais", {})),
            pagamento=[Payment.from_dict(p) for p in d.get("pagamento", [])],
            informacoes_complementares=d.get("informacoesComplementares", ""),
            finalidade=str(d.get("finalidade", "1")),
            ref_nfe=d.get("refNFe"),
            status=InvoiceStatus(d.get("status", "draft")),
            chave_acesso=d.get("chaveAcesso"),
            xml_assinado=d.get("xmlAssinado"),
            protocolo=d.get("protocolo"),
            motivo_rejeicao=d.get("motivoRejeicao"),
            historico_eventos=[InvoiceEvent.from_dict(e) for e in d.get("historicoEventos", [])],
            id=d.get("id"),
        )

    def to_dict(self) -> dict:
        optional = {
            "id": self.id,
            "refNFe": self.ref_nfe,
            "chaveAcesso": self.chave_acesso,
            "xmlAssinado": self.xml_assinado,
            "protocolo": self.protocolo,
            "motivoRejeicao": self.motivo_rejeicao,
        }
        return {
            "numero": self.numero,
            "serie": self.serie,
            "dataEmissao": self.data_emissao,
            "naturezaOperacao": self.natureza_operacao,
            "emitente": self.emitente.to_dict(),
            "destinatario": self.destinatario.to_dict(),
            "produtos": [p.to_dict() for p in self.produtos],
            "globalValues": self.global_values.to_dict(),
            "totais": self.totais.to_dict(),
            "pagamento": [p.to_dict() for p in self.pagamento],
            "informacoesComplementares": self.informacoes_complementares,
            "finalidade": self.finalidade,
            "status": self.status.value,
            "historicoEventos": [e.to_dict() for e in self.historico_eventos],
            **{k: v for k, v in optional.items() if v is not None},
        }
