"""Rebuild an InvoiceData from NF-e XML (nfeProc, bare NFe or enviNFe).

Namespaces are stripped before traversal, so documents from any issuer
or authorizer are read the same way.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from lxml import etree

from emissor_nfe.models.entity import Address, Crt, Entity
from emissor_nfe.models.invoice import (
    SEM_GTIN,
    GlobalValues,
    InvoiceData,
    InvoiceStatus,
    InvoiceTotals,
    LineItem,
    Payment,
)
from emissor_nfe.models.tax import (
    CSOSN_COM_CREDITO,
    CSOSN_SEM_CREDITO,
    CST_ICMS_ISENTO,
    CST_ICMS_TRIBUTADO,
    ZERO,
    Icms,
    IcmsImportado,
    IcmsNormal,
    IcmsSimples,
    Ipi,
    PisCofins,
    TaxDetails,
)
from emissor_nfe.services.exceptions import XmlImportError
from emissor_nfe.utils.formatters import only_digits

logger = logging.getLogger(__name__)

_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_blank_text=True,
    remove_comments=True,
    remove_pis=True,
)

STATUS_BY_CSTAT = {
    "100": InvoiceStatus.AUTHORIZED,
    "150": InvoiceStatus.AUTHORIZED,
    "101": InvoiceStatus.CANCELLED,
    "151": InvoiceStatus.CANCELLED,
}


def _strip_namespaces(root: etree._Element) -> etree._Element:
    for el in root.iter():
        if isinstance(el.tag, str):
            el.tag = etree.QName(el).localname
    etree.cleanup_namespaces(root)
    return root


def _text(parent: etree._Element | None, path: str, default: str = "") -> str:
    if parent is None:
        return default
    value = parent.findtext(path)
    return value.strip() if value is not None else default


def _dec(parent: etree._Element | None, path: str) -> Decimal:
    raw = _text(parent, path)
    if not raw:
        return ZERO
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise XmlImportError(f"Valor numerico invalido em {path}: '{raw}'") from None
    if not value.is_finite():
        raise XmlImportError(f"Valor numerico invalido em {path}: '{raw}'")
    return value


def _first_child(parent: etree._Element | None, tag: str) -> etree._Element | None:
    group = parent.find(tag) if parent is not None else None
    if group is None or len(group) == 0:
        return None
    return group[0]


def _entity(el: etree._Element | None, ender_tag: str, default_crt: str) -> Entity:
    ender = el.find(ender_tag) if el is not None else None
    return Entity(
        cnpj=_text(el, "CNPJ") or _text(el, "CPF"),
        razao_social=_text(el, "xNome"),
        inscricao_estadual=_text(el, "IE"),
        endereco=Address(
            logradouro=_text(ender, "xLgr"),
            numero=_text(ender, "nro"),
            bairro=_text(ender, "xBairro"),
            municipio=_text(ender, "xMun"),
            codigo_ibge=_text(ender, "cMun"),
            uf=_text(ender, "UF").upper(),
            cep=_text(ender, "CEP"),
        ),
        crt=Crt(_text(el, "CRT") or default_crt),
        email=_text(el, "email") or None,
    )


def _icms(icms_el: etree._Element) -> Icms:
    origem = _text(icms_el, "orig", "0")
    csosn = _text(icms_el, "CSOSN")
    cst = _text(icms_el, "CST")
    if csosn in CSOSN_COM_CREDITO | CSOSN_SEM_CREDITO:
        return IcmsSimples(
            csosn=csosn, origem=origem, aliquota_credito=_dec(icms_el, "pCredSN")
        )
    if not csosn and cst in CST_ICMS_TRIBUTADO | CST_ICMS_ISENTO:
        return IcmsNormal(cst=cst, origem=origem, aliquota=_dec(icms_el, "pICMS"))
    return IcmsImportado(
        codigo=csosn or cst,
        origem=origem,
        simples=bool(csosn),
        aliquota=_dec(icms_el, "pICMS"),
        base=_dec(icms_el, "vBC"),
        valor=_dec(icms_el, "vICMS"),
    )


def _pis_cofins(el: etree._Element | None, name: str) -> PisCofins:
    cst = _text(el, "CST", "07")
    if el is not None and el.find("vAliqProd") is not None:
        return PisCofins(cst=cst, aliquota=_dec(el, "vAliqProd"))
    return PisCofins(cst=cst, aliquota=_dec(el, f"p{name}"))


def _item(det: etree._Element) -> LineItem:
    prod = det.find("prod")
    if prod is None:
        raise XmlImportError(f"Item {det.get('nItem')} sem <prod>")
    imposto = det.find("imposto")

    icms_el = _first_child(imposto, "ICMS")
    icms = _icms(icms_el) if icms_el is not None else IcmsSimples()

    pis_el = _first_child(imposto, "PIS")
    cofins_el = _first_child(imposto, "COFINS")

    ipi = None
    ipi_group = imposto.find("IPI") if imposto is not None else None
    ipi_el = None
    if ipi_group is not None:
        ipi_el = ipi_group.find("IPITrib")
        if ipi_el is None:
            ipi_el = ipi_group.find("IPINT")
        ipi = Ipi(
            cst=_text(ipi_el, "CST", "53"),
            aliquota=_dec(ipi_el, "pIPI"),
            enquadramento=_text(ipi_group, "cEnq", "999"),
        )

    return LineItem(
        codigo=_text(prod, "cProd"),
        descricao=_text(prod, "xProd"),
        ncm=_text(prod, "NCM"),
        cfop=_text(prod, "CFOP"),
        unidade=_text(prod, "uCom"),
        quantidade=_dec(prod, "qCom"),
        valor_unitario=_dec(prod, "vUnCom"),
        icms=icms,
        pis=_pis_cofins(pis_el, "PIS"),
        cofins=_pis_cofins(cofins_el, "COFINS"),
        ipi=ipi,
        gtin=_text(prod, "cEAN") or SEM_GTIN,
        valor_total=_dec(prod, "vProd"),
        tax=TaxDetails(
            base_icms=_dec(icms_el, "vBC"),
            valor_icms=_dec(icms_el, "vICMS"),
            credito_icms_sn=_dec(icms_el, "vCredICMSSN"),
            base_pis=_dec(pis_el, "vBC") or _dec(pis_el, "qBCProd"),
            valor_pis=_dec(pis_el, "vPIS"),
            base_cofins=_dec(cofins_el, "vBC") or _dec(cofins_el, "qBCProd"),
            valor_cofins=_dec(cofins_el, "vCOFINS"),
            base_ipi=_dec(ipi_el, "vBC"),
            valor_ipi=_dec(ipi_el, "vIPI"),
        ),
    )


def _build(root: etree._Element, xml_text: str, default_status: InvoiceStatus) -> InvoiceData:
    inf = root if root.tag == "infNFe" else root.find(".//infNFe")
    if inf is None:
        raise XmlImportError("Arquivo XML invalido ou nao e uma NF-e (infNFe ausente)")

    ide = inf.find("ide")
    if ide is None:
        raise XmlImportError("NF-e sem <ide>")

    emitente = _entity(inf.find("emit"), "enderEmit", default_crt=Crt.SIMPLES.value)
    # dest carries no CRT; recipients default to Simples
    destinatario = _entity(inf.find("dest"), "enderDest", default_crt=Crt.SIMPLES.value)

    total = inf.find("total/ICMSTot")
    totais = InvoiceTotals(
        v_bc=_dec(total, "vBC"),
        v_icms=_dec(total, "vICMS"),
        v_prod=_dec(total, "vProd"),
        v_frete=_dec(total, "vFrete"),
        v_seg=_dec(total, "vSeg"),
        v_desc=_dec(total, "vDesc"),
        v_ipi=_dec(total, "vIPI"),
        v_pis=_dec(total, "vPIS"),
        v_cofins=_dec(total, "vCOFINS"),
        v_outro=_dec(total, "vOutro"),
        v_nf=_dec(total, "vNF"),
    )

    raw_id = inf.get("Id", "")
    chave = raw_id[3:] if raw_id.startswith("NFe") else raw_id

    status = default_status
    protocolo = None
    motivo = None
    inf_prot = root.find(".//protNFe/infProt")
    if inf_prot is not None:
        c_stat = _text(inf_prot, "cStat")
        status = STATUS_BY_CSTAT.get(c_stat, InvoiceStatus.REJECTED)
        protocolo = _text(inf_prot, "nProt") or None
        if status is InvoiceStatus.REJECTED:
            motivo = f"{c_stat} - {_text(inf_prot, 'xMotivo')}"

    return InvoiceData(
        numero=_text(ide, "nNF"),
        serie=_text(ide, "serie"),
        emitente=emitente,
        destinatario=destinatario,
        produtos=[_item(det) for det in inf.findall("det")],
        data_emissao=_text(ide, "dhEmi") or _text(ide, "dEmi"),
        natureza_operacao=_text(ide, "natOp"),
        global_values=GlobalValues(
            frete=totais.v_frete,
            seguro=totais.v_seg,
            desconto=totais.v_desc,
            outras_despesas=totais.v_outro,
            modalidade_frete=_text(inf, "transp/modFrete", "9"),
        ),
        totais=totais,
        pagamento=[
            Payment(t_pag=_text(p, "tPag"), v_pag=_dec(p, "vPag"))
            for p in inf.findall("pag/detPag")
        ],
        informacoes_complementares=_text(inf, "infAdic/infCpl"),
        finalidade=_text(ide, "finNFe", "1"),
        ref_nfe=_text(ide, "NFref/refNFe") or None,
        status=status,
        chave_acesso=chave or None,
        xml_assinado=xml_text,
        protocolo=protocolo,
        motivo_rejeicao=motivo,
    )


def parse_nfe_xml(
    xml_bytes: bytes,
    default_status: InvoiceStatus = InvoiceStatus.AUTHORIZED,
    expected_issuer_cnpj: str | None = None,
) -> InvoiceData:
    """Parse NF-e XML bytes into an InvoiceData.

    Status comes from protNFe/infProt/cStat when present (100/150
    authorized, 101/151 cancelled, anything else rejected), else
    *default_status*. Raises XmlImportError for unparseable XML, a missing
    infNFe, malformed values, or an issuer CNPJ other than
    *expected_issuer_cnpj*.
    """
    try:
        root = etree.fromstring(xml_bytes, parser=_PARSER)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise XmlImportError(f"Erro ao processar estrutura do XML: {exc}") from exc

    _strip_namespaces(root)
    try:
        invoice = _build(root, xml_bytes.decode("utf-8", errors="replace"), default_status)
    except ValueError as exc:
        raise XmlImportError(f"NF-e com dados invalidos: {exc}") from exc

    if expected_issuer_cnpj is not None:
        if only_digits(invoice.emitente.cnpj) != only_digits(expected_issuer_cnpj):
            raise XmlImportError(
                f"CNPJ do emitente ({invoice.emitente.cnpj}) "
                f"difere do esperado ({expected_issuer_cnpj})"
            )

    logger.info(
        "Imported NF-e %s (n. %s, serie %s) as %s",
        invoice.chave_acesso,
        invoice.numero,
        invoice.serie,
        invoice.status.value,
    )
    return invoice
