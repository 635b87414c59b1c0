from __future__ import annotations

import copy

from lxml import etree

from emissor_nfe.config import EVENT_VERSION, MODELO_NFE, NFE_NS, NFE_VERSION, VER_PROC
from emissor_nfe.models.entity import Entity
from emissor_nfe.models.invoice import EventType, InvoiceData, LineItem
from emissor_nfe.models.tax import IcmsImportado, IcmsSimples, PisCofins
from emissor_nfe.utils.access_key import split_access_key, validate_access_key
from emissor_nfe.utils.formatters import (
    fmt_decimal,
    fmt_money,
    fmt_quantity,
    fmt_unit_price,
    only_digits,
    sanitize_text,
)
from emissor_nfe.utils.validators import get_ibge_uf_code

NSMAP = {None: NFE_NS}

HOMOLOGACAO_XNOME = "NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"

X_COND_USO = (
    "A Carta de Correcao e disciplinada pelo paragrafo 1o-A do art. 7o do Convenio S/N, "
    "de 15 de dezembro de 1970 e pode ser utilizada para regularizacao de erro ocorrido "
    "na emissao de documento fiscal, desde que o erro nao esteja relacionado com: "
    "I - as variaveis que determinam o valor do imposto tais como: base de calculo, "
    "aliquota, diferenca de preco, quantidade, valor da operacao ou da prestacao; "
    "II - a correcao de dados cadastrais que implique mudanca do remetente ou do "
    "destinatario; III - a data de emissao ou de saida."
)

_PIS_COFINS_NT = frozenset({"04", "05", "06", "07", "08", "09"})


def _q(tag: str) -> str:
    return f"{{{NFE_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, _q(tag))
    if text is not None:
        el.text = text
    return el


def _root(tag: str, **attrs: str) -> etree._Element:
    el = etree.Element(_q(tag), nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    for name, value in attrs.items():
        el.set(name, value)
    return el


def _id_dest(invoice: InvoiceData) -> str:
    uf_dest = invoice.destinatario.endereco.uf
    if uf_dest == "EX":
        return "3"
    return "1" if uf_dest == invoice.emitente.endereco.uf else "2"


def _address(parent: etree._Element, tag: str, entity: Entity) -> None:
    end = entity.endereco
    el = _sub(parent, tag)
    _sub(el, "xLgr", sanitize_text(end.logradouro))
    _sub(el, "nro", sanitize_text(end.numero))
    _sub(el, "xBairro", sanitize_text(end.bairro))
    _sub(el, "cMun", only_digits(end.codigo_ibge))
    _sub(el, "xMun", sanitize_text(end.municipio))
    _sub(el, "UF", sanitize_text(end.uf))
    _sub(el, "CEP", only_digits(end.cep))
    _sub(el, "cPais", "1058")
    _sub(el, "xPais", "BRASIL")


def _ide(inf: etree._Element, invoice: InvoiceData, tp_amb: str, key: str) -> None:
    parts = split_access_key(key)
    ide = _sub(inf, "ide")
    _sub(ide, "cUF", parts["cUF"])
    _sub(ide, "cNF", parts["cNF"])
    _sub(ide, "natOp", sanitize_text(invoice.natureza_operacao))
    _sub(ide, "mod", MODELO_NFE)
    _sub(ide, "serie", str(int(invoice.serie)))
    _sub(ide, "nNF", str(int(invoice.numero)))
    _sub(ide, "dhEmi", invoice.data_emissao)
    _sub(ide, "tpNF", "1")
    _sub(ide, "idDest", _id_dest(invoice))
    _sub(ide, "cMunFG", only_digits(invoice.emitente.endereco.codigo_ibge))
    _sub(ide, "tpImp", "1")
    _sub(ide, "tpEmis", parts["tpEmis"])
    _sub(ide, "cDV", parts["cDV"])
    _sub(ide, "tpAmb", tp_amb)
    _sub(ide, "finNFe", invoice.finalidade)
    _sub(ide, "indFinal", "1")
    _sub(ide, "indPres", "1")
    _sub(ide, "indIntermed", "0")
    _sub(ide, "procEmi", "0")
    _sub(ide, "verProc", VER_PROC)
    if invoice.ref_nfe:
        nfref = _sub(ide, "NFref")
        _sub(nfref, "refNFe", invoice.ref_nfe)


def _emit(inf: etree._Element, emitente: Entity) -> None:
    emit = _sub(inf, "emit")
    _sub(emit, "CNPJ", only_digits(emitente.cnpj))
    _sub(emit, "xNome", sanitize_text(emitente.razao_social))
    _address(emit, "enderEmit", emitente)
    _sub(emit, "IE", only_digits(emitente.inscricao_estadual))
    _sub(emit, "CRT", emitente.crt.value)


def _dest(inf: etree._Element, dest: Entity, tp_amb: str) -> None:
    el = _sub(inf, "dest")
    tax_id = only_digits(dest.cnpj)
    _sub(el, "CPF" if len(tax_id) == 11 else "CNPJ", tax_id)
    # SEFAZ rejects any other recipient name in homologacao
    _sub(el, "xNome", HOMOLOGACAO_XNOME if tp_amb == "2" else sanitize_text(dest.razao_social))
    _address(el, "enderDest", dest)
    ie = only_digits(dest.inscricao_estadual)
    _sub(el, "indIEDest", "1" if ie else "9")
    if ie:
        _sub(el, "IE", ie)
    if dest.email:
        _sub(el, "email", sanitize_text(dest.email))


def _icms(imposto: etree._Element, item: LineItem) -> None:
    icms = item.icms
    if isinstance(icms, IcmsImportado):
        raise ValueError(f"ICMS '{icms.codigo}' de nota importada nao pode ser emitido")
    group = _sub(imposto, "ICMS")
    if isinstance(icms, IcmsSimples):
        if icms.gera_credito:
            el = _sub(group, "ICMSSN101")
            _sub(el, "orig", icms.origem)
            _sub(el, "CSOSN", icms.csosn)
            _sub(el, "pCredSN", fmt_money(icms.aliquota_credito))
            _sub(el, "vCredICMSSN", fmt_money(item.tax.credito_icms_sn))
        else:
            el = _sub(group, "ICMSSN102")
            _sub(el, "orig", icms.origem)
            _sub(el, "CSOSN", icms.csosn)
        return

    if not icms.tributado:
        el = _sub(group, "ICMS40")
        _sub(el, "orig", icms.origem)
        _sub(el, "CST", icms.cst)
        return

    el = _sub(group, f"ICMS{icms.cst}")
    _sub(el, "orig", icms.origem)
    _sub(el, "CST", icms.cst)
    _sub(el, "modBC", "3")
    if icms.cst == "20":
        _sub(el, "pRedBC", "0.00")
    _sub(el, "vBC", fmt_money(item.tax.base_icms))
    _sub(el, "pICMS", fmt_money(icms.aliquota))
    _sub(el, "vICMS", fmt_money(item.tax.valor_icms))


def _ipi(imposto: etree._Element, item: LineItem) -> None:
    ipi = item.ipi
    el = _sub(imposto, "IPI")
    _sub(el, "cEnq", ipi.enquadramento if ipi else "999")
    if ipi is not None and ipi.tributado:
        trib = _sub(el, "IPITrib")
        _sub(trib, "CST", ipi.cst)
        _sub(trib, "vBC", fmt_money(item.tax.base_ipi))
        _sub(trib, "pIPI", fmt_money(ipi.aliquota))
        _sub(trib, "vIPI", fmt_money(item.tax.valor_ipi))
    else:
        nt = _sub(el, "IPINT")
        _sub(nt, "CST", ipi.cst if ipi else "53")


def _pis_cofins(
    imposto: etree._Element, name: str, block: PisCofins, base, value
) -> None:
    group = _sub(imposto, name)
    if block.por_quantidade:
        el = _sub(group, f"{name}Qtde")
        _sub(el, "CST", block.cst)
        _sub(el, "qBCProd", fmt_quantity(base))
        _sub(el, "vAliqProd", fmt_decimal(block.aliquota, 4))
        _sub(el, f"v{name}", fmt_money(value))
        return
    if block.tributado:
        el = _sub(group, f"{name}Aliq")
    elif block.cst in _PIS_COFINS_NT:
        _sub(_sub(group, f"{name}NT"), "CST", block.cst)
        return
    else:
        el = _sub(group, f"{name}Outr")
    _sub(el, "CST", block.cst)
    _sub(el, "vBC", fmt_money(base))
    _sub(el, f"p{name}", fmt_money(block.aliquota))
    _sub(el, f"v{name}", fmt_money(value))


def _det(inf: etree._Element, n_item: int, item: LineItem) -> None:
    det = _sub(inf, "det")
    det.set("nItem", str(n_item))
    gtin = sanitize_text(item.gtin) or "SEM GTIN"
    prod = _sub(det, "prod")
    _sub(prod, "cProd", sanitize_text(item.codigo))
    _sub(prod, "cEAN", gtin)
    _sub(prod, "xProd", sanitize_text(item.descricao))
    _sub(prod, "NCM", only_digits(item.ncm))
    _sub(prod, "CFOP", only_digits(item.cfop))
    _sub(prod, "uCom", sanitize_text(item.unidade))
    _sub(prod, "qCom", fmt_quantity(item.quantidade))
    _sub(prod, "vUnCom", fmt_unit_price(item.valor_unitario))
    _sub(prod, "vProd", fmt_money(item.valor_total))
    _sub(prod, "cEANTrib", gtin)
    _sub(prod, "uTrib", sanitize_text(item.unidade))
    _sub(prod, "qTrib", fmt_quantity(item.quantidade))
    _sub(prod, "vUnTrib", fmt_unit_price(item.valor_unitario))
    _sub(prod, "indTot", "1")

    imposto = _sub(det, "imposto")
    _sub(imposto, "vTotTrib", "0.00")
    _icms(imposto, item)
    _ipi(imposto, item)
    _pis_cofins(imposto, "PIS", item.pis, item.tax.base_pis, item.tax.valor_pis)
    _pis_cofins(imposto, "COFINS", item.cofins, item.tax.base_cofins, item.tax.valor_cofins)


def _total(inf: etree._Element, invoice: InvoiceData) -> None:
    t = invoice.totais
    tot = _sub(_sub(inf, "total"), "ICMSTot")
    for tag, value in (
        ("vBC", t.v_bc),
        ("vICMS", t.v_icms),
        ("vICMSDeson", None),
        ("vFCP", None),
        ("vBCST", None),
        ("vST", None),
        ("vFCPST", None),
        ("vFCPSTRet", None),
        ("vProd", t.v_prod),
        ("vFrete", t.v_frete),
        ("vSeg", t.v_seg),
        ("vDesc", t.v_desc),
        ("vII", None),
        ("vIPI", t.v_ipi),
        ("vIPIDevol", None),
        ("vPIS", t.v_pis),
        ("vCOFINS", t.v_cofins),
        ("vOutro", t.v_outro),
        ("vNF", t.v_nf),
    ):
        _sub(tot, tag, "0.00" if value is None else fmt_money(value))


def build_nfe(invoice: InvoiceData, tp_amb: str) -> etree._Element:
    """Build the <NFe> element (unsigned) for an invoice with its access key set.

    Output depends only on the invoice and tp_amb; dhEmi comes from
    ``invoice.data_emissao``.
    """
    if not invoice.chave_acesso:
        raise ValueError("Nota sem chave de acesso")
    key = validate_access_key(invoice.chave_acesso)
    if not invoice.data_emissao:
        raise ValueError("Nota sem data de emissao")

    nfe = _root("NFe")
    inf = _sub(nfe, "infNFe")
    inf.set("Id", f"NFe{key}")
    inf.set("versao", NFE_VERSION)

    _ide(inf, invoice, tp_amb, key)
    _emit(inf, invoice.emitente)
    _dest(inf, invoice.destinatario, tp_amb)
    for n_item, item in enumerate(invoice.produtos, start=1):
        _det(inf, n_item, item)
    _total(inf, invoice)

    transp = _sub(inf, "transp")
    _sub(transp, "modFrete", invoice.global_values.modalidade_frete)

    pag = _sub(inf, "pag")
    payments = [(p.t_pag, p.v_pag) for p in invoice.pagamento] or [("90", 0)]
    for t_pag, v_pag in payments:
        det_pag = _sub(pag, "detPag")
        _sub(det_pag, "tPag", t_pag)
        _sub(det_pag, "vPag", fmt_money(v_pag))

    remarks = sanitize_text(invoice.informacoes_complementares)
    if remarks:
        _sub(_sub(inf, "infAdic"), "infCpl", remarks)

    return nfe


def build_envi_nfe(signed_nfe: etree._Element, id_lote: str, ind_sinc: str = "1") -> etree._Element:
    """Wrap a signed <NFe> in the <enviNFe> batch sent to NFeAutorizacao4."""
    envi = _root("enviNFe", versao=NFE_VERSION)
    _sub(envi, "idLote", id_lote)
    _sub(envi, "indSinc", ind_sinc)
    envi.append(copy.deepcopy(signed_nfe))
    return envi


def build_nfe_proc(signed_nfe: etree._Element, prot_nfe: etree._Element) -> etree._Element:
    """Join the signed NF-e and its authorization protocol (<nfeProc>)."""
    proc = _root("nfeProc", versao=NFE_VERSION)
    proc.append(copy.deepcopy(signed_nfe))
    proc.append(copy.deepcopy(prot_nfe))
    return proc


def _build_event(
    invoice: InvoiceData,
    tipo: EventType,
    n_seq: int,
    tp_amb: str,
    dh_evento: str,
    descricao: str,
) -> tuple[etree._Element, etree._Element]:
    key = validate_access_key(invoice.chave_acesso or "")
    evento = _root("evento", versao=EVENT_VERSION)
    inf = _sub(evento, "infEvento")
    inf.set("Id", f"ID{tipo.tp_evento}{key}{n_seq:02d}")
    _sub(inf, "cOrgao", get_ibge_uf_code(invoice.emitente.endereco.uf))
    _sub(inf, "tpAmb", tp_amb)
    _sub(inf, "CNPJ", only_digits(invoice.emitente.cnpj))
    _sub(inf, "chNFe", key)
    _sub(inf, "dhEvento", dh_evento)
    _sub(inf, "tpEvento", tipo.tp_evento)
    _sub(inf, "nSeqEvento", str(n_seq))
    _sub(inf, "verEvento", EVENT_VERSION)
    det = _sub(inf, "detEvento")
    det.set("versao", EVENT_VERSION)
    _sub(det, "descEvento", descricao)
    return evento, det


def build_cancellation_event(
    invoice: InvoiceData, justificativa: str, tp_amb: str, dh_evento: str
) -> etree._Element:
    """Build the (unsigned) cancellation event referencing the authorization protocol."""
    if not invoice.protocolo:
        raise ValueError("Nota sem protocolo de autorizacao")
    evento, det = _build_event(
        invoice, EventType.CANCELAMENTO, 1, tp_amb, dh_evento, "Cancelamento"
    )
    _sub(det, "nProt", invoice.protocolo)
    _sub(det, "xJust", sanitize_text(justificativa))
    return evento


def build_correction_event(
    invoice: InvoiceData, correcao: str, n_seq: int, tp_amb: str, dh_evento: str
) -> etree._Element:
    """Build the (unsigned) correction letter (CC-e) event."""
    evento, det = _build_event(
        invoice, EventType.CCE, n_seq, tp_amb, dh_evento, "Carta de Correcao"
    )
    _sub(det, "xCorrecao", sanitize_text(correcao))
    _sub(det, "xCondUso", X_COND_USO)
    return evento


def build_env_evento(signed_evento: etree._Element, id_lote: str) -> etree._Element:
    """Wrap a signed <evento> in the <envEvento> batch sent to NFeRecepcaoEvento4."""
    env = _root("envEvento", versao=EVENT_VERSION)
    _sub(env, "idLote", id_lote)
    env.append(copy.deepcopy(signed_evento))
    return env


def build_cons_sit_nfe(chave: str, tp_amb: str) -> etree._Element:
    """Protocol query (<consSitNFe>) for an access key."""
    cons = _root("consSitNFe", versao=NFE_VERSION)
    _sub(cons, "tpAmb", tp_amb)
    _sub(cons, "xServ", "CONSULTAR")
    _sub(cons, "chNFe", validate_access_key(chave))
    return cons


def build_cons_stat_serv(c_uf: str, tp_amb: str) -> etree._Element:
    """Service status query (<consStatServ>)."""
    cons = _root("consStatServ", versao=NFE_VERSION)
    _sub(cons, "tpAmb", tp_amb)
    _sub(cons, "cUF", c_uf)
    _sub(cons, "xServ", "STATUS")
    return cons
