from __future__ import annotations

import logging
from dataclasses import dataclass

import requests.exceptions
from lxml import etree
from requests_pkcs12 import post

from emissor_nfe.config import (
    ENDPOINTS,
    EVENT_VERSION,
    NFE_VERSION,
    SEFAZ_TIMEOUT,
    SERVICES,
    SOAP12_NS,
    WSDL_BASE,
)
from emissor_nfe.models.context import EmissionContext
from emissor_nfe.services.exceptions import RetryableTransmissionError, TransmissionError
from emissor_nfe.services.nfe_builder import build_cons_sit_nfe, build_cons_stat_serv

logger = logging.getLogger(__name__)

SOAP_ACTIONS = {
    "NFeAutorizacao4": "nfeAutorizacaoLote",
    "NFeRecepcaoEvento4": "nfeRecepcaoEvento",
    "NFeConsultaProtocolo4": "nfeConsultaNF",
    "NFeStatusServico4": "nfeStatusServicoNF",
}

AUTHORIZED = frozenset({"100", "150"})
CANCELLED = frozenset({"101", "151"})
EVENT_REGISTERED = frozenset({"135", "136", "155"})
BATCH_PROCESSED = "104"
EVENT_BATCH_PROCESSED = "128"
SERVICE_RUNNING = "107"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


@dataclass
class SefazResponse:
    """Parsed answer of a SEFAZ web service.

    ``c_stat``/``x_motivo`` are the document-level status when the batch
    was processed (protNFe / retEvento), otherwise the batch status.
    """

    c_stat: str
    x_motivo: str
    protocolo: str | None = None
    chave: str | None = None
    dh_recbto: str | None = None
    element: etree._Element | None = None
    raw: bytes = b""

    @property
    def authorized(self) -> bool:
        return self.c_stat in AUTHORIZED

    @property
    def cancelled(self) -> bool:
        return self.c_stat in CANCELLED

    @property
    def event_registered(self) -> bool:
        return self.c_stat in EVENT_REGISTERED


def _find(root: etree._Element, name: str) -> etree._Element | None:
    found = root.xpath(f".//*[local-name()='{name}']")
    return found[0] if found else None


def _text(root: etree._Element | None, name: str) -> str | None:
    if root is None:
        return None
    el = _find(root, name)
    if el is None or el.text is None:
        return None
    return el.text.strip()


def build_soap_envelope(
    payload: etree._Element,
    service: str,
    c_uf: str,
    versao_dados: str = NFE_VERSION,
) -> bytes:
    """Wrap *payload* in a SOAP 1.2 envelope for the given WSDL service."""
    wsdl_ns = f"{WSDL_BASE}/{service}"
    envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap12": SOAP12_NS})
    header = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Header")
    cabec = etree.SubElement(header, f"{{{wsdl_ns}}}nfeCabecMsg", nsmap={None: wsdl_ns})  # type: ignore[dict-item]
    etree.SubElement(cabec, f"{{{wsdl_ns}}}cUF").text = c_uf
    etree.SubElement(cabec, f"{{{wsdl_ns}}}versaoDados").text = versao_dados
    body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
    dados = etree.SubElement(body, f"{{{wsdl_ns}}}nfeDadosMsg", nsmap={None: wsdl_ns})  # type: ignore[dict-item]
    dados.append(payload)
    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")


def _transmit(
    kind: str,
    payload: etree._Element,
    ctx: EmissionContext,
    c_uf: str,
    versao_dados: str = NFE_VERSION,
) -> tuple[etree._Element, bytes]:
    """POST one SOAP request over mutual TLS, fire once.

    Raises RetryableTransmissionError when the request did not reach SEFAZ
    or SEFAZ was unavailable (5xx), TransmissionError otherwise.
    """
    cert = ctx.require_certificate()
    service = SERVICES[kind]
    url = ENDPOINTS[ctx.env][kind]
    envelope = build_soap_envelope(payload, service, c_uf, versao_dados)
    action = f"{WSDL_BASE}/{service}/{SOAP_ACTIONS[service]}"
    headers = {"Content-Type": f'application/soap+xml; charset=utf-8; action="{action}"'}

    logger.debug("POST %s (%s, %d bytes)", url, service, len(envelope))
    try:
        resp = post(
            url,
            data=envelope,
            headers=headers,
            pkcs12_data=cert.pfx_data,
            pkcs12_password=cert.password,
            timeout=SEFAZ_TIMEOUT,
        )
    except requests.exceptions.ConnectionError as exc:
        raise RetryableTransmissionError(f"Falha de conexao com a SEFAZ: {exc}") from exc
    except requests.exceptions.Timeout as exc:
        raise TransmissionError(f"Tempo esgotado aguardando a SEFAZ: {exc}") from exc
    except requests.exceptions.RequestException as exc:
        raise TransmissionError(f"Erro de comunicacao com a SEFAZ: {exc}") from exc

    if resp.status_code >= 500:
        raise RetryableTransmissionError(
            f"SEFAZ indisponivel ({resp.status_code})", status_code=resp.status_code
        )
    if not resp.ok:
        body = resp.text[:500] if resp.text else ""
        raise TransmissionError(
            f"SEFAZ API error ({resp.status_code}): {body}", status_code=resp.status_code
        )

    try:
        root = etree.fromstring(resp.content, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise TransmissionError(f"Resposta da SEFAZ nao e XML valido: {exc}") from exc
    return root, resp.content


def _ret_element(root: etree._Element, name: str, raw: bytes) -> etree._Element:
    ret = _find(root, name)
    if ret is None:
        raise TransmissionError(f"Resposta da SEFAZ sem {name}: {raw[:200]!r}")
    return ret


def authorize(envi_nfe: etree._Element, ctx: EmissionContext, c_uf: str) -> SefazResponse:
    """Send an <enviNFe> batch (synchronous) to NFeAutorizacao4."""
    root, raw = _transmit("autorizacao", envi_nfe, ctx, c_uf)
    ret = _ret_element(root, "retEnviNFe", raw)
    c_stat = _text(ret, "cStat") or ""
    x_motivo = _text(ret, "xMotivo") or ""

    prot = _find(ret, "protNFe")
    if c_stat != BATCH_PROCESSED or prot is None:
        logger.info("Batch not processed: cStat %s (%s)", c_stat, x_motivo)
        return SefazResponse(c_stat=c_stat, x_motivo=x_motivo, element=ret, raw=raw)

    inf = _find(prot, "infProt")
    response = SefazResponse(
        c_stat=_text(inf, "cStat") or "",
        x_motivo=_text(inf, "xMotivo") or "",
        protocolo=_text(inf, "nProt"),
        chave=_text(inf, "chNFe"),
        dh_recbto=_text(inf, "dhRecbto"),
        element=prot,
        raw=raw,
    )
    logger.info("Authorization answer for %s: cStat %s", response.chave, response.c_stat)
    return response


def send_event(env_evento: etree._Element, ctx: EmissionContext, c_uf: str) -> SefazResponse:
    """Send an <envEvento> batch to NFeRecepcaoEvento4."""
    root, raw = _transmit("evento", env_evento, ctx, c_uf, versao_dados=EVENT_VERSION)
    ret = _ret_element(root, "retEnvEvento", raw)
    c_stat = _text(ret, "cStat") or ""
    x_motivo = _text(ret, "xMotivo") or ""

    ret_evento = _find(ret, "retEvento")
    if c_stat != EVENT_BATCH_PROCESSED or ret_evento is None:
        logger.info("Event batch not processed: cStat %s (%s)", c_stat, x_motivo)
        return SefazResponse(c_stat=c_stat, x_motivo=x_motivo, element=ret, raw=raw)

    inf = _find(ret_evento, "infEvento")
    response = SefazResponse(
        c_stat=_text(inf, "cStat") or "",
        x_motivo=_text(inf, "xMotivo") or "",
        protocolo=_text(inf, "nProt"),
        chave=_text(inf, "chNFe"),
        dh_recbto=_text(inf, "dhRegEvento"),
        element=ret_evento,
        raw=raw,
    )
    logger.info("Event answer for %s: cStat %s", response.chave, response.c_stat)
    return response


def query_protocol(chave: str, ctx: EmissionContext) -> SefazResponse:
    """Ask NFeConsultaProtocolo4 for the current situation of an access key.

    ``c_stat`` is the situation of the NF-e (100 authorized, 101 cancelled,
    217 unknown...); ``protocolo`` is the authorization protocol when present.
    """
    root, raw = _transmit("consulta", build_cons_sit_nfe(chave, ctx.tp_amb), ctx, chave[:2])
    ret = _ret_element(root, "retConsSitNFe", raw)
    prot = _find(ret, "protNFe")
    inf = _find(prot, "infProt") if prot is not None else None
    return SefazResponse(
        c_stat=_text(ret, "cStat") or "",
        x_motivo=_text(ret, "xMotivo") or "",
        protocolo=_text(inf, "nProt"),
        chave=_text(ret, "chNFe") or chave,
        dh_recbto=_text(inf, "dhRecbto"),
        element=prot,
        raw=raw,
    )


def check_status(ctx: EmissionContext, c_uf: str) -> SefazResponse:
    """Query NFeStatusServico4; cStat 107 means the service is running."""
    root, raw = _transmit("status", build_cons_stat_serv(c_uf, ctx.tp_amb), ctx, c_uf)
    ret = _ret_element(root, "retConsStatServ", raw)
    return SefazResponse(
        c_stat=_text(ret, "cStat") or "",
        x_motivo=_text(ret, "xMotivo") or "",
        dh_recbto=_text(ret, "dhRecbto"),
        element=ret,
        raw=raw,
    )
