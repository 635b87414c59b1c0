from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from lxml import etree

from emissor_nfe.config import BRT, get_issued_dir
from emissor_nfe.models.context import EmissionContext
from emissor_nfe.models.invoice import EventType, InvoiceData, InvoiceStatus
from emissor_nfe.services import lifecycle
from emissor_nfe.services.exceptions import SefazRejectError, TransmissionError, ValidationError
from emissor_nfe.services.http_retry import RetryPolicy, retry_call
from emissor_nfe.services.nfe_builder import (
    build_cancellation_event,
    build_correction_event,
    build_env_evento,
    build_envi_nfe,
    build_nfe,
    build_nfe_proc,
)
from emissor_nfe.services.sefaz_client import SefazResponse, authorize, query_protocol, send_event
from emissor_nfe.services.tax_engine import recalculate
from emissor_nfe.services.xml_importer import parse_nfe_xml
from emissor_nfe.services.xml_signer import sign_event, sign_nfe
from emissor_nfe.utils.access_key import access_key_for_invoice
from emissor_nfe.utils.formatters import format_datetime_tz
from emissor_nfe.utils.registry import load_invoice, remove_invoice, upsert_invoice
from emissor_nfe.utils.validators import validate_invoice

logger = logging.getLogger(__name__)

PENDING = frozenset({"103", "105"})
NOT_FOUND = "217"
_FINAL = frozenset({InvoiceStatus.AUTHORIZED, InvoiceStatus.CANCELLED})

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


def _now_brt() -> datetime:
    return datetime.now(BRT).replace(microsecond=0)


def _to_xml(el: etree._Element) -> bytes:
    return etree.tostring(el, xml_declaration=True, encoding="utf-8")


@dataclass
class PreparedNFe:
    """A validated, signed NF-e ready for transmission."""

    invoice: InvoiceData
    signed_nfe: etree._Element
    signed_xml: bytes
    env: str


@dataclass
class EmissionResult:
    invoice: InvoiceData
    response: SefazResponse
    saved_to: str | None = None

    @property
    def authorized(self) -> bool:
        return self.invoice.status is InvoiceStatus.AUTHORIZED


def _register(invoice: InvoiceData, env: str) -> None:
    try:
        upsert_invoice(invoice, env)
    except Exception:
        logger.warning("Failed to register invoice %s", invoice.key, exc_info=True)


def _write_issued(env: str, filename: str, data: bytes) -> str:
    out_path = get_issued_dir(env) / filename
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(data)
    return str(out_path)


def prepare(invoice: InvoiceData, ctx: EmissionContext) -> PreparedNFe:
    """Validate, key, build and sign *invoice*; leaves it in ``transmitting``.

    Every check runs before any crypto step. The access key is generated
    once and kept for resubmissions.
    """
    lifecycle.ensure_editable(invoice)
    calculated = recalculate(invoice)
    invoice.produtos = calculated.produtos
    invoice.totais = calculated.totais
    validate_invoice(invoice)

    cert = ctx.require_certificate()
    lifecycle.transition(invoice, InvoiceStatus.SIGNING, ctx)
    try:
        if not invoice.data_emissao:
            invoice.data_emissao = format_datetime_tz(_now_brt())
        if not invoice.chave_acesso:
            issued_at = datetime.fromisoformat(invoice.data_emissao)
            invoice.chave_acesso = access_key_for_invoice(invoice, issued_at)

        nfe = build_nfe(invoice, ctx.tp_amb)
        signed_nfe = sign_nfe(nfe, cert.key_pem, cert.cert_pem)
    except Exception:
        lifecycle.transition(invoice, InvoiceStatus.EDITING)
        raise

    signed_xml = _to_xml(signed_nfe)
    invoice.xml_assinado = signed_xml.decode("utf-8")
    lifecycle.transition(invoice, InvoiceStatus.TRANSMITTING, ctx)
    logger.info("NF-e %s signed (%d bytes)", invoice.chave_acesso, len(signed_xml))

    return PreparedNFe(invoice=invoice, signed_nfe=signed_nfe, signed_xml=signed_xml, env=ctx.env)


def submit(
    prepared: PreparedNFe,
    ctx: EmissionContext,
    retry_policy: RetryPolicy | None = None,
) -> EmissionResult:
    """Send a prepared NF-e and apply the outcome.

    Fires once unless *retry_policy* is given. On TransmissionError the
    invoice is registered in ``transmitting`` with its signed XML, ready
    for ``resubmit``.
    """
    invoice = prepared.invoice
    key = invoice.chave_acesso or ""

    def _do_authorize() -> SefazResponse:
        return authorize(build_envi_nfe(prepared.signed_nfe, ctx.id_lote), ctx, key[:2])

    try:
        if retry_policy is None:
            response = _do_authorize()
        else:
            response = retry_call(_do_authorize, retry_policy)
    except TransmissionError:
        logger.warning("NF-e %s not confirmed by SEFAZ; kept as transmitting", key)
        _register(invoice, prepared.env)
        raise

    result = EmissionResult(invoice=invoice, response=response)
    if response.authorized:
        lifecycle.register_authorization(invoice, response.protocolo or "")
        if response.element is not None:
            proc = build_nfe_proc(prepared.signed_nfe, response.element)
            try:
                result.saved_to = _write_issued(prepared.env, f"{key}-procNFe.xml", _to_xml(proc))
            except OSError:
                logger.warning("Failed to save authorized XML for %s", key, exc_info=True)
    elif response.c_stat in PENDING:
        logger.warning(
            "NF-e %s still being processed (cStat %s); reconcile later", key, response.c_stat
        )
    else:
        lifecycle.register_rejection(invoice, f"{response.c_stat} - {response.x_motivo}")

    _register(invoice, prepared.env)
    return result


def emit(
    invoice: InvoiceData,
    ctx: EmissionContext,
    retry_policy: RetryPolicy | None = None,
) -> EmissionResult:
    return submit(prepare(invoice, ctx), ctx, retry_policy)


def resubmit(
    invoice: InvoiceData,
    ctx: EmissionContext,
    retry_policy: RetryPolicy | None = None,
) -> EmissionResult:
    """Send the stored signed XML again, without re-signing."""
    if invoice.status is not InvoiceStatus.TRANSMITTING or not invoice.xml_assinado:
        raise ValidationError(
            "Somente notas em transmissao com XML assinado podem ser reenviadas",
            field="status",
        )
    signed_xml = invoice.xml_assinado.encode("utf-8")
    prepared = PreparedNFe(
        invoice=invoice,
        signed_nfe=etree.fromstring(signed_xml, parser=_PARSER),
        signed_xml=signed_xml,
        env=ctx.env,
    )
    return submit(prepared, ctx, retry_policy)


def _send_event(
    invoice: InvoiceData, evento: etree._Element, ctx: EmissionContext
) -> tuple[SefazResponse, str]:
    cert = ctx.require_certificate()
    signed = sign_event(evento, cert.key_pem, cert.cert_pem)
    c_uf = (invoice.chave_acesso or "")[:2]
    response = send_event(build_env_evento(signed, ctx.id_lote), ctx, c_uf)
    if not response.event_registered:
        raise SefazRejectError(
            f"cStat {response.c_stat}: {response.x_motivo}",
            c_stat=response.c_stat,
            x_motivo=response.x_motivo,
            response=response,
        )
    return response, _to_xml(signed).decode("utf-8")


def cancel(invoice: InvoiceData, justificativa: str, ctx: EmissionContext) -> EmissionResult:
    """Cancel an authorized NF-e (event 110111).

    Raises SefazRejectError when SEFAZ does not register the event; the
    invoice is then left untouched.
    """
    cleaned = lifecycle.ensure_cancellable(invoice, justificativa)
    ctx.require_certificate()

    dh_evento = format_datetime_tz(_now_brt())
    evento = build_cancellation_event(invoice, cleaned, ctx.tp_amb, dh_evento)
    response, xml = _send_event(invoice, evento, ctx)

    lifecycle.register_cancellation(invoice, cleaned, response.protocolo or "", dh_evento, xml=xml)
    _register(invoice, ctx.env)
    return EmissionResult(invoice=invoice, response=response)


def correct(invoice: InvoiceData, correcao: str, ctx: EmissionContext) -> EmissionResult:
    """Send a correction letter (CC-e, event 110110); the status is unchanged."""
    n_seq = lifecycle.next_correction_sequence(invoice)
    cleaned = lifecycle.validate_justification(correcao, EventType.CCE)
    ctx.require_certificate()

    dh_evento = format_datetime_tz(_now_brt())
    evento = build_correction_event(invoice, cleaned, n_seq, ctx.tp_amb, dh_evento)
    response, xml = _send_event(invoice, evento, ctx)

    lifecycle.register_correction(invoice, cleaned, response.protocolo or "", dh_evento, xml=xml)
    _register(invoice, ctx.env)
    return EmissionResult(invoice=invoice, response=response)


def reconcile(
    invoice: InvoiceData,
    ctx: EmissionContext,
    retry_policy: RetryPolicy | None = None,
) -> EmissionResult:
    """Bring the local status in line with SEFAZ (NFeConsultaProtocolo4).

    Used after a transmission error or a pending batch.
    """
    if not invoice.chave_acesso:
        raise ValidationError("Nota sem chave de acesso", field="chaveAcesso")

    def _do_query() -> SefazResponse:
        return query_protocol(invoice.chave_acesso or "", ctx)

    response = _do_query() if retry_policy is None else retry_call(_do_query, retry_policy)

    status = invoice.status
    if response.authorized and status is InvoiceStatus.TRANSMITTING:
        lifecycle.register_authorization(invoice, response.protocolo or "")
    elif response.cancelled and status is InvoiceStatus.AUTHORIZED:
        lifecycle.transition(invoice, InvoiceStatus.CANCELLED)
    elif response.c_stat == NOT_FOUND:
        logger.info("NF-e %s unknown to SEFAZ; it can be resubmitted", invoice.chave_acesso)
    else:
        logger.info(
            "NF-e %s: SEFAZ cStat %s, local status %s kept",
            invoice.chave_acesso,
            response.c_stat,
            status.value,
        )

    _register(invoice, ctx.env)
    return EmissionResult(invoice=invoice, response=response)


def _merge_import(imported: InvoiceData, existing: InvoiceData) -> None:
    imported.id = existing.id
    if existing.status is InvoiceStatus.CANCELLED or (
        existing.status is InvoiceStatus.AUTHORIZED and imported.status not in _FINAL
    ):
        imported.status = existing.status
    imported.protocolo = imported.protocolo or existing.protocolo
    known = list(existing.historico_eventos)
    imported.historico_eventos = known + [e for e in imported.historico_eventos if e not in known]
    logger.info("Merged re-import of %s (%s)", imported.key, imported.status.value)


def import_xml(
    xml_bytes: bytes,
    env: str,
    default_status: InvoiceStatus = InvoiceStatus.AUTHORIZED,
    expected_issuer_cnpj: str | None = None,
) -> InvoiceData:
    """Parse NF-e XML and upsert it into the registry by access key.

    Re-importing a known NF-e keeps its id, its event history and any
    status it already reached (a cancelled entry stays cancelled).
    """
    invoice = parse_nfe_xml(
        xml_bytes, default_status=default_status, expected_issuer_cnpj=expected_issuer_cnpj
    )
    existing = load_invoice(invoice.chave_acesso, env) if invoice.chave_acesso else None
    if existing is not None:
        _merge_import(invoice, existing)
    upsert_invoice(invoice, env)
    return invoice


def delete_draft(invoice: InvoiceData) -> bool:
    lifecycle.ensure_deletable(invoice)
    return remove_invoice(invoice.key) if invoice.key else False


def save_xml(prepared: PreparedNFe) -> str:
    """Save the signed NF-e to disk without submitting."""
    return _write_issued(
        prepared.env, f"dry_run_{prepared.invoice.chave_acesso}-nfe.xml", prepared.signed_xml
    )
