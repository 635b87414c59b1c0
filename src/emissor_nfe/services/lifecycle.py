"""Invoice state machine and event log.

Every status change goes through ``transition``; the register_* helpers
apply SEFAZ outcomes on top of it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from emissor_nfe.models.context import EmissionContext
from emissor_nfe.models.invoice import (
    EventType,
    GlobalValues,
    InvoiceData,
    InvoiceEvent,
    InvoiceStatus,
    LineItem,
    Payment,
)
from emissor_nfe.services.exceptions import InvalidTransitionError, ValidationError
from emissor_nfe.services.tax_engine import recalculate
from emissor_nfe.utils import validators

logger = logging.getLogger(__name__)

S = InvoiceStatus

TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    S.DRAFT: frozenset({S.EDITING, S.SIGNING}),
    S.EDITING: frozenset({S.DRAFT, S.SIGNING}),
    # back to editing when signing fails
    S.SIGNING: frozenset({S.TRANSMITTING, S.EDITING}),
    S.TRANSMITTING: frozenset({S.AUTHORIZED, S.REJECTED}),
    S.AUTHORIZED: frozenset({S.CANCELLED}),
    S.REJECTED: frozenset({S.EDITING}),
    S.CANCELLED: frozenset(),
}

EDITABLE = frozenset({S.DRAFT, S.EDITING})
CERTIFICATE_REQUIRED = frozenset({S.SIGNING, S.TRANSMITTING})

MAX_CORRECTIONS = 20


def can_transition(current: InvoiceStatus, new_status: InvoiceStatus) -> bool:
    return current is new_status or new_status in TRANSITIONS[current]


def transition(
    invoice: InvoiceData,
    new_status: InvoiceStatus | str,
    ctx: EmissionContext | None = None,
) -> InvoiceData:
    """Move *invoice* to *new_status*.

    Same-state requests are a no-op. Entering signing or transmitting needs
    a certificate in *ctx*; on any failure the status is left unchanged.
    """
    new_status = InvoiceStatus(new_status)
    current = invoice.status

    if current is new_status:
        logger.debug("Idempotent status change ignored for %s (%s)", invoice.key, current.value)
        return invoice

    if new_status not in TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, new_status.value)

    if new_status in CERTIFICATE_REQUIRED and (ctx is None or ctx.certificate is None):
        raise ValidationError(
            f"Certificado digital obrigatorio para '{new_status.value}'", field="certificado"
        )

    invoice.status = new_status
    logger.info(
        "Invoice %s: %s -> %s",
        invoice.key,
        current.value,
        new_status.value,
        extra={"invoice": invoice.key, "status_from": current.value, "status_to": new_status.value},
    )
    return invoice


def ensure_editable(invoice: InvoiceData) -> None:
    if invoice.status not in EDITABLE:
        raise ValidationError(
            f"Nota no status '{invoice.status.value}' nao pode ser alterada", field="status"
        )


def _refresh_totals(invoice: InvoiceData) -> None:
    calculated = recalculate(invoice)
    invoice.produtos = calculated.produtos
    invoice.totais = calculated.totais


def update_products(invoice: InvoiceData, produtos: Iterable[LineItem]) -> InvoiceData:
    """Replace the line items and recompute every tax block and the totals."""
    ensure_editable(invoice)
    invoice.produtos = list(produtos)
    _refresh_totals(invoice)
    return invoice


def update_global_values(invoice: InvoiceData, global_values: GlobalValues) -> InvoiceData:
    ensure_editable(invoice)
    invoice.global_values = global_values
    _refresh_totals(invoice)
    return invoice


def update_payments(invoice: InvoiceData, pagamento: Iterable[Payment]) -> InvoiceData:
    ensure_editable(invoice)
    invoice.pagamento = list(pagamento)
    return invoice


def validate_justification(text: str, tipo: EventType | str = EventType.CANCELAMENTO) -> str:
    """Check the free text of an event before anything is signed or sent.

    Cancellation: 15 to 255 characters. Correction letter: 15 to 1000.
    Returns the trimmed text.
    """
    tipo = EventType(tipo)
    if tipo is EventType.CCE:
        return validators.validate_justification(
            text, field="correcao", maximum=validators.CORRECAO_MAX
        )
    return validators.validate_justification(text, field="justificativa")


def register_authorization(invoice: InvoiceData, protocolo: str) -> InvoiceData:
    transition(invoice, S.AUTHORIZED)
    invoice.protocolo = protocolo
    invoice.motivo_rejeicao = None
    return invoice


def register_rejection(invoice: InvoiceData, motivo: str) -> InvoiceData:
    transition(invoice, S.REJECTED)
    invoice.motivo_rejeicao = motivo
    return invoice


def ensure_cancellable(invoice: InvoiceData, justificativa: str) -> str:
    """Pre-network checks for a cancellation; returns the sanitized justification."""
    if S.CANCELLED not in TRANSITIONS[invoice.status]:
        raise InvalidTransitionError(invoice.status.value, S.CANCELLED.value)
    if not invoice.protocolo:
        raise ValidationError("Nota sem protocolo de autorizacao", field="protocolo")
    return validate_justification(justificativa, EventType.CANCELAMENTO)


def register_cancellation(
    invoice: InvoiceData,
    justificativa: str,
    protocolo: str,
    data: str,
    xml: str | None = None,
) -> InvoiceData:
    """Cancel an authorized invoice, appending exactly one cancellation event."""
    cleaned = ensure_cancellable(invoice, justificativa)
    transition(invoice, S.CANCELLED)
    invoice.historico_eventos.append(
        InvoiceEvent(
            tipo=EventType.CANCELAMENTO,
            data=data,
            detalhe=cleaned,
            protocolo=protocolo,
            xml=xml,
        )
    )
    return invoice


def next_correction_sequence(invoice: InvoiceData) -> int:
    """nSeqEvento of the next correction letter (1..20)."""
    if invoice.status is not S.AUTHORIZED:
        raise ValidationError(
            f"Carta de correcao exige nota autorizada (status '{invoice.status.value}')",
            field="status",
        )
    sent = len(invoice.events_of(EventType.CCE))
    if sent >= MAX_CORRECTIONS:
        raise ValidationError(
            f"Limite de {MAX_CORRECTIONS} cartas de correcao atingido", field="correcao"
        )
    return sent + 1


def register_correction(
    invoice: InvoiceData,
    correcao: str,
    protocolo: str,
    data: str,
    xml: str | None = None,
) -> InvoiceData:
    """Append a correction letter to the event log; the status is unchanged."""
    sequencia = next_correction_sequence(invoice)
    cleaned = validate_justification(correcao, EventType.CCE)
    invoice.historico_eventos.append(
        InvoiceEvent(
            tipo=EventType.CCE,
            data=data,
            detalhe=cleaned,
            protocolo=protocolo,
            sequencia=sequencia,
            xml=xml,
        )
    )
    logger.info("Invoice %s: correction letter %d registered", invoice.key, sequencia)
    return invoice


def reopen(invoice: InvoiceData) -> InvoiceData:
    """Take a rejected invoice back to editing as a new document.

    The access key, signed XML and protocol are discarded; the next
    preparation generates a new key.
    """
    if invoice.status is not S.REJECTED:
        raise InvalidTransitionError(invoice.status.value, S.EDITING.value)
    transition(invoice, S.EDITING)
    invoice.chave_acesso = None
    invoice.xml_assinado = None
    invoice.protocolo = None
    return invoice


def ensure_deletable(invoice: InvoiceData) -> None:
    if invoice.status is not S.DRAFT:
        raise ValidationError(
            f"Somente rascunhos podem ser excluidos (status '{invoice.status.value}')",
            field="status",
        )
