from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from decimal import Decimal

from emissor_nfe.models.entity import Crt
from emissor_nfe.models.invoice import GlobalValues, InvoiceData, InvoiceTotals, LineItem
from emissor_nfe.models.tax import ZERO, IcmsImportado, IcmsNormal, IcmsSimples, PisCofins, TaxDetails
from emissor_nfe.services.exceptions import ValidationError
from emissor_nfe.utils.formatters import money

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _apply_rate(base: Decimal, rate: Decimal) -> Decimal:
    return money(base * rate / HUNDRED)


def _pis_cofins(
    block: PisCofins, v_prod: Decimal, quantidade: Decimal
) -> tuple[Decimal, Decimal]:
    if block.por_quantidade:
        return quantidade, money(quantidade * block.aliquota)
    if not block.tributado:
        return ZERO, ZERO
    return v_prod, _apply_rate(v_prod, block.aliquota)


def calculate_item_tax(item: LineItem, crt: Crt | str) -> LineItem:
    """Return *item* with its line total and tax blocks computed for the regime."""
    crt = Crt(crt)
    v_prod = money(item.quantidade * item.valor_unitario)

    base_icms = valor_icms = credito = ZERO
    if isinstance(item.icms, IcmsImportado):
        base_icms = item.icms.base
        valor_icms = item.icms.valor
    elif crt.is_simples:
        if not isinstance(item.icms, IcmsSimples):
            raise ValidationError(
                f"Produto '{item.codigo}': Simples Nacional exige CSOSN", field="icms"
            )
        if item.icms.gera_credito:
            credito = _apply_rate(v_prod, item.icms.aliquota_credito)
    else:
        if not isinstance(item.icms, IcmsNormal):
            raise ValidationError(
                f"Produto '{item.codigo}': regime normal exige CST de ICMS", field="icms"
            )
        if item.icms.tributado:
            base_icms = v_prod
            valor_icms = _apply_rate(base_icms, item.icms.aliquota)

    base_pis, valor_pis = _pis_cofins(item.pis, v_prod, item.quantidade)
    base_cofins, valor_cofins = _pis_cofins(item.cofins, v_prod, item.quantidade)

    base_ipi = valor_ipi = ZERO
    if item.ipi is not None and item.ipi.tributado:
        base_ipi = v_prod
        valor_ipi = _apply_rate(v_prod, item.ipi.aliquota)

    return replace(
        item,
        valor_total=v_prod,
        tax=TaxDetails(
            base_icms=base_icms,
            valor_icms=valor_icms,
            credito_icms_sn=credito,
            base_pis=base_pis,
            valor_pis=valor_pis,
            base_cofins=base_cofins,
            valor_cofins=valor_cofins,
            base_ipi=base_ipi,
            valor_ipi=valor_ipi,
        ),
    )


def calculate_invoice_totals(
    items: Iterable[LineItem],
    global_values: GlobalValues | None = None,
) -> InvoiceTotals:
    """Sum the item blocks and apply invoice-level freight, insurance, discount and other."""
    g = global_values or GlobalValues()
    v_bc = v_icms = v_prod = v_ipi = v_pis = v_cofins = ZERO
    for item in items:
        v_bc += item.tax.base_icms
        v_icms += item.tax.valor_icms
        v_prod += item.valor_total
        v_ipi += item.tax.valor_ipi
        v_pis += item.tax.valor_pis
        v_cofins += item.tax.valor_cofins

    v_nf = v_prod + v_ipi + g.frete + g.seguro + g.outras_despesas - g.desconto
    if v_nf < 0:
        logger.warning(
            "Invoice total clamped to zero (computed %.2f; discount %.2f exceeds the charges)",
            v_nf,
            g.desconto,
        )
        v_nf = ZERO

    return InvoiceTotals(
        v_bc=money(v_bc),
        v_icms=money(v_icms),
        v_prod=money(v_prod),
        v_frete=money(g.frete),
        v_seg=money(g.seguro),
        v_desc=money(g.desconto),
        v_ipi=money(v_ipi),
        v_pis=money(v_pis),
        v_cofins=money(v_cofins),
        v_outro=money(g.outras_despesas),
        v_nf=money(v_nf),
    )


def recalculate(invoice: InvoiceData) -> InvoiceData:
    """Return a copy of *invoice* with every item and the totals recomputed."""
    produtos = [calculate_item_tax(p, invoice.emitente.crt) for p in invoice.produtos]
    return replace(
        invoice,
        produtos=produtos,
        totais=calculate_invoice_totals(produtos, invoice.global_values),
    )
