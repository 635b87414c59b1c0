from __future__ import annotations

import re
from decimal import Decimal

from emissor_nfe.services.exceptions import ValidationError
from emissor_nfe.utils.formatters import money, only_digits, sanitize_text

# IBGE state codes (MOC, tabela de UF)
UF_CODES = {
    "RO": "11", "AC": "12", "AM": "13", "RR": "14", "PA": "15", "AP": "16", "TO": "17",
    "MA": "21", "PI": "22", "CE": "23", "RN": "24", "PB": "25", "PE": "26", "AL": "27",
    "SE": "28", "BA": "29", "MG": "31", "ES": "32", "RJ": "33", "SP": "35", "PR": "41",
    "SC": "42", "RS": "43", "MS": "50", "MT": "51", "GO": "52", "DF": "53",
}

MODALIDADES_FRETE = frozenset({"0", "1", "2", "3", "4", "9"})
FINALIDADES = frozenset({"1", "2", "3", "4"})
FINALIDADES_SEM_PAGAMENTO = frozenset({"3", "4"})
SEM_PAGAMENTO = "90"

JUSTIFICATIVA_MIN = 15
JUSTIFICATIVA_MAX = 255
CORRECAO_MAX = 1000


def get_ibge_uf_code(uf: str) -> str:
    """Return the 2-digit IBGE code of a UF abbreviation."""
    code = UF_CODES.get((uf or "").upper())
    if code is None:
        raise ValidationError(f"UF desconhecida: '{uf}'", field="uf")
    return code


def _cnpj_digit(numbers: str) -> int:
    weights = list(range(len(numbers) - 7, 1, -1)) + list(range(9, 1, -1))
    total = sum(int(n) * w for n, w in zip(numbers, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str) -> bool:
    """Check a CNPJ's two modulo-11 check digits. Punctuation is ignored."""
    cnpj = only_digits(value)
    if len(cnpj) != 14 or cnpj == cnpj[0] * 14:
        return False
    if _cnpj_digit(cnpj[:12]) != int(cnpj[12]):
        return False
    return _cnpj_digit(cnpj[:13]) == int(cnpj[13])


def is_valid_cpf(value: str) -> bool:
    cpf = only_digits(value)
    if len(cpf) != 11 or cpf == cpf[0] * 11:
        return False
    for size in (9, 10):
        total = sum(int(cpf[i]) * (size + 1 - i) for i in range(size))
        digit = (total * 10) % 11 % 10
        if digit != int(cpf[size]):
            return False
    return True


def validate_cnpj(value: str, field: str = "cnpj") -> str:
    """Return the CNPJ digits or raise ValidationError."""
    if not is_valid_cnpj(value):
        raise ValidationError(f"CNPJ invalido: '{value}'", field=field)
    return only_digits(value)


def validate_required(value: object, field: str) -> None:
    if isinstance(value, str):
        ok = bool(value.strip())
    else:
        ok = value is not None
    if not ok:
        raise ValidationError(f"Campo obrigatorio nao preenchido: {field}", field=field)


def validate_entity(entity, role: str) -> None:
    """Validate an emitter ("emitente") or recipient ("destinatario")."""
    tax_id = only_digits(entity.cnpj)
    if role == "destinatario" and len(tax_id) == 11:
        if not is_valid_cpf(tax_id):
            raise ValidationError(f"CPF invalido: '{entity.cnpj}'", field=f"{role}.cnpj")
    else:
        validate_cnpj(entity.cnpj, field=f"{role}.cnpj")

    validate_required(entity.razao_social, f"{role}.razaoSocial")
    if role == "emitente":
        validate_required(only_digits(entity.inscricao_estadual), f"{role}.inscricaoEstadual")

    end = entity.endereco
    for name in ("logradouro", "numero", "bairro", "municipio"):
        validate_required(getattr(end, name), f"{role}.endereco.{name}")
    if not re.fullmatch(r"\d{7}", only_digits(end.codigo_ibge)):
        raise ValidationError(
            "Codigo IBGE do municipio deve ter 7 digitos", field=f"{role}.endereco.codigoIbge"
        )
    if end.uf != "EX":
        get_ibge_uf_code(end.uf)
    if not re.fullmatch(r"\d{8}", only_digits(end.cep)):
        raise ValidationError("CEP deve ter 8 digitos", field=f"{role}.endereco.cep")


def validate_item(item, index: int) -> None:
    from emissor_nfe.models.tax import IcmsImportado

    prefix = f"produtos[{index}]"
    validate_required(item.codigo, f"{prefix}.codigo")
    validate_required(item.descricao, f"{prefix}.descricao")
    validate_required(item.unidade, f"{prefix}.unidade")
    if not re.fullmatch(r"\d{8}", only_digits(item.ncm)):
        raise ValidationError("NCM deve ter 8 digitos", field=f"{prefix}.ncm")
    if not re.fullmatch(r"\d{4}", only_digits(item.cfop)):
        raise ValidationError("CFOP deve ter 4 digitos", field=f"{prefix}.cfop")
    if item.quantidade <= 0:
        raise ValidationError("Quantidade deve ser positiva", field=f"{prefix}.quantidade")
    if item.valor_unitario < 0:
        raise ValidationError(
            "Valor unitario nao pode ser negativo", field=f"{prefix}.valorUnitario"
        )
    if isinstance(item.icms, IcmsImportado):
        raise ValidationError(
            f"Codigo de ICMS '{item.icms.codigo}' nao suportado na emissao",
            field=f"{prefix}.icms",
        )


def validate_payments(invoice) -> None:
    """The sum of the payments must match the invoice total (to the cent).

    Adjustment (3) and return (4) invoices carry a single ``tPag`` 90
    (sem pagamento) with ``vPag`` zero instead.
    """
    if invoice.finalidade in FINALIDADES_SEM_PAGAMENTO:
        pagamento = invoice.pagamento
        single = len(pagamento) == 1 and pagamento[0].t_pag == SEM_PAGAMENTO
        if not single or money(pagamento[0].v_pag) != 0:
            raise ValidationError(
                f"Nota de ajuste/devolucao exige um unico pagamento tPag {SEM_PAGAMENTO} zerado",
                field="pagamento",
            )
        return
    paid = money(sum((p.v_pag for p in invoice.pagamento), Decimal("0")))
    if paid != money(invoice.totais.v_nf):
        raise ValidationError(
            f"Soma dos pagamentos ({paid:.2f}) difere do total da nota ({invoice.totais.v_nf:.2f})",
            field="pagamento",
        )


def validate_justification(
    text: str,
    field: str = "justificativa",
    minimum: int = JUSTIFICATIVA_MIN,
    maximum: int = JUSTIFICATIVA_MAX,
) -> str:
    """Free text for cancellation and correction events.

    Bounds apply to the text as it will be transmitted, after sanitizing.
    """
    cleaned = sanitize_text(text)
    if len(cleaned) < minimum:
        raise ValidationError(f"{field} deve ter ao menos {minimum} caracteres", field=field)
    if len(cleaned) > maximum:
        raise ValidationError(f"{field} deve ter no maximo {maximum} caracteres", field=field)
    return cleaned


def validate_invoice(invoice) -> None:
    """Run every pre-signing check; raises ValidationError on the first failure."""
    from emissor_nfe.utils.access_key import is_valid_access_key

    if not re.fullmatch(r"\d{1,9}", invoice.numero) or int(invoice.numero) == 0:
        raise ValidationError("Numero da nota deve ter de 1 a 9 digitos", field="numero")
    if not re.fullmatch(r"\d{1,3}", invoice.serie):
        raise ValidationError("Serie deve ter de 1 a 3 digitos", field="serie")
    if invoice.finalidade not in FINALIDADES:
        raise ValidationError(f"Finalidade invalida: '{invoice.finalidade}'", field="finalidade")
    if invoice.finalidade != "1" and not is_valid_access_key(invoice.ref_nfe or ""):
        raise ValidationError("NF-e referenciada obrigatoria para esta finalidade", field="refNFe")
    if invoice.global_values.modalidade_frete not in MODALIDADES_FRETE:
        raise ValidationError("Modalidade de frete invalida", field="globalValues.modalidadeFrete")

    validate_entity(invoice.emitente, "emitente")
    validate_entity(invoice.destinatario, "destinatario")

    if not invoice.produtos:
        raise ValidationError("A nota deve ter ao menos um produto", field="produtos")
    for i, item in enumerate(invoice.produtos):
        validate_item(item, i)

    validate_payments(invoice)
