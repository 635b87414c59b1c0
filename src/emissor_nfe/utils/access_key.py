from __future__ import annotations

import re
import secrets
from datetime import datetime

from emissor_nfe.config import MODELO_NFE
from emissor_nfe.utils.formatters import only_digits
from emissor_nfe.utils.validators import get_ibge_uf_code


def calc_check_digit(base: str) -> int:
    """Modulo-11 check digit of a 43-digit access key base.

    Weights 2..9 cycle from the rightmost digit; remainders 0 and 1 give 0.
    """
    if not re.fullmatch(r"\d{43}", base):
        raise ValueError(f"Base da chave deve ter 43 digitos, recebido: '{base}'")
    total = 0
    weight = 2
    for digit in reversed(base):
        total += int(digit) * weight
        weight = 2 if weight == 9 else weight + 1
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def generate_access_key(
    c_uf: str,
    aamm: str,
    cnpj: str,
    serie: str,
    numero: str,
    tp_emis: str = "1",
    c_nf: str | None = None,
    modelo: str = MODELO_NFE,
) -> str:
    """Generate the 44-digit NF-e access key.

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
    + tpEmis(1) + cNF(8) + cDV(1)
    """
    if c_nf is None:
        c_nf = str(secrets.randbelow(100_000_000))
        while int(c_nf) == int(numero):
            c_nf = str(secrets.randbelow(100_000_000))
    base = "".join([
        c_uf.zfill(2),
        aamm,
        only_digits(cnpj).zfill(14),
        modelo,
        str(int(serie)).zfill(3),
        str(int(numero)).zfill(9),
        tp_emis,
        c_nf.zfill(8),
    ])
    return f"{base}{calc_check_digit(base)}"


def access_key_for_invoice(invoice, issued_at: datetime, c_nf: str | None = None) -> str:
    """Derive the access key of *invoice* from its emitter, series and number."""
    return generate_access_key(
        c_uf=get_ibge_uf_code(invoice.emitente.endereco.uf),
        aamm=issued_at.strftime("%y%m"),
        cnpj=invoice.emitente.cnpj,
        serie=invoice.serie,
        numero=invoice.numero,
        c_nf=c_nf,
    )


def is_valid_access_key(key: str) -> bool:
    """True for 44 digits whose last digit matches the modulo-11 check."""
    if not re.fullmatch(r"\d{44}", key or ""):
        return False
    return calc_check_digit(key[:43]) == int(key[43])


def validate_access_key(key: str) -> str:
    """Validate an NF-e access key, returning it unchanged."""
    if not is_valid_access_key(key):
        raise ValueError("Chave de acesso: deve ter 44 digitos com digito verificador valido")
    return key


def split_access_key(key: str) -> dict[str, str]:
    """Split a 44-digit key into its named fields."""
    return {
        "cUF": key[0:2],
        "AAMM": key[2:6],
        "CNPJ": key[6:20],
        "mod": key[20:22],
        "serie": key[22:25],
        "nNF": key[25:34],
        "tpEmis": key[34:35],
        "cNF": key[35:43],
        "cDV": key[43:44],
    }
