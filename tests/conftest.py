from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from emissor_nfe.config import NFE_NS
from emissor_nfe.models.context import EmissionContext
from emissor_nfe.models.entity import Crt, Entity
from emissor_nfe.models.invoice import GlobalValues, InvoiceData, LineItem, Payment
from emissor_nfe.models.tax import IcmsSimples, PisCofins
from emissor_nfe.services.tax_engine import recalculate
from emissor_nfe.utils.access_key import access_key_for_invoice
from emissor_nfe.utils.certificate import load_certificate

NS = {"n": NFE_NS}

EMITTER_CNPJ = "11222333000181"
RECIPIENT_CNPJ = "11444777000161"


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an NF-e element by namespaced xpath (prefix ``n:``)."""
    found = el.find(xpath, NS)
    return found.text if found is not None else None


# --- Entity fixtures ---


@pytest.fixture
def emitter_dict() -> dict:
    return {
        "cnpj": EMITTER_CNPJ,
        "razao_social": "EMPRESA EXEMPLO LTDA",
        "inscricao_estadual": "111222333444",
        "crt": "1",
        "serie": "1",
        "endereco": {
            "logradouro": "RUA DAS FLORES",
            "numero": "100",
            "bairro": "CENTRO",
            "municipio": "SAO PAULO",
            "codigo_ibge": "3550308",
            "uf": "SP",
            "cep": "01001-000",
        },
    }


@pytest.fixture
def emitter(emitter_dict: dict) -> Entity:
    return Entity.from_dict(emitter_dict)


@pytest.fixture
def recipient_dict() -> dict:
    return {
        "cnpj": RECIPIENT_CNPJ,
        "razaoSocial": "CLIENTE EXEMPLO S.A.",
        "inscricaoEstadual": "123456789012",
        "endereco": {
            "logradouro": "AVENIDA BRASIL",
            "numero": "2000",
            "bairro": "JARDIM AMERICA",
            "municipio": "RIO DE JANEIRO",
            "codigoIbge": "3304557",
            "uf": "RJ",
            "cep": "20040002",
        },
    }


@pytest.fixture
def recipient(recipient_dict: dict) -> Entity:
    return Entity.from_dict(recipient_dict)


# --- Invoice fixtures ---


@pytest.fixture
def line_item() -> LineItem:
    return LineItem(
        codigo="P001",
        descricao="PRODUTO DE TESTE",
        ncm="84713012",
        cfop="6102",
        unidade="UN",
        quantidade=Decimal("2"),
        valor_unitario=Decimal("250.00"),
        icms=IcmsSimples(csosn="102"),
        pis=PisCofins(cst="07"),
        cofins=PisCofins(cst="07"),
    )


@pytest.fixture
def invoice(emitter: Entity, recipient: Entity, line_item: LineItem) -> InvoiceData:
    """Simples Nacional invoice: 500.00 in products + 10.00 freight - 5.00 discount."""
    inv = InvoiceData(
        numero="42",
        serie="1",
        emitente=emitter,
        destinatario=recipient,
        produtos=[line_item],
        data_emissao="2025-01-15T10:00:00-03:00",
        global_values=GlobalValues(
            frete=Decimal("10.00"), desconto=Decimal("5.00"), modalidade_frete="0"
        ),
        pagamento=[Payment(t_pag="17", v_pag=Decimal("505.00"))],
        informacoes_complementares="Documento emitido por ME ou EPP optante pelo Simples Nacional",
        id="inv-1",
    )
    return recalculate(inv)


@pytest.fixture
def keyed_invoice(invoice: InvoiceData) -> InvoiceData:
    invoice.chave_acesso = access_key_for_invoice(
        invoice, datetime.fromisoformat(invoice.data_emissao), c_nf="12345678"
    )
    return invoice


@pytest.fixture
def normal_emitter(emitter_dict: dict) -> Entity:
    return Entity.from_dict({**emitter_dict, "crt": Crt.NORMAL.value})


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, f"EMPRESA EXEMPLO LTDA:{EMITTER_CNPJ}"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def pfx_bytes(test_key_and_cert) -> tuple[bytes, str]:
    key, cert = test_key_and_cert
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(b"testpass"),
    )
    return pfx_data, "testpass"


@pytest.fixture
def test_pfx(tmp_path, pfx_bytes):
    pfx_data, password = pfx_bytes
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), password


@pytest.fixture
def ctx(pfx_bytes) -> EmissionContext:
    pfx_data, password = pfx_bytes
    return EmissionContext(env="homologacao", certificate=load_certificate(pfx_data, password))


@pytest.fixture
def ctx_without_cert() -> EmissionContext:
    return EmissionContext(env="homologacao")


# --- Config / data dir fixtures ---


@pytest.fixture
def config_dir(tmp_path, emitter_dict, recipient_dict):
    import yaml

    cfg = tmp_path / "config"
    cfg.mkdir()
    (cfg / "emitter.yaml").write_text(yaml.dump(emitter_dict))
    recipients = cfg / "recipients"
    recipients.mkdir()
    (recipients / "cliente.yaml").write_text(yaml.dump(recipient_dict))
    return cfg


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    data = tmp_path / "data"
    monkeypatch.setenv("EMISSOR_NFE_DATA_DIR", str(data))
    return data
