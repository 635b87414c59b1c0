from __future__ import annotations

from datetime import datetime
from unittest.mock import patch

import pytest
from lxml import etree

from emissor_nfe.config import BRT, NFE_NS
from emissor_nfe.models.invoice import EventType, InvoiceStatus
from emissor_nfe.services import emission as emission_mod
from emissor_nfe.services.exceptions import (
    InvalidTransitionError,
    RetryableTransmissionError,
    SefazRejectError,
    TransmissionError,
    ValidationError,
)
from emissor_nfe.services.http_retry import RetryPolicy
from emissor_nfe.services.sefaz_client import SefazResponse
from emissor_nfe.utils.access_key import is_valid_access_key

S = InvoiceStatus
NOW = datetime(2025, 1, 20, 9, 30, 0, tzinfo=BRT)
JUSTIFICATIVA = "Cliente desistiu da compra"

FAST_RETRY = RetryPolicy(
    max_attempts=3,
    base_delay=0.0,
    max_delay=0.0,
    backoff_factor=1.0,
    jitter=0.0,
    retryable_exceptions=(RetryableTransmissionError,),
)


def _prot_element(c_stat: str = "100") -> etree._Element:
    return etree.fromstring(
        f'<protNFe xmlns="{NFE_NS}" versao="4.00"><infProt>'
        f"<nProt>135250000000001</nProt><cStat>{c_stat}</cStat></infProt></protNFe>"
    )


def _authorized_response() -> SefazResponse:
    return SefazResponse(
        c_stat="100",
        x_motivo="Autorizado o uso da NF-e",
        protocolo="135250000000001",
        element=_prot_element(),
    )


def _event_response(c_stat: str = "135") -> SefazResponse:
    return SefazResponse(
        c_stat=c_stat, x_motivo="Evento registrado e vinculado a NF-e", protocolo="135250000000099"
    )


@pytest.fixture
def _patch_emission(tmp_path):
    """Patch signing, transport and persistence for emission tests."""
    with (
        patch.object(
            emission_mod, "get_issued_dir", side_effect=lambda env: tmp_path / env / "issued"
        ),
        patch.object(emission_mod, "sign_nfe", side_effect=lambda nfe, *a: nfe) as mock_sign,
        patch.object(emission_mod, "sign_event", side_effect=lambda ev, *a: ev) as mock_sign_ev,
        patch.object(emission_mod, "authorize", return_value=_authorized_response()) as mock_auth,
        patch.object(emission_mod, "send_event", return_value=_event_response()) as mock_event,
        patch.object(emission_mod, "query_protocol") as mock_query,
        patch.object(emission_mod, "_now_brt", return_value=NOW),
        patch.object(emission_mod, "upsert_invoice", return_value={}) as mock_upsert,
        patch.object(emission_mod, "load_invoice", return_value=None) as mock_load,
        patch.object(emission_mod, "remove_invoice", return_value=True) as mock_remove,
    ):
        yield {
            "mock_sign": mock_sign,
            "mock_sign_event": mock_sign_ev,
            "mock_authorize": mock_auth,
            "mock_send_event": mock_event,
            "mock_query": mock_query,
            "mock_upsert": mock_upsert,
            "mock_load": mock_load,
            "mock_remove": mock_remove,
            "tmp_path": tmp_path,
        }


class TestPrepare:
    def test_signs_and_moves_to_transmitting(self, _patch_emission, invoice, ctx):
        prepared = emission_mod.prepare(invoice, ctx)
        assert invoice.status is S.TRANSMITTING
        assert is_valid_access_key(invoice.chave_acesso)
        assert prepared.signed_xml.startswith(b"<?xml")
        assert invoice.xml_assinado == prepared.signed_xml.decode("utf-8")
        assert prepared.env == "homologacao"
        _patch_emission["mock_sign"].assert_called_once()

    def test_keeps_existing_issue_date(self, _patch_emission, invoice, ctx):
        emission_mod.prepare(invoice, ctx)
        assert invoice.data_emissao == "2025-01-15T10:00:00-03:00"
        assert invoice.chave_acesso[2:6] == "2501"

    def test_fills_missing_issue_date(self, _patch_emission, invoice, ctx):
        invoice.data_emissao = ""
        emission_mod.prepare(invoice, ctx)
        assert invoice.data_emissao == "2025-01-20T09:30:00-03:00"

    def test_keeps_existing_key(self, _patch_emission, keyed_invoice, ctx):
        key = keyed_invoice.chave_acesso
        emission_mod.prepare(keyed_invoice, ctx)
        assert keyed_invoice.chave_acesso == key

    def test_no_certificate_leaves_status(self, _patch_emission, invoice, ctx_without_cert):
        with pytest.raises(ValidationError, match="Certificado"):
            emission_mod.prepare(invoice, ctx_without_cert)
        assert invoice.status is S.DRAFT
        _patch_emission["mock_sign"].assert_not_called()

    def test_validation_runs_before_signing(self, _patch_emission, invoice, ctx):
        invoice.pagamento = []
        with pytest.raises(ValidationError, match="pagamentos"):
            emission_mod.prepare(invoice, ctx)
        assert invoice.status is S.DRAFT
        assert invoice.chave_acesso is None
        _patch_emission["mock_sign"].assert_not_called()

    def test_signing_failure_returns_to_editing(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_sign"].side_effect = ValueError("bad key")
        with pytest.raises(ValueError, match="bad key"):
            emission_mod.prepare(invoice, ctx)
        assert invoice.status is S.EDITING

    def test_not_editable(self, _patch_emission, invoice, ctx):
        invoice.status = S.AUTHORIZED
        with pytest.raises(ValidationError):
            emission_mod.prepare(invoice, ctx)


class TestSubmit:
    def test_authorized(self, _patch_emission, invoice, ctx):
        result = emission_mod.emit(invoice, ctx)
        assert result.authorized
        assert invoice.status is S.AUTHORIZED
        assert invoice.protocolo == "135250000000001"
        _patch_emission["mock_authorize"].assert_called_once()
        _patch_emission["mock_upsert"].assert_called_once_with(invoice, "homologacao")

    def test_saves_proc_xml(self, _patch_emission, invoice, ctx):
        result = emission_mod.emit(invoice, ctx)
        assert result.saved_to.endswith(f"{invoice.chave_acesso}-procNFe.xml")
        saved = etree.parse(result.saved_to).getroot()
        assert etree.QName(saved).localname == "nfeProc"
        assert [etree.QName(el).localname for el in saved] == ["NFe", "protNFe"]

    def test_sends_envi_nfe_with_emitter_uf(self, _patch_emission, invoice, ctx):
        emission_mod.emit(invoice, ctx)
        envi, _, c_uf = _patch_emission["mock_authorize"].call_args[0]
        assert etree.QName(envi).localname == "enviNFe"
        assert c_uf == "35"

    def test_rejected(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].return_value = SefazResponse(
            c_stat="539", x_motivo="Duplicidade de NF-e"
        )
        result = emission_mod.emit(invoice, ctx)
        assert not result.authorized
        assert invoice.status is S.REJECTED
        assert invoice.motivo_rejeicao == "539 - Duplicidade de NF-e"
        assert result.saved_to is None

    def test_pending_stays_transmitting(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].return_value = SefazResponse(
            c_stat="105", x_motivo="Lote em processamento"
        )
        emission_mod.emit(invoice, ctx)
        assert invoice.status is S.TRANSMITTING
        _patch_emission["mock_upsert"].assert_called_once()

    def test_transmission_error_keeps_signed_xml(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].side_effect = TransmissionError("timeout")
        with pytest.raises(TransmissionError):
            emission_mod.emit(invoice, ctx)
        assert invoice.status is S.TRANSMITTING
        assert invoice.xml_assinado
        assert invoice.chave_acesso
        _patch_emission["mock_upsert"].assert_called_once_with(invoice, "homologacao")

    def test_fires_once_without_policy(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].side_effect = RetryableTransmissionError("refused")
        with pytest.raises(RetryableTransmissionError):
            emission_mod.emit(invoice, ctx)
        assert _patch_emission["mock_authorize"].call_count == 1

    def test_retries_with_policy(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].side_effect = [
            RetryableTransmissionError("refused"),
            _authorized_response(),
        ]
        result = emission_mod.emit(invoice, ctx, retry_policy=FAST_RETRY)
        assert result.authorized
        assert _patch_emission["mock_authorize"].call_count == 2

    def test_registry_failure_does_not_lose_result(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_upsert"].side_effect = OSError("disk full")
        result = emission_mod.emit(invoice, ctx)
        assert result.authorized


class TestResubmit:
    def test_resends_stored_xml_without_signing(self, _patch_emission, invoice, ctx):
        _patch_emission["mock_authorize"].side_effect = TransmissionError("timeout")
        with pytest.raises(TransmissionError):
            emission_mod.emit(invoice, ctx)
        key = invoice.chave_acesso

        _patch_emission["mock_authorize"].side_effect = None
        result = emission_mod.resubmit(invoice, ctx)
        assert result.authorized
        assert invoice.chave_acesso == key
        assert _patch_emission["mock_sign"].call_count == 1

    def test_requires_transmitting(self, _patch_emission, invoice, ctx):
        with pytest.raises(ValidationError, match="reenviadas"):
            emission_mod.resubmit(invoice, ctx)


@pytest.fixture
def authorized(keyed_invoice):
    keyed_invoice.status = S.AUTHORIZED
    keyed_invoice.protocolo = "135250000000001"
    return keyed_invoice


class TestCancel:
    def test_success(self, _patch_emission, authorized, ctx):
        result = emission_mod.cancel(authorized, JUSTIFICATIVA, ctx)
        assert authorized.status is S.CANCELLED
        assert result.response.protocolo == "135250000000099"
        events = authorized.events_of(EventType.CANCELAMENTO)
        assert len(events) == 1
        assert events[0].data == "2025-01-20T09:30:00-03:00"
        assert "110111" in events[0].xml
        _patch_emission["mock_upsert"].assert_called_once()

    def test_short_justification_sends_nothing(self, _patch_emission, authorized, ctx):
        with pytest.raises(ValidationError):
            emission_mod.cancel(authorized, "0123456789", ctx)
        _patch_emission["mock_send_event"].assert_not_called()
        assert authorized.status is S.AUTHORIZED

    def test_sefaz_rejection(self, _patch_emission, authorized, ctx):
        _patch_emission["mock_send_event"].return_value = _event_response(c_stat="501")
        with pytest.raises(SefazRejectError) as exc_info:
            emission_mod.cancel(authorized, JUSTIFICATIVA, ctx)
        assert exc_info.value.c_stat == "501"
        assert authorized.status is S.AUTHORIZED
        assert authorized.historico_eventos == []

    def test_not_authorized(self, _patch_emission, keyed_invoice, ctx):
        with pytest.raises(InvalidTransitionError):
            emission_mod.cancel(keyed_invoice, JUSTIFICATIVA, ctx)

    def test_no_certificate(self, _patch_emission, authorized, ctx_without_cert):
        with pytest.raises(ValidationError, match="Certificado"):
            emission_mod.cancel(authorized, JUSTIFICATIVA, ctx_without_cert)
        _patch_emission["mock_send_event"].assert_not_called()


class TestCorrect:
    def test_success(self, _patch_emission, authorized, ctx):
        emission_mod.correct(authorized, "Corrigir endereco de entrega", ctx)
        emission_mod.correct(authorized, "Corrigir complemento do endereco", ctx)
        assert authorized.status is S.AUTHORIZED
        assert [e.sequencia for e in authorized.events_of(EventType.CCE)] == [1, 2]
        env_evento = _patch_emission["mock_send_event"].call_args[0][0]
        n_seq = env_evento.find(f"{{{NFE_NS}}}evento/{{{NFE_NS}}}infEvento/{{{NFE_NS}}}nSeqEvento")
        assert n_seq.text == "2"

    def test_rejected_event_not_recorded(self, _patch_emission, authorized, ctx):
        _patch_emission["mock_send_event"].return_value = _event_response(c_stat="573")
        with pytest.raises(SefazRejectError):
            emission_mod.correct(authorized, "Corrigir endereco de entrega", ctx)
        assert authorized.historico_eventos == []


class TestReconcile:
    def test_pending_becomes_authorized(self, _patch_emission, keyed_invoice, ctx):
        keyed_invoice.status = S.TRANSMITTING
        _patch_emission["mock_query"].return_value = SefazResponse(
            c_stat="100", x_motivo="Autorizado", protocolo="135250000000777"
        )
        emission_mod.reconcile(keyed_invoice, ctx)
        assert keyed_invoice.status is S.AUTHORIZED
        assert keyed_invoice.protocolo == "135250000000777"

    def test_cancelled_elsewhere(self, _patch_emission, authorized, ctx):
        _patch_emission["mock_query"].return_value = SefazResponse(c_stat="101", x_motivo="Cancelada")
        emission_mod.reconcile(authorized, ctx)
        assert authorized.status is S.CANCELLED

    def test_not_found_keeps_status(self, _patch_emission, keyed_invoice, ctx):
        keyed_invoice.status = S.TRANSMITTING
        _patch_emission["mock_query"].return_value = SefazResponse(c_stat="217", x_motivo="Nao consta")
        result = emission_mod.reconcile(keyed_invoice, ctx)
        assert keyed_invoice.status is S.TRANSMITTING
        assert result.response.c_stat == "217"

    def test_requires_key(self, _patch_emission, invoice, ctx):
        with pytest.raises(ValidationError, match="chave"):
            emission_mod.reconcile(invoice, ctx)


class TestImportAndDelete:
    def test_import_xml_registers(self, _patch_emission, keyed_invoice):
        from emissor_nfe.services.nfe_builder import build_nfe

        raw = etree.tostring(build_nfe(keyed_invoice, "2"))
        imported = emission_mod.import_xml(raw, "homologacao")
        assert imported.chave_acesso == keyed_invoice.chave_acesso
        assert imported.status is S.AUTHORIZED
        _patch_emission["mock_upsert"].assert_called_once_with(imported, "homologacao")

    def test_reimport_keeps_cancellation_and_events(self, _patch_emission, keyed_invoice):
        from emissor_nfe.models.invoice import InvoiceEvent
        from emissor_nfe.services.nfe_builder import build_nfe

        raw = etree.tostring(build_nfe(keyed_invoice, "2"))
        cancelled = emission_mod.import_xml(raw, "homologacao")
        cancelled.status = S.CANCELLED
        cancelled.protocolo = "135250000000001"
        event = InvoiceEvent(
            tipo=EventType.CANCELAMENTO,
            data="2025-01-21T10:00:00-03:00",
            detalhe=JUSTIFICATIVA,
            protocolo="135250000000099",
        )
        cancelled.historico_eventos = [event]
        _patch_emission["mock_load"].return_value = cancelled

        again = emission_mod.import_xml(raw, "homologacao")
        assert again.status is S.CANCELLED
        assert again.historico_eventos == [event]
        assert again.protocolo == "135250000000001"
        assert again.id == cancelled.id
        _patch_emission["mock_load"].assert_called_with(keyed_invoice.chave_acesso, "homologacao")

    def test_reimport_as_draft_keeps_authorized(self, _patch_emission, keyed_invoice):
        from emissor_nfe.services.nfe_builder import build_nfe

        raw = etree.tostring(build_nfe(keyed_invoice, "2"))
        _patch_emission["mock_load"].return_value = emission_mod.import_xml(raw, "homologacao")
        again = emission_mod.import_xml(raw, "homologacao", default_status=S.DRAFT)
        assert again.status is S.AUTHORIZED

    def test_reimport_can_move_forward(self, _patch_emission, keyed_invoice):
        from emissor_nfe.services.nfe_builder import build_nfe

        raw = etree.tostring(build_nfe(keyed_invoice, "2"))
        _patch_emission["mock_load"].return_value = emission_mod.import_xml(raw, "homologacao")
        again = emission_mod.import_xml(raw, "homologacao", default_status=S.CANCELLED)
        assert again.status is S.CANCELLED

    def test_delete_draft(self, _patch_emission, invoice):
        assert emission_mod.delete_draft(invoice) is True
        _patch_emission["mock_remove"].assert_called_once_with("inv-1")

    def test_delete_authorized_refused(self, _patch_emission, authorized):
        with pytest.raises(ValidationError):
            emission_mod.delete_draft(authorized)
        _patch_emission["mock_remove"].assert_not_called()

    def test_save_xml(self, _patch_emission, invoice, ctx):
        prepared = emission_mod.prepare(invoice, ctx)
        path = emission_mod.save_xml(prepared)
        assert path.endswith(f"dry_run_{invoice.chave_acesso}-nfe.xml")
        with open(path, "rb") as fh:
            assert fh.read() == prepared.signed_xml
