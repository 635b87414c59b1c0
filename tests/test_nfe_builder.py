from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest
from lxml import etree

from emissor_nfe.config import NFE_NS
from emissor_nfe.models.tax import IcmsImportado, IcmsNormal, IcmsSimples, Ipi, PisCofins
from emissor_nfe.services.nfe_builder import (
    HOMOLOGACAO_XNOME,
    build_cancellation_event,
    build_cons_sit_nfe,
    build_cons_stat_serv,
    build_correction_event,
    build_env_evento,
    build_envi_nfe,
    build_nfe,
    build_nfe_proc,
)
from emissor_nfe.services.tax_engine import recalculate

from tests.conftest import NS, xml_text

DH_EVENTO = "2025-01-20T09:30:00-03:00"


def _inf(nfe: etree._Element) -> etree._Element:
    return nfe.find("n:infNFe", NS)


class TestBuildNfe:
    def test_root_and_id(self, keyed_invoice):
        nfe = build_nfe(keyed_invoice, "2")
        assert nfe.tag == f"{{{NFE_NS}}}NFe"
        inf = _inf(nfe)
        assert inf.get("Id") == f"NFe{keyed_invoice.chave_acesso}"
        assert inf.get("versao") == "4.00"

    def test_section_order(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        tags = [etree.QName(el).localname for el in inf]
        assert tags == ["ide", "emit", "dest", "det", "total", "transp", "pag", "infAdic"]

    def test_ide_from_key(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        key = keyed_invoice.chave_acesso
        assert xml_text(inf, "n:ide/n:cUF") == "35"
        assert xml_text(inf, "n:ide/n:cNF") == "12345678"
        assert xml_text(inf, "n:ide/n:cDV") == key[-1]
        assert xml_text(inf, "n:ide/n:nNF") == "42"
        assert xml_text(inf, "n:ide/n:serie") == "1"
        assert xml_text(inf, "n:ide/n:mod") == "55"
        assert xml_text(inf, "n:ide/n:tpAmb") == "2"
        assert xml_text(inf, "n:ide/n:dhEmi") == "2025-01-15T10:00:00-03:00"

    def test_interstate_destination(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:ide/n:idDest") == "2"

    def test_internal_destination(self, keyed_invoice, emitter):
        keyed_invoice.destinatario = replace(keyed_invoice.destinatario, endereco=emitter.endereco)
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:ide/n:idDest") == "1"

    def test_foreign_destination(self, keyed_invoice):
        dest = keyed_invoice.destinatario
        keyed_invoice.destinatario = replace(dest, endereco=replace(dest.endereco, uf="EX"))
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:ide/n:idDest") == "3"

    def test_emitter(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:emit/n:CNPJ") == "11222333000181"
        assert xml_text(inf, "n:emit/n:CRT") == "1"
        assert xml_text(inf, "n:emit/n:enderEmit/n:CEP") == "01001000"
        assert xml_text(inf, "n:emit/n:enderEmit/n:cMun") == "3550308"

    def test_homologacao_replaces_recipient_name(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:dest/n:xNome") == HOMOLOGACAO_XNOME

    def test_producao_keeps_recipient_name(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "1"))
        assert xml_text(inf, "n:dest/n:xNome") == "CLIENTE EXEMPLO S.A."
        assert xml_text(inf, "n:ide/n:tpAmb") == "1"

    def test_recipient_with_ie(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:dest/n:indIEDest") == "1"
        assert xml_text(inf, "n:dest/n:IE") == "123456789012"

    def test_recipient_cpf_without_ie(self, keyed_invoice):
        keyed_invoice.destinatario = replace(
            keyed_invoice.destinatario, cnpj="52998224725", inscricao_estadual=""
        )
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:dest/n:CPF") == "52998224725"
        assert inf.find("n:dest/n:CNPJ", NS) is None
        assert xml_text(inf, "n:dest/n:indIEDest") == "9"
        assert inf.find("n:dest/n:IE", NS) is None

    def test_product(self, keyed_invoice):
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert det.get("nItem") == "1"
        assert xml_text(det, "n:prod/n:cEAN") == "SEM GTIN"
        assert xml_text(det, "n:prod/n:qCom") == "2.0000"
        assert xml_text(det, "n:prod/n:vUnCom") == "250.0000000000"
        assert xml_text(det, "n:prod/n:vProd") == "500.00"

    def test_simples_icms_group(self, keyed_invoice):
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:ICMS/n:ICMSSN102/n:CSOSN") == "102"

    def test_simples_credit_group(self, keyed_invoice):
        keyed_invoice.produtos = [
            replace(p, icms=IcmsSimples(csosn="101", aliquota_credito=Decimal("2"))) for p in keyed_invoice.produtos
        ]
        keyed_invoice = recalculate(keyed_invoice)
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:ICMS/n:ICMSSN101/n:pCredSN") == "2.00"
        assert xml_text(det, "n:imposto/n:ICMS/n:ICMSSN101/n:vCredICMSSN") == "10.00"

    def test_normal_icms_group(self, keyed_invoice, normal_emitter):
        keyed_invoice.emitente = normal_emitter
        keyed_invoice.produtos = [
            replace(p, icms=IcmsNormal(cst="00", aliquota=Decimal("18"))) for p in keyed_invoice.produtos
        ]
        keyed_invoice = recalculate(keyed_invoice)
        inf = _inf(build_nfe(keyed_invoice, "2"))
        icms00 = inf.find("n:det/n:imposto/n:ICMS/n:ICMS00", NS)
        assert xml_text(icms00, "n:vBC") == "500.00"
        assert xml_text(icms00, "n:pICMS") == "18.00"
        assert xml_text(icms00, "n:vICMS") == "90.00"
        assert xml_text(inf, "n:emit/n:CRT") == "3"
        assert xml_text(inf, "n:total/n:ICMSTot/n:vICMS") == "90.00"

    def test_exempt_icms_group(self, keyed_invoice, normal_emitter):
        keyed_invoice.emitente = normal_emitter
        keyed_invoice.produtos = [replace(p, icms=IcmsNormal(cst="41")) for p in keyed_invoice.produtos]
        det = _inf(build_nfe(recalculate(keyed_invoice), "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:ICMS/n:ICMS40/n:CST") == "41"

    def test_ipi_not_taxed_default(self, keyed_invoice):
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:IPI/n:cEnq") == "999"
        assert xml_text(det, "n:imposto/n:IPI/n:IPINT/n:CST") == "53"

    def test_ipi_taxed(self, keyed_invoice):
        keyed_invoice.produtos = [
            replace(p, ipi=Ipi(cst="50", aliquota=Decimal("10"))) for p in keyed_invoice.produtos
        ]
        keyed_invoice = recalculate(keyed_invoice)
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:det/n:imposto/n:IPI/n:IPITrib/n:vIPI") == "50.00"
        assert xml_text(inf, "n:total/n:ICMSTot/n:vIPI") == "50.00"
        assert xml_text(inf, "n:total/n:ICMSTot/n:vNF") == "555.00"

    def test_pis_cofins_groups(self, keyed_invoice):
        keyed_invoice.produtos = [
            replace(
                p,
                pis=PisCofins(cst="01", aliquota=Decimal("0.65")),
                cofins=PisCofins(cst="99"),
            )
            for p in keyed_invoice.produtos
        ]
        keyed_invoice = recalculate(keyed_invoice)
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:PIS/n:PISAliq/n:vPIS") == "3.25"
        assert xml_text(det, "n:imposto/n:COFINS/n:COFINSOutr/n:CST") == "99"

    def test_pis_not_taxed_group(self, keyed_invoice):
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert xml_text(det, "n:imposto/n:PIS/n:PISNT/n:CST") == "07"

    def test_pis_cofins_per_unit_group(self, keyed_invoice):
        keyed_invoice.produtos = [
            replace(
                p,
                pis=PisCofins(cst="03", aliquota=Decimal("0.5")),
                cofins=PisCofins(cst="03", aliquota=Decimal("1.25")),
            )
            for p in keyed_invoice.produtos
        ]
        keyed_invoice = recalculate(keyed_invoice)
        det = _inf(build_nfe(keyed_invoice, "2")).find("n:det", NS)
        assert det.find("n:imposto/n:PIS/n:PISOutr", NS) is None
        assert xml_text(det, "n:imposto/n:PIS/n:PISQtde/n:CST") == "03"
        assert xml_text(det, "n:imposto/n:PIS/n:PISQtde/n:qBCProd") == "2.0000"
        assert xml_text(det, "n:imposto/n:PIS/n:PISQtde/n:vAliqProd") == "0.5000"
        assert xml_text(det, "n:imposto/n:PIS/n:PISQtde/n:vPIS") == "1.00"
        assert xml_text(det, "n:imposto/n:COFINS/n:COFINSQtde/n:vCOFINS") == "2.50"

    def test_imported_icms_not_emitted(self, keyed_invoice):
        keyed_invoice.produtos = [
            replace(p, icms=IcmsImportado(codigo="500", simples=True))
            for p in keyed_invoice.produtos
        ]
        with pytest.raises(ValueError, match="500"):
            build_nfe(keyed_invoice, "2")

    def test_totals(self, keyed_invoice):
        tot = _inf(build_nfe(keyed_invoice, "2")).find("n:total/n:ICMSTot", NS)
        assert xml_text(tot, "n:vProd") == "500.00"
        assert xml_text(tot, "n:vFrete") == "10.00"
        assert xml_text(tot, "n:vDesc") == "5.00"
        assert xml_text(tot, "n:vNF") == "505.00"
        assert xml_text(tot, "n:vST") == "0.00"

    def test_transport_and_payment(self, keyed_invoice):
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:transp/n:modFrete") == "0"
        assert xml_text(inf, "n:pag/n:detPag/n:tPag") == "17"
        assert xml_text(inf, "n:pag/n:detPag/n:vPag") == "505.00"

    def test_no_payment_falls_back_to_90(self, keyed_invoice):
        keyed_invoice.pagamento = []
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:pag/n:detPag/n:tPag") == "90"
        assert xml_text(inf, "n:pag/n:detPag/n:vPag") == "0.00"

    def test_additional_info_omitted_when_empty(self, keyed_invoice):
        keyed_invoice.informacoes_complementares = ""
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert inf.find("n:infAdic", NS) is None

    def test_reference_for_devolucao(self, keyed_invoice):
        keyed_invoice.finalidade = "4"
        keyed_invoice.ref_nfe = "0" * 44
        inf = _inf(build_nfe(keyed_invoice, "2"))
        assert xml_text(inf, "n:ide/n:finNFe") == "4"
        assert xml_text(inf, "n:ide/n:NFref/n:refNFe") == "0" * 44

    def test_deterministic(self, keyed_invoice):
        first = etree.tostring(build_nfe(keyed_invoice, "2"))
        second = etree.tostring(build_nfe(keyed_invoice, "2"))
        assert first == second

    def test_requires_key(self, invoice):
        with pytest.raises(ValueError, match="chave"):
            build_nfe(invoice, "2")

    def test_requires_issue_date(self, keyed_invoice):
        keyed_invoice.data_emissao = ""
        with pytest.raises(ValueError, match="data de emissao"):
            build_nfe(keyed_invoice, "2")


class TestEnvelopes:
    def test_envi_nfe(self, keyed_invoice):
        nfe = build_nfe(keyed_invoice, "2")
        envi = build_envi_nfe(nfe, "7")
        assert envi.get("versao") == "4.00"
        assert xml_text(envi, "n:idLote") == "7"
        assert xml_text(envi, "n:indSinc") == "1"
        assert envi.find("n:NFe/n:infNFe", NS) is not None
        # the original element is copied, not moved
        assert nfe.getparent() is None

    def test_nfe_proc(self, keyed_invoice):
        nfe = build_nfe(keyed_invoice, "2")
        prot = etree.fromstring(
            f'<protNFe xmlns="{NFE_NS}" versao="4.00"><infProt><cStat>100</cStat></infProt></protNFe>'
        )
        proc = build_nfe_proc(nfe, prot)
        assert [etree.QName(el).localname for el in proc] == ["NFe", "protNFe"]

    def test_cons_sit_nfe(self):
        cons = build_cons_sit_nfe("0" * 44, "2")
        assert xml_text(cons, "n:xServ") == "CONSULTAR"
        assert xml_text(cons, "n:chNFe") == "0" * 44

    def test_cons_sit_nfe_rejects_bad_key(self):
        with pytest.raises(ValueError):
            build_cons_sit_nfe("123", "2")

    def test_cons_stat_serv(self):
        cons = build_cons_stat_serv("35", "1")
        assert xml_text(cons, "n:cUF") == "35"
        assert xml_text(cons, "n:tpAmb") == "1"
        assert xml_text(cons, "n:xServ") == "STATUS"


class TestEvents:
    def test_cancellation(self, keyed_invoice):
        keyed_invoice.protocolo = "135250000000001"
        evento = build_cancellation_event(keyed_invoice, "Erro no valor do produto", "2", DH_EVENTO)
        inf = evento.find("n:infEvento", NS)
        key = keyed_invoice.chave_acesso
        assert inf.get("Id") == f"ID110111{key}01"
        assert xml_text(inf, "n:cOrgao") == "35"
        assert xml_text(inf, "n:tpEvento") == "110111"
        assert xml_text(inf, "n:nSeqEvento") == "1"
        assert xml_text(inf, "n:dhEvento") == DH_EVENTO
        assert xml_text(inf, "n:detEvento/n:descEvento") == "Cancelamento"
        assert xml_text(inf, "n:detEvento/n:nProt") == "135250000000001"
        assert xml_text(inf, "n:detEvento/n:xJust") == "Erro no valor do produto"

    def test_cancellation_requires_protocol(self, keyed_invoice):
        with pytest.raises(ValueError, match="protocolo"):
            build_cancellation_event(keyed_invoice, "Erro no valor do produto", "2", DH_EVENTO)

    def test_correction(self, keyed_invoice):
        evento = build_correction_event(
            keyed_invoice, "Corrigir endereco de entrega", 3, "2", DH_EVENTO
        )
        inf = evento.find("n:infEvento", NS)
        assert inf.get("Id") == f"ID110110{keyed_invoice.chave_acesso}03"
        assert xml_text(inf, "n:nSeqEvento") == "3"
        assert xml_text(inf, "n:detEvento/n:descEvento") == "Carta de Correcao"
        assert xml_text(inf, "n:detEvento/n:xCorrecao") == "Corrigir endereco de entrega"
        assert xml_text(inf, "n:detEvento/n:xCondUso").startswith("A Carta de Correcao")

    def test_env_evento(self, keyed_invoice):
        evento = build_correction_event(keyed_invoice, "Corrigir endereco de entrega", 1, "2", DH_EVENTO)
        env = build_env_evento(evento, "9")
        assert env.get("versao") == "1.00"
        assert xml_text(env, "n:idLote") == "9"
        assert env.find("n:evento/n:infEvento", NS) is not None
