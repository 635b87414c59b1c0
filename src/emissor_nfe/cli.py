from __future__ import annotations

import argparse
import getpass
import logging
import stat
import sys
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from importlib.resources import files
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from emissor_nfe.models.context import EmissionContext

TEMPLATES = [
    "emitter.yaml.example",
    "recipients/cliente-exemplo.yaml.example",
    "nota.yaml.example",
]


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissoes abertas.")
            print("  Recomendacao: chmod 600", env_file)
    except OSError:
        pass


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate setup. Returns True if cert was configured."""
    from emissor_nfe.config import _delete_keyring_password, _set_keyring_password
    from emissor_nfe.services.exceptions import CertificateError
    from emissor_nfe.utils.certificate import certificate_info, load_certificate

    print()
    print("Configuracao do certificado digital (A1)")
    print()

    while True:
        pfx_path = input("Caminho do certificado .pfx/.p12 (vazio para pular): ").strip()
        if not pfx_path:
            print("  Configuracao de certificado pulada.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  Arquivo nao encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Senha do certificado: ")

    print()
    print("Validando certificado...")
    try:
        info = certificate_info(load_certificate(Path(pfx_path).read_bytes(), pfx_password))
    except CertificateError as e:
        print(f"  ERRO: {e}")
        print("  Configuracao de certificado abortada.")
        return False

    print(f"  Sujeito: {info['subject']}")
    print(f"  Valido ate: {info['not_after']}")
    print("  Certificado valido" if info["valid"] else "  AVISO: Certificado expirado")

    env_file = config_dir / ".env"
    _upsert_env_var(env_file, "CERT_PFX_PATH", pfx_path)

    print()
    print("Onde deseja armazenar a senha?")
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretorio de configuracao"))
    options.append(("3", "Nao armazenar (definir manualmente)"))
    for num, label in options:
        print(f"  {num}. {label}")

    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1":
        if _set_keyring_password(pfx_password):
            print("  Senha armazenada no keychain do sistema.")
            _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        else:
            print("  ERRO: Falha ao armazenar no keychain. Salvando no .env como alternativa.")
            _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
            _warn_open_permissions(env_file)
    elif choice == "2":
        _upsert_env_var(env_file, "CERT_PFX_PASSWORD", pfx_password)
        print(f"  Senha salva em {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password()
    else:
        _remove_env_var(env_file, "CERT_PFX_PASSWORD")
        _delete_keyring_password()
        print("  Defina CERT_PFX_PASSWORD no seu shell ou .env antes de usar o emissor.")

    return True


def _init_config(args: argparse.Namespace) -> int:
    """Copy bundled config templates to the user's config/data directories."""
    from emissor_nfe.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_nfe") / "templates"

    (config_dir / "recipients").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    for rel in TEMPLATES:
        dest = config_dir / rel
        if dest.exists():
            print(f"  ja existe: {dest}")
            continue
        dest.write_bytes((templates / rel).read_bytes())
        print(f"  criado: {dest}")

    print()
    print(f"Configuracao: {config_dir}")
    print(f"Dados:        {data_dir}")

    if args.no_cert:
        return 0
    try:
        answer = input("Deseja configurar o certificado digital agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()
    return 0


@contextmanager
def _context(env: str) -> Iterator[EmissionContext]:
    """EmissionContext holding the certificate for one command only."""
    from emissor_nfe.config import get_cert_password, read_cert_bytes
    from emissor_nfe.models.context import EmissionContext
    from emissor_nfe.utils.certificate import certificate_session

    with certificate_session(read_cert_bytes(), get_cert_password()) as bundle:
        ctx = EmissionContext(env=env, certificate=bundle)
        try:
            yield ctx
        finally:
            ctx.certificate = None


def _load_invoice_file(path: Path, env: str):
    """Build an InvoiceData from a nota.yaml: emitter from config, recipient by name.

    Returns the invoice and whether its number was taken from the sequence,
    in which case it still has to be committed once the invoice is signed.
    """
    from emissor_nfe.config import load_emitter, load_recipient, load_yaml
    from emissor_nfe.models.invoice import InvoiceData
    from emissor_nfe.utils.sequence import peek_next_numero

    data = load_yaml(path)
    emitter = load_emitter()
    dest = data.get("destinatario")
    if isinstance(dest, str):
        dest = load_recipient(dest)

    serie = str(data.get("serie") or emitter.get("serie", "1"))
    numero = data.get("numero") or peek_next_numero(env, serie)
    invoice = InvoiceData.from_dict(
        {
            **data,
            "id": data.get("id") or uuid.uuid4().hex,
            "numero": str(numero),
            "serie": serie,
            "emitente": emitter,
            "destinatario": dest,
        }
    )
    return invoice, not data.get("numero")


def _require_invoice(key: str, env: str):
    from emissor_nfe.services.exceptions import ValidationError
    from emissor_nfe.utils.registry import load_invoice

    invoice = load_invoice(key, env)
    if invoice is None:
        raise ValidationError(f"Nota nao encontrada no registro: {key}", field="chave")
    return invoice


def _print_result(result) -> None:
    inv = result.invoice
    resp = result.response
    print(f"Chave:     {inv.chave_acesso}")
    print(f"Status:    {inv.status.value}")
    print(f"SEFAZ:     {resp.c_stat} - {resp.x_motivo}")
    if resp.protocolo:
        print(f"Protocolo: {resp.protocolo}")
    if result.saved_to:
        print(f"XML:       {result.saved_to}")


def _cmd_emitir(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission
    from emissor_nfe.services.http_retry import SEFAZ_RESUBMIT
    from emissor_nfe.utils.formatters import format_brl
    from emissor_nfe.utils.registry import upsert_invoice
    from emissor_nfe.utils.sequence import commit_numero

    invoice, from_sequence = _load_invoice_file(Path(args.arquivo), args.env)
    with _context(args.env) as ctx:
        prepared = emission.prepare(invoice, ctx)
        if from_sequence:
            commit_numero(int(invoice.numero), args.env, invoice.serie)
        print(f"NF-e {invoice.numero}/{invoice.serie}  total {format_brl(invoice.totais.v_nf)}")
        if args.dry_run:
            upsert_invoice(invoice, args.env)
            print(f"XML assinado salvo em {emission.save_xml(prepared)}")
            return 0
        result = emission.submit(prepared, ctx, SEFAZ_RESUBMIT if args.retry else None)
    _print_result(result)
    return 0 if result.authorized else 2


def _cmd_reenviar(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission
    from emissor_nfe.services.http_retry import SEFAZ_RESUBMIT

    invoice = _require_invoice(args.chave, args.env)
    with _context(args.env) as ctx:
        result = emission.resubmit(invoice, ctx, SEFAZ_RESUBMIT if args.retry else None)
    _print_result(result)
    return 0 if result.authorized else 2


def _cmd_importar(args: argparse.Namespace) -> int:
    from emissor_nfe.config import load_emitter
    from emissor_nfe.models.invoice import InvoiceStatus
    from emissor_nfe.services import emission

    expected = None if args.qualquer_emitente else load_emitter()["cnpj"]
    for path in args.arquivos:
        invoice = emission.import_xml(
            Path(path).read_bytes(),
            args.env,
            default_status=InvoiceStatus(args.status),
            expected_issuer_cnpj=expected,
        )
        print(f"{invoice.chave_acesso}  {invoice.status.value}  ({path})")
    return 0


def _cmd_cancelar(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission, lifecycle

    invoice = _require_invoice(args.chave, args.env)
    lifecycle.ensure_cancellable(invoice, args.justificativa)
    with _context(args.env) as ctx:
        result = emission.cancel(invoice, args.justificativa, ctx)
    _print_result(result)
    return 0


def _cmd_cce(args: argparse.Namespace) -> int:
    from emissor_nfe.models.invoice import EventType
    from emissor_nfe.services import emission, lifecycle

    invoice = _require_invoice(args.chave, args.env)
    lifecycle.next_correction_sequence(invoice)
    lifecycle.validate_justification(args.correcao, EventType.CCE)
    with _context(args.env) as ctx:
        result = emission.correct(invoice, args.correcao, ctx)
    _print_result(result)
    return 0


def _cmd_consultar(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission
    from emissor_nfe.services.http_retry import SEFAZ_QUERY

    invoice = _require_invoice(args.chave, args.env)
    with _context(args.env) as ctx:
        result = emission.reconcile(invoice, ctx, SEFAZ_QUERY)
    _print_result(result)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    from emissor_nfe.config import load_emitter
    from emissor_nfe.services.sefaz_client import SERVICE_RUNNING, check_status
    from emissor_nfe.utils.validators import get_ibge_uf_code

    c_uf = get_ibge_uf_code(load_emitter()["endereco"]["uf"])
    with _context(args.env) as ctx:
        resp = check_status(ctx, c_uf)
    print(f"SEFAZ ({args.env}): {resp.c_stat} - {resp.x_motivo}")
    return 0 if resp.c_stat == SERVICE_RUNNING else 2


def _cmd_listar(args: argparse.Namespace) -> int:
    from emissor_nfe.utils.formatters import format_brl
    from emissor_nfe.utils.registry import check_registry_health, list_invoices

    health = check_registry_health()
    if not health.registry_ok:
        print("AVISO: registro de notas corrompido")
    for entry in list_invoices(args.env, args.status):
        total = entry.get("totais", {}).get("vNF", 0)
        print(
            f"{entry.get('chaveAcesso') or entry.get('id')}  "
            f"{entry.get('numero'):>9}/{entry.get('serie')}  "
            f"{entry.get('status'):<12}  {format_brl(str(total))}  "
            f"{entry.get('destinatario', {}).get('razaoSocial', '')}"
        )
    return 0


def _cmd_excluir(args: argparse.Namespace) -> int:
    from emissor_nfe.services import emission

    invoice = _require_invoice(args.chave, args.env)
    emission.delete_draft(invoice)
    print(f"Rascunho excluido: {args.chave}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    from emissor_nfe.config import TP_AMB
    from emissor_nfe.models.invoice import InvoiceStatus

    parser = argparse.ArgumentParser(prog="emissor-nfe", description="Emissor de NF-e (modelo 55)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log de depuracao")
    parser.add_argument(
        "--env", choices=sorted(TP_AMB), default=None, help="ambiente (padrao: NFE_AMBIENTE)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="cria os arquivos de configuracao de exemplo")
    p.add_argument("--no-cert", action="store_true", help="nao configurar o certificado")
    p.set_defaults(func=_init_config)

    p = sub.add_parser("emitir", help="valida, assina e transmite uma nota")
    p.add_argument("arquivo", help="nota.yaml")
    p.add_argument("--dry-run", action="store_true", help="somente assina e salva o XML")
    p.add_argument("--retry", action="store_true", help="repete em falhas de conexao")
    p.set_defaults(func=_cmd_emitir)

    p = sub.add_parser("reenviar", help="reenvia o XML assinado de uma nota em transmissao")
    p.add_argument("chave")
    p.add_argument("--retry", action="store_true", help="repete em falhas de conexao")
    p.set_defaults(func=_cmd_reenviar)

    p = sub.add_parser("importar", help="importa XML de NF-e para o registro")
    p.add_argument("arquivos", nargs="+")
    p.add_argument(
        "--status",
        choices=[s.value for s in InvoiceStatus],
        default=InvoiceStatus.AUTHORIZED.value,
        help="status quando o XML nao traz protNFe",
    )
    p.add_argument("--qualquer-emitente", action="store_true", help="aceita outro CNPJ emitente")
    p.set_defaults(func=_cmd_importar)

    p = sub.add_parser("cancelar", help="cancela uma nota autorizada")
    p.add_argument("chave")
    p.add_argument("justificativa")
    p.set_defaults(func=_cmd_cancelar)

    p = sub.add_parser("cce", help="envia carta de correcao")
    p.add_argument("chave")
    p.add_argument("correcao")
    p.set_defaults(func=_cmd_cce)

    p = sub.add_parser("consultar", help="consulta o protocolo na SEFAZ e atualiza o status")
    p.add_argument("chave")
    p.set_defaults(func=_cmd_consultar)

    p = sub.add_parser("status", help="status do servico da SEFAZ")
    p.set_defaults(func=_cmd_status)

    p = sub.add_parser("listar", help="lista as notas do registro")
    p.add_argument("--status", choices=[s.value for s in InvoiceStatus])
    p.set_defaults(func=_cmd_listar)

    p = sub.add_parser("excluir", help="exclui um rascunho")
    p.add_argument("chave", help="chave ou id do rascunho")
    p.set_defaults(func=_cmd_excluir)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the emissor-nfe CLI."""
    from emissor_nfe.config import get_env
    from emissor_nfe.services.exceptions import NFeError, SefazRejectError, ValidationError

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.env is None:
            args.env = get_env()
        return args.func(args)
    except ValidationError as e:
        where = f" [{e.field}]" if e.field else ""
        print(f"Erro de validacao{where}: {e}", file=sys.stderr)
        return 1
    except SefazRejectError as e:
        print(f"Rejeitado pela SEFAZ: {e}", file=sys.stderr)
        return 2
    except NFeError as e:
        print(f"Erro: {e}", file=sys.stderr)
        return 1
    except KeyError as e:
        print(f"Configuracao ausente: {e}", file=sys.stderr)
        return 1
    except (FileNotFoundError, ValueError) as e:
        print(f"Erro: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
