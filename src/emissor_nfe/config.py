from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

KEYRING_SERVICE = "emissor-nfe"
KEYRING_USERNAME = "cert-pfx-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in the
    shell, dev layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("EMISSOR_NFE_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir("emissor-nfe"))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/emissor_nfe/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir("emissor-nfe"))
    return Path(platformdirs.user_data_dir("emissor-nfe"))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("EMISSOR_NFE_DATA_DIR", "data", kind="data")


NFE_NS = "http://www.portalfiscal.inf.br/nfe"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
WSDL_BASE = "http://www.portalfiscal.inf.br/nfe/wsdl"

NFE_VERSION = "4.00"
EVENT_VERSION = "1.00"
MODELO_NFE = "55"
VER_PROC = "emissor-nfe 0.1.0"

BRT = timezone(timedelta(hours=-3))

# SP authorizer; other UFs only change the host names.
ENDPOINTS = {
    "homologacao": {
        "autorizacao": "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx",
        "evento": "https://homologacao.nfe.fazenda.sp.gov.br/ws/nferecepcaoevento4.asmx",
        "consulta": "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfeconsultaprotocolo4.asmx",
        "status": "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfestatusservico4.asmx",
    },
    "producao": {
        "autorizacao": "https://nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx",
        "evento": "https://nfe.fazenda.sp.gov.br/ws/nferecepcaoevento4.asmx",
        "consulta": "https://nfe.fazenda.sp.gov.br/ws/nfeconsultaprotocolo4.asmx",
        "status": "https://nfe.fazenda.sp.gov.br/ws/nfestatusservico4.asmx",
    },
}

# WSDL service name used for the nfeDadosMsg / nfeCabecMsg namespace
SERVICES = {
    "autorizacao": "NFeAutorizacao4",
    "evento": "NFeRecepcaoEvento4",
    "consulta": "NFeConsultaProtocolo4",
    "status": "NFeStatusServico4",
}

TP_AMB = {"homologacao": "2", "producao": "1"}

SEFAZ_TIMEOUT = 60


def get_env() -> str:
    """Return the active environment from NFE_AMBIENTE (default: homologacao)."""
    env = os.environ.get("NFE_AMBIENTE", "homologacao").strip().lower()
    if env not in TP_AMB:
        raise ValueError(f"NFE_AMBIENTE invalido: '{env}'. Use homologacao ou producao.")
    return env


# --- Keyring helpers ---


def _get_keyring_password() -> str | None:
    """Try to get the certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Store the certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
        return True
    except Exception:
        return False


def _delete_keyring_password() -> bool:
    """Remove the certificate password from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
        return True
    except Exception:
        return False


# --- Certificate access ---


def get_cert_path() -> str:
    """Return the path to the .pfx certificate from CERT_PFX_PATH env var.

    Raises KeyError if the variable is not set.
    """
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_password()
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


def read_cert_bytes() -> bytes:
    """Read the PKCS#12 bundle pointed to by CERT_PFX_PATH."""
    return Path(get_cert_path()).read_bytes()


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text())


def load_emitter() -> dict:
    """Load emitter configuration from config/emitter.yaml."""
    return load_yaml(get_config_dir() / "emitter.yaml")


def load_recipient(name: str) -> dict:
    """Load a recipient configuration from config/recipients/{name}.yaml."""
    return load_yaml(get_config_dir() / "recipients" / f"{name}.yaml")


def get_issued_dir(env: str) -> Path:
    """Return the issued-documents directory for the given environment."""
    return get_data_dir() / env / "issued"
