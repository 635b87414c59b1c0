"""Local invoice registry: every NF-e known to this installation.

Entries are InvoiceData dicts (REST shape) plus the environment. The access
key is the unique upsert key; drafts without a key are matched by id.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.invoice import InvoiceData

logger = logging.getLogger(__name__)


def _registry_path() -> Path:
    return _config.get_data_dir() / "invoices.json"


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s -> %s", path, backup)
    return backup


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during registry read-modify-write."""
    rp = _registry_path()
    rp.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(rp.with_suffix(".lock"))
    with lock:
        yield


def _load() -> list[dict[str, Any]]:
    rp = _registry_path()
    if not rp.exists():
        return []
    try:
        return json.loads(rp.read_text())
    except (json.JSONDecodeError, ValueError):
        _backup_corrupt(rp)
        return []


def _save(entries: list[dict[str, Any]]) -> None:
    rp = _registry_path()
    rp.parent.mkdir(parents=True, exist_ok=True)
    tmp = rp.with_suffix(".tmp")
    tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, rp)


def _matches(entry: dict[str, Any], key: str) -> bool:
    return entry.get("chaveAcesso") == key or (
        entry.get("id") is not None and entry.get("id") == key
    )


def list_invoices(env: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
    """Return all registered invoices, optionally filtered by env and status."""
    with _locked():
        entries = _load()
    if env:
        entries = [e for e in entries if e.get("env") == env]
    if status:
        entries = [e for e in entries if e.get("status") == status]
    return entries


def upsert_invoice(invoice: InvoiceData, env: str) -> dict[str, Any]:
    """Insert or replace *invoice*, keyed by access key (or id for drafts).

    A draft first stored by id is replaced in place once it gets a key, so
    re-importing or re-saving never duplicates an entry.
    """
    key = invoice.key
    if not key:
        raise ValueError("Nota sem chave de acesso nem id")

    entry = {**invoice.to_dict(), "env": env}
    with _locked():
        entries = _load()
        index = next(
            (
                i
                for i, e in enumerate(entries)
                if _matches(e, key) or (invoice.id and e.get("id") == invoice.id)
            ),
            None,
        )
        if index is None:
            entries.append(entry)
            logger.debug("Registry: added %s", key)
        else:
            entries[index] = entry
            logger.debug("Registry: updated %s", key)
        _save(entries)
    return entry


def find_invoice(key: str, env: str | None = None) -> dict[str, Any] | None:
    """Look up a single invoice by access key or id, optionally filtered by env."""
    with _locked():
        entries = _load()
    for e in entries:
        if _matches(e, key) and (env is None or e.get("env") == env):
            return e
    return None


def load_invoice(key: str, env: str | None = None) -> InvoiceData | None:
    entry = find_invoice(key, env)
    return InvoiceData.from_dict(entry) if entry else None


def remove_invoice(key: str) -> bool:
    """Remove an invoice from the registry by access key or id."""
    with _locked():
        entries = _load()
        filtered = [e for e in entries if not _matches(e, key)]
        if len(filtered) == len(entries):
            return False
        _save(filtered)
        return True


# --- Health check (read-only, no locks) ---


@dataclass
class RegistryHealth:
    registry_ok: bool
    registry_count: int
    registry_corrupt_backups: list[str] = field(default_factory=list)


def check_registry_health() -> RegistryHealth:
    """Probe the registry file for corruption (read-only)."""
    rp = _registry_path()

    registry_ok = True
    registry_count = 0
    if rp.exists():
        try:
            entries = json.loads(rp.read_text())
            registry_count = len(entries)
        except (json.JSONDecodeError, ValueError):
            registry_ok = False
    if rp.parent.exists():
        backups = sorted(str(p) for p in rp.parent.glob(f"{rp.name}.corrupt.*"))
    else:
        backups = []

    return RegistryHealth(
        registry_ok=registry_ok,
        registry_count=registry_count,
        registry_corrupt_backups=backups,
    )
