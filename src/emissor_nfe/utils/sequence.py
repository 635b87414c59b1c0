"""Next NF-e number per environment and series (nNF)."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

from emissor_nfe import config as _config

MAX_NUMERO = 999_999_999


def _sequence_file() -> Path:
    return _config.get_data_dir() / "sequence.json"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write."""
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(sf.with_suffix(".lock"))
    with lock:
        yield


def _load() -> dict[str, dict[str, int]]:
    sf = _sequence_file()
    if not sf.exists():
        return {"homologacao": {}, "producao": {}}
    return json.loads(sf.read_text())


def _save(data: dict[str, dict[str, int]]) -> None:
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    tmp = sf.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, sf)


def _serie_key(serie: str | int) -> str:
    return str(int(serie))


def peek_next_numero(env: str = "homologacao", serie: str | int = "1") -> int:
    """Return the next nNF for *env*/*serie* without reserving it."""
    with _locked():
        numero = _load().get(env, {}).get(_serie_key(serie), 0) + 1
    if numero > MAX_NUMERO:
        raise ValueError(f"Numeracao da serie {serie} esgotada")
    return numero


def commit_numero(numero: int, env: str = "homologacao", serie: str | int = "1") -> None:
    """Record *numero* as used once the invoice carrying it has been signed.

    Raises ValueError when the number was taken in the meantime.
    """
    with _locked():
        data = _load()
        series = data.setdefault(env, {})
        if numero <= series.get(_serie_key(serie), 0):
            raise ValueError(f"Numero {numero} da serie {serie} ja utilizado")
        series[_serie_key(serie)] = numero
        _save(data)
