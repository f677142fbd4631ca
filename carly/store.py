"""
Run artifacts on disk.

Every run gets its own directory::

    <store_dir>/<test name>/<YYYYmmddTHHMMSS.ffffff>/
        history.jsonl   one op per line, see History.dumps
        results.json    the checker's analysis
        test.json       a description of the test that produced them

Test names are used as directory names with spaces replaced, so
``"batch set halves"`` lands in ``store/batch-set-halves/``.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from carly import setups
from carly.history import History, to_jsonable

HISTORY_FILE = "history.jsonl"
RESULTS_FILE = "results.json"
TEST_FILE = "test.json"

_TIMESTAMP = "%Y%m%dT%H%M%S.%f"


def slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", name.strip()).strip("-") or "test"


def run_dir(test: Any, started: datetime | None = None) -> Path:
    store_dir = getattr(test, "store_dir", None) or setups.default("store_dir")
    started = started or datetime.now()
    return Path(store_dir) / slug(test.name) / started.strftime(_TIMESTAMP)


def prepare(test: Any, started: datetime | None = None) -> Path:
    """Create and return the directory for a new run of *test*."""
    path = run_dir(test, started)
    path.mkdir(parents=True, exist_ok=True)
    return path


def describe(test: Any) -> dict[str, Any]:
    """A JSON-friendly summary of a test definition and the settings it ran with."""
    return {
        "name": test.name,
        "nodes": list(test.nodes),
        "concurrency": test.concurrency,
        "time_limit": test.time_limit,
        "client": type(test.client).__name__,
        "conductors": {name: type(c).__name__ for name, c in test.conductors.items()},
        "checker": repr(test.checker),
        "model": repr(test.model) if test.model is not None else None,
        "options": to_jsonable(dict(test.options)),
        "settings": setups.settings(),
    }


def _write_json(path: Path, data: Any) -> Path:
    path.write_text(json.dumps(to_jsonable(data), indent=2, sort_keys=True, default=repr) + "\n", encoding="utf-8")
    return path


def save(path: Path, test: Any, history: History, results: dict[str, Any]) -> Path:
    """Write every artifact of a finished run into *path*."""
    path.mkdir(parents=True, exist_ok=True)
    history.write(path / HISTORY_FILE)
    _write_json(path / RESULTS_FILE, results)
    _write_json(path / TEST_FILE, describe(test))
    return path


def load_history(path: str | Path) -> History:
    """Read a history from a run directory or a ``.jsonl`` file."""
    path = Path(path)
    if path.is_dir():
        path = path / HISTORY_FILE
    return History.read(path)


def load_results(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if path.is_dir():
        path = path / RESULTS_FILE
    return json.loads(path.read_text(encoding="utf-8"))


def runs(store_dir: str | Path, name: str) -> list[Path]:
    """Every stored run of the test *name*, oldest first."""
    base = Path(store_dir) / slug(name)
    if not base.is_dir():
        return []
    return sorted(p for p in base.iterdir() if p.is_dir())


def latest(store_dir: str | Path, name: str) -> Path | None:
    found = runs(store_dir, name)
    return found[-1] if found else None
