from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import numpy as np

logger = logging.getLogger(__name__)


# -------------------------
# Source utilities
# -------------------------
def is_remote_source(source: str | Path) -> bool:
    """True when the source is an http(s) URL rather than a local path."""
    s = str(source).strip().lower()
    return s.startswith("http://") or s.startswith("https://")


def normalize_source(source: str | Path) -> str:
    """
    Return a deterministic representation of a data source.
    URLs are returned stripped; local paths become absolute POSIX strings.
    """
    if is_remote_source(source):
        return str(source).strip()
    return Path(source).resolve().as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Deterministic JSON string for hashing and storage:
    - separators=(',', ':')
    - sort_keys=True
    - ensure_ascii=False
    """
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Return (short_hash8, full_hash_hex) computed over canonical JSON bytes (UTF-8).
    """
    s = canonical_json_dumps(payload)
    h = hashlib.sha256(s.encode("utf-8")).hexdigest()
    return h[:8], h


# -------------------------
# Manifest helpers
# -------------------------
def _sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert parameter objects into JSON-serializable primitives.

    Conversions performed:
    - pathlib.Path -> POSIX string
    - Enums -> .name string
    - dataclasses -> dict, sanitized recursively
    - numpy scalars/arrays -> Python numbers/lists
    - dicts -> sanitized dict with stringified keys
    - lists/tuples/sets -> lists with sanitized elements
    - float inf/nan -> None (JSON has no representation for them)
    """
    if isinstance(obj, Enum):
        return obj.name if obj.name is not None else _sanitize_for_json(obj.value)
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj if np.isfinite(obj) else None

    if isinstance(obj, Path):
        return obj.as_posix()

    if isinstance(obj, _dt.datetime):
        return obj.isoformat()

    if isinstance(obj, np.generic):
        return _sanitize_for_json(obj.item())
    if isinstance(obj, np.ndarray):
        return [_sanitize_for_json(x) for x in obj.tolist()]

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: _sanitize_for_json(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }

    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple, set)):
        return [_sanitize_for_json(x) for x in obj]

    return str(obj)


def build_effective_parameters(**param_groups: Any) -> dict[str, Any]:
    """
    Build a JSON-serializable mapping of effective parameters keyed by group name,
    e.g. build_effective_parameters(load=..., transform=..., model=...).

    Dataclass fields are introspected so newly added fields are included automatically.
    """
    return {name: _sanitize_for_json(group) for name, group in param_groups.items()}


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """
    Write manifest JSON with UTF-8 encoding and stable formatting (indent=2 for readability).
    """
    p = Path(path)
    p.write_text(
        json.dumps(_sanitize_for_json(manifest), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def utc_timestamp_seconds() -> str:
    """
    ISO-8601 UTC timestamp with seconds precision and Z suffix.
    """
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Run-directory helpers
# -------------------------
def ensure_run_dir(base: Path | str = "output") -> Path:
    """
    Ensure and return a per-run directory under `base`/<timestamp>.
    Timestamp format: %Y%m%dT%H%M%S (local time).
    """
    run_ts = _dt.datetime.now().strftime("%Y%m%dT%H%M%S")
    run_dir = Path(base) / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write the report into run_dir/report-<short_hash>.md using UTF-8.

    Best-effort: on IO failures the error is logged and the intended Path is
    returned (it may not exist if the write failed).
    """
    target = Path(run_dir) / f"report-{short_hash}.md"
    try:
        target.write_text(report_text, encoding="utf-8")
        logger.debug("Wrote report to %s", str(target))
    except OSError:
        logger.exception("Failed to write report to %s", str(target))
    return target
