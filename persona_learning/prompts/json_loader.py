from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger("persona_learning.prompts")

DATA_DIR = Path(__file__).with_name("data")


@dataclass(frozen=True, slots=True)
class _Snapshot:
    mtime_ns: int | None
    overrides: dict[str, Any]


_SNAPSHOTS: dict[Path, _Snapshot] = {}


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _read_overrides(path: Path) -> dict[str, Any]:
    """Parse the override object in ``path``; anything unusable yields no overrides."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        logger.warning("Prompt JSON not found: %s (using defaults)", path)
        return {}
    except OSError as exc:
        logger.warning("Prompt JSON unreadable: %s (%s). Using defaults.", path, exc)
        return {}

    try:
        payload = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("Failed to parse prompt JSON %s (%s). Using defaults.", path, exc)
        return {}

    if not isinstance(payload, dict):
        logger.warning("Prompt JSON root must be an object: %s (using defaults)", path)
        return {}
    return payload


def _overlay(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    # Nested objects merge key by key; any other override value replaces the default.
    result = dict(base)
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _overlay(current, value)
        else:
            result[key] = value
    return result


def _snapshot(path: Path) -> _Snapshot:
    key = path.resolve()
    mtime_ns = _mtime_ns(path)
    cached = _SNAPSHOTS.get(key)
    if cached is None or cached.mtime_ns != mtime_ns:
        cached = _Snapshot(mtime_ns=mtime_ns, overrides=_read_overrides(path))
        _SNAPSHOTS[key] = cached
    return cached


def load_prompt_json(filename: str, defaults: dict[str, Any], *, data_dir: Path | None = None) -> dict[str, Any]:
    """Return ``defaults`` with the object in ``prompts/data/<filename>`` laid over it.

    The parsed file is reused until its mtime changes. Every call returns a fresh
    copy, so callers may mutate the result.
    """
    snapshot = _snapshot((data_dir or DATA_DIR) / filename)
    return copy.deepcopy(_overlay(defaults, snapshot.overrides))
