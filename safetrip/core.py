"""
SafeTrip Core Primitives

Hashing, canonical JSON and timestamp helpers shared by the registry.

Audit entries, event digests and snapshots all go through
``canonical_json_bytes``; two runs over equal data must yield identical
bytes, so floats are refused outright and scores travel as integers.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Tuple, Union

PACKAGE_ROOT = Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def load_json(path: Union[str, Path]) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _walk(value: Any, where: str = "$") -> Iterator[Tuple[str, Any]]:
    yield where, value
    if isinstance(value, dict):
        for key, child in value.items():
            yield from _walk(child, f"{where}.{key}")
    elif isinstance(value, (list, tuple)):
        for index, child in enumerate(value):
            yield from _walk(child, f"{where}[{index}]")


def canonical_json_bytes(obj: Any) -> bytes:
    """
    Sorted-key, whitespace-free UTF-8 JSON.

    Raises:
        ValueError: if any float appears anywhere in ``obj``.
    """
    for where, value in _walk(obj):
        if isinstance(value, float):
            raise ValueError(f"Float not allowed in canonical JSON at {where}")
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")


def write_canonical_json(path: Union[str, Path], obj: Any) -> str:
    """Write ``obj`` plus a trailing newline; returns the digest of the JSON bytes."""
    payload = canonical_json_bytes(obj)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload + b"\n")
    return sha256_bytes(payload)


def now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_iso8601(timestamp: str) -> Optional[datetime]:
    """Timezone-aware datetime, or None. A trailing Z and naive values mean UTC."""
    if not isinstance(timestamp, str):
        return None
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
