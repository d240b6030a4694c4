"""SafeTrip Stack v0.3.0

Identity infrastructure for tourist safety deployments.

Architecture:
    safetrip/
    ├── __init__.py      # Package entry, version, public API
    ├── core.py          # Primitives: sha256, canonical JSON, timestamps
    ├── schema.py        # JSON Schema validation infrastructure
    ├── schemas/         # Persisted-format schemas
    └── registry/        # Digital Identity Registry subsystem

The registry issues, verifies and revokes tourist identities, gates trips on
verification state, and keeps an append-only audit trail for emergency access.
"""

__version__ = "0.3.0"

from safetrip.core import (
    canonical_json_bytes,
    load_json,
    now_iso8601,
    parse_iso8601,
    sha256_bytes,
    write_canonical_json,
)

__all__ = [
    "__version__",
    "canonical_json_bytes",
    "load_json",
    "now_iso8601",
    "parse_iso8601",
    "sha256_bytes",
    "write_canonical_json",
]
