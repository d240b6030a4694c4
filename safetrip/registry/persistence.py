"""
Registry Snapshots

Saves and restores the whole registry (identities, verifiers, role grants,
audit log) as one canonical JSON document. Snapshots are validated against
``registry-snapshot.schema.json`` before anything is restored, and the audit
chain is re-verified on load unless ``persistence.verify_audit_on_load`` is off.

    digest = save_snapshot(registry, "state.json")
    registry = load_snapshot("state.json")

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from safetrip import __version__
from safetrip.core import load_json, now_iso8601, write_canonical_json
from safetrip.registry.config import RegistryConfig, get_config
from safetrip.registry.hardening import RegistryError
from safetrip.registry.models import IdentityRecord, RoleGrant, VerifierInfo
from safetrip.registry.observability import RegistryLayer, get_logger, timed_operation
from safetrip.registry.registry import DigitalIdentityRegistry
from safetrip.schema import validate_against_schema

logger = get_logger("snapshot", RegistryLayer.PERSISTENCE)

SNAPSHOT_SCHEMA = "registry-snapshot.schema.json"
SNAPSHOT_SCHEMA_VERSION = 1


class SnapshotError(RegistryError):
    """Snapshot missing, malformed or failing integrity checks."""

    code = "invalid_snapshot"

    def __init__(self, message: str, errors: Optional[List[str]] = None, code: Optional[str] = None):
        self.errors = list(errors or [])
        super().__init__(message, code=code)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.errors:
            data["errors"] = self.errors
        return data


def export_snapshot(registry: DigitalIdentityRegistry) -> Dict[str, Any]:
    """Plain-dict view of the full registry state."""
    return {
        "meta": {
            "schema_version": SNAPSHOT_SCHEMA_VERSION,
            "registry_version": __version__,
            "exported_at": now_iso8601(),
            "last_registry_id": registry.store.last_registry_id,
            "last_verifier_id": registry.directory.last_verifier_id,
            "paused": registry.paused,
            "audit_head_digest": registry.audit.head_digest,
        },
        "identities": [record.to_dict() for record in registry.store.records()],
        "verifiers": [info.to_dict() for info in registry.directory.list_verifiers()],
        "role_grants": [grant.to_dict() for grant in registry.authority.grants()],
        "audit_log": registry.audit.export(),
        "audit_checkpoints": [cp.to_dict() for cp in registry.audit.checkpoints],
    }


@timed_operation(logger, "save_snapshot")
def save_snapshot(registry: DigitalIdentityRegistry, path: Union[str, pathlib.Path]) -> str:
    """Write the registry to ``path``; returns the SHA-256 of the canonical bytes."""
    digest = write_canonical_json(pathlib.Path(path), export_snapshot(registry))
    logger.info(
        f"Snapshot saved to {path}",
        operation="save_snapshot",
        digest=digest,
        identities=registry.total_identities(),
    )
    return digest


def restore_snapshot(
    data: Any,
    config: Optional[RegistryConfig] = None,
    signing_key: Optional[Ed25519PrivateKey] = None,
) -> DigitalIdentityRegistry:
    """Build a registry from an exported snapshot dict."""
    config = config or get_config()

    errors = validate_against_schema(data, SNAPSHOT_SCHEMA)
    if errors:
        logger.error("Snapshot failed schema validation", operation="load_snapshot", errors=len(errors))
        raise SnapshotError("Snapshot failed schema validation", errors)

    meta = data["meta"]
    registry = DigitalIdentityRegistry(config=config, signing_key=signing_key)
    registry.audit.load(data["audit_log"], data.get("audit_checkpoints", []))

    if config.persistence.verify_audit_on_load.get():
        valid, first_bad = registry.audit.verify_chain()
        if not valid:
            raise SnapshotError(
                f"Audit chain broken at entry {first_bad}", code="audit_chain_broken",
            )
        expected_head = meta.get("audit_head_digest")
        if expected_head and expected_head != registry.audit.head_digest:
            raise SnapshotError("Audit head digest does not match snapshot meta", code="audit_chain_broken")

    try:
        registry.authority.load_grants(RoleGrant.from_dict(g) for g in data["role_grants"])
        registry.directory.load(
            (VerifierInfo.from_dict(v) for v in data["verifiers"]),
            meta["last_verifier_id"],
        )
        registry.store.load(
            (IdentityRecord.from_dict(r) for r in data["identities"]),
            meta["last_registry_id"],
        )
    except RegistryError as exc:
        raise SnapshotError(f"Snapshot is inconsistent: {exc.message}") from exc

    registry.circuit_breaker.restore(meta["paused"])
    return registry


@timed_operation(logger, "load_snapshot")
def load_snapshot(
    path: Union[str, pathlib.Path],
    config: Optional[RegistryConfig] = None,
    signing_key: Optional[Ed25519PrivateKey] = None,
) -> DigitalIdentityRegistry:
    """Read, validate and restore a snapshot file."""
    path = pathlib.Path(path)
    if not path.is_file():
        raise SnapshotError(f"Snapshot not found: {path}", code="snapshot_not_found")
    try:
        data = load_json(path)
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Snapshot is not valid JSON: {exc}") from exc

    registry = restore_snapshot(data, config=config, signing_key=signing_key)
    logger.info(
        f"Snapshot loaded from {path}",
        operation="load_snapshot",
        identities=registry.total_identities(),
        audit_entries=len(registry.audit),
    )
    return registry
