"""
SafeTrip Digital Identity Registry

Role-gated registry of tourist identities: registration, verification,
administrative status, emergency contacts, trip lifecycle, break-glass
emergency access and batch verification, with a hash-chained audit log.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                     DIGITAL IDENTITY REGISTRY                            │
    │                                                                          │
    │  FACADE                                                                  │
    │    registry.py     DigitalIdentityRegistry, read API, health            │
    │    persistence.py  Schema-validated canonical JSON snapshots            │
    │    cli.py          safetrip command line                                 │
    │                                                                          │
    │  OPERATIONS                                                              │
    │    engine.py       Registration, verification, status, contacts         │
    │    trips.py        not_started -> active -> ended                       │
    │    emergency.py    Audited responder reads                              │
    │    bulk.py         Batch verification with per-item skip                │
    │    stats.py        Memoized counts                                      │
    │                                                                          │
    │  STATE                                                                   │
    │    store.py        Identity table with owner / external-id indexes      │
    │    verifiers.py    Verifier directory                                   │
    │    roles.py        Role grants and authorization                        │
    │    pause.py        Circuit breaker with in-flight draining              │
    │    audit.py        Hash-chained audit log, Ed25519 checkpoints          │
    │    events.py       Domain events, bus and per-identity streams          │
    │                                                                          │
    │  FOUNDATION                                                              │
    │    models.py  hardening.py  config.py  observability.py                 │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from safetrip import __version__


# Lazy imports keep `safetrip.registry.config` importable without the facade
def __getattr__(name):
    """Lazy import registry modules on first access."""

    if name in ("DigitalIdentityRegistry",):
        from safetrip.registry import registry
        return getattr(registry, name)

    if name in ("IdentityStatus", "TripState", "Role", "KYCData", "TripData",
                "EmergencyContact", "IdentityRecord", "VerifierInfo", "RoleGrant",
                "AlertEligibility", "MAX_EMERGENCY_CONTACTS"):
        from safetrip.registry import models
        return getattr(models, name)

    if name in ("RegistryError", "ValidationError", "AuthorizationError", "StateError",
                "NotFoundError", "IdentityNotFound", "VerifierNotFound", "RegistryPaused",
                "DuplicateOwner", "DuplicateExternalId", "ContactLimitExceeded",
                "ReasonRequired", "BatchTooLarge", "AlreadyVerified", "RecordNotActive",
                "NotVerified", "TripAlreadyActive", "TripNotStarted", "hash_sensitive_data"):
        from safetrip.registry import hardening
        return getattr(hardening, name)

    if name in ("BulkVerifyResult",):
        from safetrip.registry import bulk
        return getattr(bulk, name)

    if name in ("AuditLog", "AuditEntry", "AuditCheckpoint", "AuditOperation",
                "generate_signing_key"):
        from safetrip.registry import audit
        return getattr(audit, name)

    if name in ("SnapshotError", "export_snapshot", "save_snapshot", "load_snapshot",
                "restore_snapshot"):
        from safetrip.registry import persistence
        return getattr(persistence, name)

    if name in ("RegistryConfig", "ConfigManager", "get_config", "get_config_manager"):
        from safetrip.registry import config
        return getattr(config, name)

    raise AttributeError(f"module 'safetrip.registry' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Facade
    "DigitalIdentityRegistry",
    # Models
    "IdentityStatus",
    "TripState",
    "Role",
    "KYCData",
    "TripData",
    "EmergencyContact",
    "IdentityRecord",
    "VerifierInfo",
    "AlertEligibility",
    # Errors
    "RegistryError",
    "ValidationError",
    "AuthorizationError",
    "StateError",
    "NotFoundError",
    "IdentityNotFound",
    "RegistryPaused",
    # Bulk
    "BulkVerifyResult",
    # Audit
    "AuditLog",
    "AuditEntry",
    "AuditCheckpoint",
    # Persistence
    "SnapshotError",
    "save_snapshot",
    "load_snapshot",
    # Config
    "RegistryConfig",
    "get_config",
]
