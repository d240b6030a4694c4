"""
Emergency Access Log

Break-glass reads for responders. A responder holding the EMERGENCY role
gets the full record regardless of its status, and every call leaves
exactly one audit entry carrying the responder's justification. Lookups of
unknown ids are audited too, with outcome ``not_found``.

Emergency access is a read: it stays available while the registry is paused.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import List, Optional

from safetrip.registry.audit import AuditEntry, AuditLog, AuditOperation
from safetrip.registry.config import RegistryConfig
from safetrip.registry.events import EmergencyAccessed, EventStore, identity_stream
from safetrip.registry.hardening import IdentityNotFound, ReasonRequired, Validators
from safetrip.registry.models import IdentityRecord, Role
from safetrip.registry.observability import RegistryLayer, get_logger
from safetrip.registry.roles import RoleAuthority
from safetrip.registry.store import IdentityStore

logger = get_logger("access_log", RegistryLayer.EMERGENCY)


class EmergencyAccessLog:
    """Audited emergency reads."""

    def __init__(
        self,
        store: IdentityStore,
        authority: RoleAuthority,
        audit: AuditLog,
        events: EventStore,
        config: RegistryConfig,
    ):
        self.store = store
        self.authority = authority
        self.audit = audit
        self.events = events
        self.config = config

    def emergency_access(self, caller: str, registry_id: int, reason: str) -> IdentityRecord:
        """Return a full copy of the record and audit the access."""
        self.authority.require(caller, Role.EMERGENCY, operation="emergency_access")
        reason = Validators.validate_reason(reason, self.config.limits.max_reason_length.get()).unwrap()
        if not reason:
            error = ReasonRequired("emergency_access")
            logger.rejected("emergency_access", error, registry_id=registry_id)
            raise error

        record = self.store.find(registry_id)
        if record is None:
            self.audit.append(
                AuditOperation.EMERGENCY_ACCESS, caller, reason=reason,
                registry_id=registry_id, outcome="not_found",
            )
            raise IdentityNotFound(registry_id)

        entry = self.audit.append(
            AuditOperation.EMERGENCY_ACCESS, caller, reason=reason, registry_id=registry_id,
            details={"status": record.status.value, "trip_state": record.trip.state.value},
        )
        self.events.append(identity_stream(registry_id), EmergencyAccessed(
            registry_id=registry_id,
            responder=caller,
            reason=reason,
            audit_sequence=entry.sequence,
        ))
        logger.warning(
            f"Emergency access to identity {registry_id}",
            operation="emergency_access",
            responder=caller,
            audit_sequence=entry.sequence,
        )
        return record

    def access_log(self, registry_id: Optional[int] = None) -> List[AuditEntry]:
        """Emergency access entries, optionally for one identity."""
        return self.audit.query(operation=AuditOperation.EMERGENCY_ACCESS, registry_id=registry_id)
