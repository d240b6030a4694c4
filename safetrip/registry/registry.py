"""
Digital Identity Registry

Facade that wires the registry components together with explicit store
handles and exposes the operation and read API. Every operation takes the
acting principal as its first argument.

    registry = DigitalIdentityRegistry(admins=["admin"])
    registry.grant_role("admin", "desk-1", Role.REGISTRAR)
    rid = registry.register_identity("desk-1", "wallet-9", ext_hash, kyc, trip)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from safetrip.registry.audit import AuditCheckpoint, AuditEntry, AuditLog
from safetrip.registry.bulk import BulkOperationProcessor, BulkVerifyResult
from safetrip.registry.config import RegistryConfig, get_config
from safetrip.registry.emergency import EmergencyAccessLog
from safetrip.registry.engine import VerificationEngine
from safetrip.registry.events import Event, EventBus, EventStore, identity_stream
from safetrip.registry.hardening import AuthorizationError, IdentityNotFound
from safetrip.registry.models import (
    AlertEligibility,
    EmergencyContact,
    IdentityRecord,
    IdentityStatus,
    KYCData,
    Role,
    TripData,
    VerifierInfo,
)
from safetrip.registry.observability import RegistryLayer, get_logger
from safetrip.registry.pause import PauseSwitch
from safetrip.registry.roles import RoleAuthority
from safetrip.registry.stats import RegistryStatistics
from safetrip.registry.store import IdentityStore
from safetrip.registry.trips import TripLifecycleManager
from safetrip.registry.verifiers import VerifierDirectory

logger = get_logger("registry", RegistryLayer.ENGINE)


class DigitalIdentityRegistry:
    """
    Role-gated registry of tourist identities.

    Args:
        admins: Principals granted ADMIN at construction.
        config: Registry configuration; the process-wide config by default.
        signing_key: Optional Ed25519 key for automatic audit checkpoints.
        bus: Event bus for subscribers; a private bus by default.
    """

    def __init__(
        self,
        admins: Union[str, Iterable[str]] = (),
        config: Optional[RegistryConfig] = None,
        signing_key: Optional[Ed25519PrivateKey] = None,
        bus: Optional[EventBus] = None,
    ):
        if isinstance(admins, str):
            admins = [admins]
        self.config = config or get_config()

        self.audit = AuditLog(
            signing_key=signing_key,
            checkpoint_interval=self.config.audit.checkpoint_interval.get(),
        )
        self.events = EventStore(bus)
        self.authority = RoleAuthority(self.audit, self.events, admins)
        self.store = IdentityStore()
        self.directory = VerifierDirectory(self.authority, self.audit, self.events)
        self.circuit_breaker = PauseSwitch(self.authority, self.audit, self.events)
        self.engine = VerificationEngine(
            self.store, self.authority, self.directory, self.circuit_breaker,
            self.audit, self.events, self.config,
        )
        self.trips = TripLifecycleManager(self.store, self.circuit_breaker, self.events)
        self.emergency = EmergencyAccessLog(self.store, self.authority, self.audit, self.events, self.config)
        self.bulk = BulkOperationProcessor(
            self.engine, self.authority, self.directory, self.circuit_breaker, self.events, self.config,
        )
        self.statistics = RegistryStatistics(self.store, self.directory, self.authority)

    @property
    def bus(self) -> EventBus:
        return self.events.bus

    # ─── roles ───────────────────────────────────────────────────────────────

    def has_role(self, principal: str, role: Union[Role, str]) -> bool:
        return self.authority.has_role(principal, role)

    def grant_role(self, caller: str, principal: str, role: Union[Role, str]) -> bool:
        return self.authority.grant_role(caller, principal, role)

    def revoke_role(self, caller: str, principal: str, role: Union[Role, str]) -> bool:
        return self.authority.revoke_role(caller, principal, role)

    def roles_of(self, principal: str) -> List[Role]:
        return self.authority.roles_of(principal)

    def members(self, role: Union[Role, str]) -> List[str]:
        return self.authority.members(role)

    # ─── identities ──────────────────────────────────────────────────────────

    def register_identity(
        self,
        caller: str,
        owner: str,
        external_id_hash: str,
        kyc: Union[KYCData, Dict[str, Any]],
        trip: Union[TripData, Dict[str, Any], None] = None,
        location: str = "",
    ) -> int:
        return self.engine.register_identity(caller, owner, external_id_hash, kyc, trip, location)

    def verify_identity(self, caller: str, registry_id: int) -> IdentityRecord:
        return self.engine.verify_identity(caller, registry_id)

    def change_status(
        self,
        caller: str,
        registry_id: int,
        new_status: Union[IdentityStatus, str],
        reason: str = "",
    ) -> IdentityRecord:
        return self.engine.change_status(caller, registry_id, new_status, reason)

    def revoke_identity(self, caller: str, registry_id: int, reason: str) -> IdentityRecord:
        return self.engine.revoke_identity(caller, registry_id, reason)

    def expire_identities(self, caller: str, now: Optional[datetime] = None) -> List[int]:
        return self.engine.expire_identities(caller, now)

    def add_emergency_contact(
        self,
        caller: str,
        registry_id: int,
        contact: Union[EmergencyContact, Dict[str, Any]],
    ) -> int:
        return self.engine.add_emergency_contact(caller, registry_id, contact)

    # ─── trips ───────────────────────────────────────────────────────────────

    def start_trip(self, caller: str, registry_id: int) -> str:
        return self.trips.start_trip(caller, registry_id)

    def end_trip(self, caller: str, registry_id: int) -> str:
        return self.trips.end_trip(caller, registry_id)

    # ─── verifiers ───────────────────────────────────────────────────────────

    def register_verifier(
        self,
        caller: str,
        principal: str,
        organization: str,
        role_label: str,
        jurisdiction: str,
    ) -> int:
        return self.directory.register_verifier(caller, principal, organization, role_label, jurisdiction)

    def set_verifier_active(self, caller: str, verifier_id: int, is_active: bool) -> VerifierInfo:
        return self.directory.set_verifier_active(caller, verifier_id, is_active)

    def get_verifier(self, verifier_id: int) -> VerifierInfo:
        return self.directory.get_verifier(verifier_id)

    def get_verifier_by_principal(self, principal: str) -> Optional[VerifierInfo]:
        return self.directory.get_verifier_by_principal(principal)

    def list_verifiers(self, active_only: bool = False) -> List[VerifierInfo]:
        return self.directory.list_verifiers(active_only)

    # ─── bulk / emergency ────────────────────────────────────────────────────

    def bulk_verify(self, caller: str, registry_ids: Iterable[int]) -> BulkVerifyResult:
        return self.bulk.bulk_verify(caller, registry_ids)

    def emergency_access(self, caller: str, registry_id: int, reason: str) -> IdentityRecord:
        return self.emergency.emergency_access(caller, registry_id, reason)

    def emergency_access_log(self, registry_id: Optional[int] = None) -> List[AuditEntry]:
        return self.emergency.access_log(registry_id)

    # ─── pause ───────────────────────────────────────────────────────────────

    @property
    def paused(self) -> bool:
        return self.circuit_breaker.paused

    def pause(self, caller: str) -> bool:
        return self.circuit_breaker.pause(caller)

    def unpause(self, caller: str) -> bool:
        return self.circuit_breaker.unpause(caller)

    # ─── reads ───────────────────────────────────────────────────────────────

    def _check_visibility(self, caller: str, record: IdentityRecord) -> IdentityRecord:
        if caller == record.owner_principal:
            return record
        if self.authority.has_role(caller, Role.VERIFIER) or self.authority.has_role(caller, Role.ADMIN):
            return record
        error = AuthorizationError(
            f"{caller} may not read identity {record.registry_id}", code="unauthorized_read", principal=caller,
        )
        logger.rejected("read_identity", error, registry_id=record.registry_id)
        raise error

    def get_identity(self, caller: str, registry_id: int) -> IdentityRecord:
        return self._check_visibility(caller, self.store.get(registry_id))

    def get_identity_by_owner(self, caller: str, owner: str) -> IdentityRecord:
        registry_id = self.store.id_for_owner(owner)
        if registry_id is None:
            raise IdentityNotFound(owner)
        return self.get_identity(caller, registry_id)

    def get_identity_by_external_id(self, caller: str, external_id_hash: str) -> IdentityRecord:
        registry_id = self.store.id_for_external_id(external_id_hash)
        if registry_id is None:
            raise IdentityNotFound(external_id_hash)
        return self.get_identity(caller, registry_id)

    def is_identity_verified(self, registry_id: int) -> bool:
        record = self.store.find(registry_id)
        return record is not None and record.is_verified

    def total_identities(self) -> int:
        return len(self.store)

    def check_alert_eligibility(self, owner: str) -> AlertEligibility:
        """Whether ``owner`` has an active, verified identity (panic-button gate)."""
        registry_id = self.store.id_for_owner(owner)
        if registry_id is None:
            raise IdentityNotFound(owner)
        record = self.store.get(registry_id)
        return AlertEligibility(
            registry_id=registry_id,
            active=record.is_active,
            verified=record.is_verified,
            trip_state=record.trip.state,
        )

    def get_stats(self) -> Dict[str, int]:
        return self.statistics.get_stats()

    # ─── audit ───────────────────────────────────────────────────────────────

    def audit_log(self, **filters: Any) -> List[AuditEntry]:
        return self.audit.query(**filters)

    def checkpoint_audit(self, private_key: Ed25519PrivateKey, signer: str = "registry") -> AuditCheckpoint:
        return self.audit.checkpoint(private_key, signer)

    def subscribe(self, *event_types: type, priority: int = 0):
        """Decorator registering an event handler on the registry bus."""
        return self.bus.subscribe(*event_types, priority=priority)

    def events_for(self, registry_id: int) -> List[Event]:
        return self.events.read_stream(identity_stream(registry_id))

    def health(self) -> Dict[str, Any]:
        chain_valid, first_bad = self.audit.verify_chain()
        paused = self.paused
        total_verifiers, active_verifiers = self.directory.counts()
        if not chain_valid:
            status = "degraded"
        elif paused:
            status = "paused"
        else:
            status = "ok"
        return {
            "status": status,
            "healthy": chain_valid,
            "paused": paused,
            "audit_chain_valid": chain_valid,
            "audit_first_invalid_index": first_bad,
            "audit_entries": len(self.audit),
            "total_identities": len(self.store),
            "total_verifiers": total_verifiers,
            "active_verifiers": active_verifiers,
        }
