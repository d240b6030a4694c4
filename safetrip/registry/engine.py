"""
Verification Engine

Owns the identity state machine:

    register ──► active/unverified ──verify──► active/verified
                      │    ▲                         │
                 suspend  reactivate              revoke/expire
                      ▼    │                         ▼
                   suspended ──revoke/expire──► revoked | expired (terminal)

Verification is one-way and happens at most once per record. Every
operation is all-or-nothing: checks run against a working copy under the
record lock and nothing is committed unless all of them pass.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from safetrip.core import now_iso8601, parse_iso8601
from safetrip.registry.audit import AuditLog, AuditOperation
from safetrip.registry.config import RegistryConfig
from safetrip.registry.events import (
    EmergencyContactAdded,
    EventStore,
    IdentityRegistered,
    IdentityRevoked,
    IdentityStatusChanged,
    IdentityVerified,
    identity_stream,
)
from safetrip.registry.hardening import (
    AlreadyVerified,
    AuthorizationError,
    ContactLimitExceeded,
    InvariantChecker,
    ReasonRequired,
    RecordNotActive,
    RegistryError,
    StateError,
    ValidationError,
    Validators,
)
from safetrip.registry.models import (
    MAX_EMERGENCY_CONTACTS,
    STATUS_TRANSITIONS,
    EmergencyContact,
    IdentityRecord,
    IdentityStatus,
    KYCData,
    Role,
    TripData,
)
from safetrip.registry.observability import RegistryLayer, get_logger, timed_operation
from safetrip.registry.pause import PauseSwitch
from safetrip.registry.roles import RoleAuthority
from safetrip.registry.store import IdentityStore
from safetrip.registry.verifiers import VerifierDirectory

logger = get_logger("verification", RegistryLayer.ENGINE)

DEFAULT_LOCATION = "System Registration"


# =============================================================================
# INPUT NORMALISATION
# =============================================================================

def _from_mapping(cls: Any, value: Any, field_name: str) -> Any:
    if isinstance(value, cls):
        return dataclasses.replace(value)
    if isinstance(value, dict):
        try:
            return cls(**value)
        except TypeError as e:
            raise ValidationError(field_name, str(e), value) from None
    raise ValidationError(field_name, f"Expected {cls.__name__} or mapping", value)


def normalize_kyc(value: Union[KYCData, Dict[str, Any]], max_length: int) -> KYCData:
    """Validate a KYC payload and strip any verification state it carries."""
    kyc = _from_mapping(KYCData, value, "kyc")
    trust_score = kyc.trust_score
    if isinstance(trust_score, bool) or not isinstance(trust_score, int):
        raise ValidationError("kyc.trust_score", "Expected integer", trust_score)

    return KYCData(
        document_type=Validators.validate_string(kyc.document_type, "kyc.document_type", max_length=max_length).unwrap(),
        document_hash=Validators.validate_hash(kyc.document_hash, "kyc.document_hash").unwrap(),
        full_name_hash=Validators.validate_hash(kyc.full_name_hash, "kyc.full_name_hash", required=False).unwrap(),
        nationality_hash=Validators.validate_hash(kyc.nationality_hash, "kyc.nationality_hash", required=False).unwrap(),
        expiry_timestamp=Validators.validate_timestamp(kyc.expiry_timestamp, "kyc.expiry_timestamp").unwrap(),
        trust_score=trust_score,
        biometric_hash=Validators.validate_hash(kyc.biometric_hash, "kyc.biometric_hash", required=False).unwrap(),
    )


def normalize_trip(value: Union[TripData, Dict[str, Any], None], max_length: int) -> TripData:
    """Validate a planned trip; the live state always starts at not_started."""
    if value is None:
        return TripData()
    trip = _from_mapping(TripData, value, "trip")

    planned_start = Validators.validate_timestamp(trip.planned_start, "trip.planned_start").unwrap()
    planned_end = Validators.validate_timestamp(trip.planned_end, "trip.planned_end").unwrap()
    if planned_start and planned_end and parse_iso8601(planned_end) < parse_iso8601(planned_start):
        raise ValidationError("trip.planned_end", "End precedes start", planned_end)

    return TripData(
        itinerary_hash=Validators.validate_hash(trip.itinerary_hash, "trip.itinerary_hash", required=False).unwrap(),
        planned_start=planned_start,
        planned_end=planned_end,
        purpose=Validators.validate_string(trip.purpose, "trip.purpose", min_length=0, max_length=max_length).unwrap(),
        group_size=Validators.validate_group_size(trip.group_size).unwrap(),
        accommodation_hash=Validators.validate_hash(
            trip.accommodation_hash, "trip.accommodation_hash", required=False,
        ).unwrap(),
    )


def normalize_contact(value: Union[EmergencyContact, Dict[str, Any]]) -> EmergencyContact:
    contact = _from_mapping(EmergencyContact, value, "contact")
    return EmergencyContact(
        name_hash=Validators.validate_hash(contact.name_hash, "contact.name_hash").unwrap(),
        relationship=Validators.validate_string(contact.relationship, "contact.relationship", max_length=64).unwrap(),
        phone_hash=Validators.validate_hash(contact.phone_hash, "contact.phone_hash").unwrap(),
        email_hash=Validators.validate_hash(contact.email_hash, "contact.email_hash", required=False).unwrap(),
        is_primary=bool(contact.is_primary),
    )


def coerce_status(status: Union[IdentityStatus, str]) -> IdentityStatus:
    if isinstance(status, IdentityStatus):
        return status
    try:
        return IdentityStatus(str(status).strip().lower())
    except ValueError:
        raise ValidationError("status", f"unknown status {status!r}", status) from None


# =============================================================================
# VERIFICATION ENGINE
# =============================================================================

class VerificationEngine:
    """Registration, verification, status changes and emergency contacts."""

    def __init__(
        self,
        store: IdentityStore,
        authority: RoleAuthority,
        directory: VerifierDirectory,
        circuit_breaker: PauseSwitch,
        audit: AuditLog,
        events: EventStore,
        config: RegistryConfig,
    ):
        self.store = store
        self.authority = authority
        self.directory = directory
        self.circuit_breaker = circuit_breaker
        self.audit = audit
        self.events = events
        self.config = config

    @property
    def _max_length(self) -> int:
        return self.config.limits.max_string_length.get()

    # ─── registration ────────────────────────────────────────────────────────

    @timed_operation(logger, "register_identity")
    def register_identity(
        self,
        caller: str,
        owner: str,
        external_id_hash: str,
        kyc: Union[KYCData, Dict[str, Any]],
        trip: Union[TripData, Dict[str, Any], None] = None,
        location: str = "",
    ) -> int:
        """Create an active, unverified record owned by ``owner``; returns its registry_id."""
        with self.circuit_breaker.guard("register_identity"):
            self.authority.require(caller, Role.REGISTRAR, Role.ADMIN, operation="register_identity")

            owner = Validators.validate_principal(owner, "owner_principal").unwrap()
            external_id_hash = Validators.validate_hash(external_id_hash, "external_id_hash").unwrap()
            kyc = normalize_kyc(kyc, self._max_length)
            trip = normalize_trip(trip, self._max_length)
            location = Validators.validate_string(
                location or DEFAULT_LOCATION, "location", max_length=self._max_length,
            ).unwrap()
            now = now_iso8601()

            def build(registry_id: int) -> IdentityRecord:
                return IdentityRecord(
                    registry_id=registry_id,
                    owner_principal=owner,
                    external_id_hash=external_id_hash,
                    kyc=kyc,
                    trip=trip,
                    status=IdentityStatus.ACTIVE,
                    registered_by=caller,
                    registration_timestamp=now,
                    last_updated_timestamp=now,
                    location=location,
                )

            try:
                record = self.store.insert(owner, external_id_hash, build)
            except ValidationError as e:
                logger.rejected("register_identity", e, owner=owner)
                raise

        # Published after the admission is released so subscribers may pause.
        self.events.append(identity_stream(record.registry_id), IdentityRegistered(
            registry_id=record.registry_id,
            owner_principal=owner,
            external_id_hash=external_id_hash,
            registered_by=caller,
        ))
        logger.info(
            f"Registered identity {record.registry_id}",
            operation="register_identity",
            registry_id=record.registry_id,
            caller=caller,
        )
        return record.registry_id

    # ─── verification ────────────────────────────────────────────────────────

    @staticmethod
    def verification_blocker(record: IdentityRecord) -> Optional[StateError]:
        """The error that prevents verifying ``record``, or None."""
        if record.status != IdentityStatus.ACTIVE:
            return RecordNotActive(record.registry_id, record.status.value)
        if record.is_verified:
            return AlreadyVerified(record.registry_id)
        return None

    @staticmethod
    def _apply_verification(record: IdentityRecord, verifier: str, timestamp: str) -> None:
        record.kyc.is_verified = True
        record.kyc.verified_by = verifier
        record.kyc.verification_timestamp = timestamp

    @timed_operation(logger, "verify_identity")
    def verify_identity(self, caller: str, registry_id: int) -> IdentityRecord:
        """Mark a record verified by ``caller``. Not idempotent."""
        with self.circuit_breaker.guard("verify_identity"):
            self.authority.require(caller, Role.VERIFIER, operation="verify_identity")
            timestamp = now_iso8601()

            with self.store.mutate(registry_id) as record:
                blocker = self.verification_blocker(record)
                if blocker is not None:
                    logger.rejected("verify_identity", blocker, registry_id=registry_id)
                    raise blocker
                self._apply_verification(record, caller, timestamp)

            self.directory.record_verifications(caller)

        self.events.append(identity_stream(registry_id), IdentityVerified(
            registry_id=registry_id,
            verifier=caller,
            verification_timestamp=timestamp,
        ))
        logger.info(f"Verified identity {registry_id}", operation="verify_identity", verifier=caller)
        return self.store.get(registry_id)

    def try_verify(self, registry_id: int, verifier: str, timestamp: str) -> Optional[str]:
        """
        Verify one record without raising for expected skips.

        Returns None on success, otherwise the error code explaining the skip.
        Emits no events; the caller reports the outcome.
        """
        if not self.store.exists(registry_id):
            return "identity_not_found"

        blocker: Optional[RegistryError] = None
        with self.store.mutate(registry_id) as record:
            blocker = self.verification_blocker(record)
            if blocker is None:
                self._apply_verification(record, verifier, timestamp)
        return blocker.code if blocker is not None else None

    # ─── status ──────────────────────────────────────────────────────────────

    @timed_operation(logger, "change_status")
    def change_status(
        self,
        caller: str,
        registry_id: int,
        new_status: Union[IdentityStatus, str],
        reason: str = "",
    ) -> IdentityRecord:
        """Admin-only status transition; revocation requires a reason."""
        self.authority.require_admin(caller, "change_status")
        new_status = coerce_status(new_status)
        reason = Validators.validate_reason(
            reason, self.config.limits.max_reason_length.get(),
        ).unwrap()
        if new_status == IdentityStatus.REVOKED and not reason:
            error = ReasonRequired("revoke")
            logger.rejected("change_status", error, registry_id=registry_id)
            raise error

        operation = AuditOperation.REVOKE if new_status == IdentityStatus.REVOKED else AuditOperation.STATUS_CHANGE
        with self.store.mutate(registry_id) as record:
            old_status = record.status
            InvariantChecker.check_state_transition(old_status, new_status, STATUS_TRANSITIONS, registry_id)
            record.status = new_status
            self.audit.append(
                operation, caller, reason=reason, registry_id=registry_id,
                details={"old_status": old_status.value, "new_status": new_status.value},
            )

        self._emit_status_change(registry_id, old_status, new_status, caller, reason)
        logger.info(
            f"Identity {registry_id} {old_status.value} -> {new_status.value}",
            operation="change_status",
            caller=caller,
        )
        return self.store.get(registry_id)

    def revoke_identity(self, caller: str, registry_id: int, reason: str) -> IdentityRecord:
        return self.change_status(caller, registry_id, IdentityStatus.REVOKED, reason)

    def _emit_status_change(
        self,
        registry_id: int,
        old_status: IdentityStatus,
        new_status: IdentityStatus,
        caller: str,
        reason: str,
    ) -> None:
        stream = identity_stream(registry_id)
        self.events.append(stream, IdentityStatusChanged(
            registry_id=registry_id,
            old_status=old_status.value,
            new_status=new_status.value,
            changed_by=caller,
            reason=reason,
        ))
        if new_status == IdentityStatus.REVOKED:
            self.events.append(stream, IdentityRevoked(registry_id=registry_id, revoked_by=caller, reason=reason))

    def expire_identities(self, caller: str, now: Optional[datetime] = None) -> List[int]:
        """
        Move active or suspended records whose KYC expiry has passed to expired.
        A naive ``now`` is taken as UTC.
        """
        self.authority.require_admin(caller, "expire_identities")
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        expired: List[int] = []
        for candidate in self.store.records():
            if not self._kyc_lapsed(candidate, now):
                continue
            with self.store.mutate(candidate.registry_id) as record:
                if not self._kyc_lapsed(record, now):
                    continue
                old_status = record.status
                record.status = IdentityStatus.EXPIRED
                self.audit.append(
                    AuditOperation.EXPIRE, caller, reason="kyc_expired", registry_id=record.registry_id,
                    details={"old_status": old_status.value, "expiry_timestamp": record.kyc.expiry_timestamp},
                )
            self._emit_status_change(candidate.registry_id, old_status, IdentityStatus.EXPIRED, caller, "kyc_expired")
            expired.append(candidate.registry_id)

        if expired:
            logger.info(f"Expired {len(expired)} identities", operation="expire_identities", caller=caller)
        return expired

    @staticmethod
    def _kyc_lapsed(record: IdentityRecord, now: datetime) -> bool:
        if record.status.is_terminal or not record.kyc.expiry_timestamp:
            return False
        expiry = parse_iso8601(record.kyc.expiry_timestamp)
        return expiry is not None and expiry <= now

    # ─── emergency contacts ──────────────────────────────────────────────────

    @timed_operation(logger, "add_emergency_contact")
    def add_emergency_contact(
        self,
        caller: str,
        registry_id: int,
        contact: Union[EmergencyContact, Dict[str, Any]],
    ) -> int:
        """Owner-only; returns the new contact count. A primary contact demotes the others."""
        with self.circuit_breaker.guard("add_emergency_contact"):
            contact = normalize_contact(contact)

            with self.store.mutate(registry_id) as record:
                if record.owner_principal != caller:
                    error = AuthorizationError(
                        f"{caller} does not own identity {registry_id}", code="not_owner", principal=caller,
                    )
                    logger.rejected("add_emergency_contact", error, registry_id=registry_id)
                    raise error
                if len(record.emergency_contacts) >= MAX_EMERGENCY_CONTACTS:
                    error = ContactLimitExceeded(MAX_EMERGENCY_CONTACTS)
                    logger.rejected("add_emergency_contact", error, registry_id=registry_id)
                    raise error

                if contact.is_primary:
                    for existing in record.emergency_contacts:
                        existing.is_primary = False
                record.emergency_contacts.append(contact)
                count = len(record.emergency_contacts)

        self.events.append(identity_stream(registry_id), EmergencyContactAdded(
            registry_id=registry_id, contact_count=count, is_primary=contact.is_primary,
        ))
        return count
