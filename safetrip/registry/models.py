"""
Registry Data Model

Identity records, verifier entries and role grants, with the dictionary
encoding used by snapshots and the CLI.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# Contact list capacity is fixed, not configurable.
MAX_EMERGENCY_CONTACTS = 5


class IdentityStatus(Enum):
    """Administrative status of an identity record."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (IdentityStatus.REVOKED, IdentityStatus.EXPIRED)


# Revoked and expired have no outgoing transitions.
STATUS_TRANSITIONS = {
    IdentityStatus.ACTIVE: {IdentityStatus.SUSPENDED, IdentityStatus.REVOKED, IdentityStatus.EXPIRED},
    IdentityStatus.SUSPENDED: {IdentityStatus.ACTIVE, IdentityStatus.REVOKED, IdentityStatus.EXPIRED},
    IdentityStatus.REVOKED: set(),
    IdentityStatus.EXPIRED: set(),
}


class TripState(Enum):
    """Live state of the trip attached to an identity."""
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    ENDED = "ended"


class Role(Enum):
    """Closed set of privileged roles."""
    ADMIN = "admin"
    REGISTRAR = "registrar"
    VERIFIER = "verifier"
    EMERGENCY = "emergency"


@dataclass
class KYCData:
    """Know-your-customer payload; personal data arrives pre-hashed."""
    document_type: str
    document_hash: str
    full_name_hash: str = ""
    nationality_hash: str = ""
    expiry_timestamp: str = ""
    trust_score: int = 0
    biometric_hash: str = ""
    is_verified: bool = False
    verified_by: str = ""
    verification_timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type,
            "document_hash": self.document_hash,
            "full_name_hash": self.full_name_hash,
            "nationality_hash": self.nationality_hash,
            "expiry_timestamp": self.expiry_timestamp,
            "trust_score": self.trust_score,
            "biometric_hash": self.biometric_hash,
            "is_verified": self.is_verified,
            "verified_by": self.verified_by,
            "verification_timestamp": self.verification_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KYCData":
        return cls(**data)


@dataclass
class TripData:
    """Planned itinerary plus the live trip state."""
    itinerary_hash: str = ""
    planned_start: str = ""
    planned_end: str = ""
    purpose: str = ""
    group_size: int = 1
    accommodation_hash: str = ""
    state: TripState = TripState.NOT_STARTED
    started_at: str = ""
    ended_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itinerary_hash": self.itinerary_hash,
            "planned_start": self.planned_start,
            "planned_end": self.planned_end,
            "purpose": self.purpose,
            "group_size": self.group_size,
            "accommodation_hash": self.accommodation_hash,
            "state": self.state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TripData":
        data = dict(data)
        data["state"] = TripState(data.get("state", TripState.NOT_STARTED.value))
        return cls(**data)


@dataclass
class EmergencyContact:
    name_hash: str
    relationship: str
    phone_hash: str
    email_hash: str = ""
    is_primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name_hash": self.name_hash,
            "relationship": self.relationship,
            "phone_hash": self.phone_hash,
            "email_hash": self.email_hash,
            "is_primary": self.is_primary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyContact":
        return cls(**data)


@dataclass
class IdentityRecord:
    """
    A registered tourist identity.

    ``registry_id`` is allocated once and never reused. Records are never
    deleted; revocation and expiry are terminal statuses.
    """
    registry_id: int
    owner_principal: str
    external_id_hash: str
    kyc: KYCData
    trip: TripData = field(default_factory=TripData)
    emergency_contacts: List[EmergencyContact] = field(default_factory=list)
    status: IdentityStatus = IdentityStatus.ACTIVE
    registered_by: str = ""
    registration_timestamp: str = ""
    last_updated_timestamp: str = ""
    location: str = ""

    @property
    def is_verified(self) -> bool:
        return self.kyc.is_verified

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE

    @property
    def primary_contact(self) -> Optional[EmergencyContact]:
        for contact in self.emergency_contacts:
            if contact.is_primary:
                return contact
        return self.emergency_contacts[0] if self.emergency_contacts else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registry_id": self.registry_id,
            "owner_principal": self.owner_principal,
            "external_id_hash": self.external_id_hash,
            "kyc": self.kyc.to_dict(),
            "trip": self.trip.to_dict(),
            "emergency_contacts": [c.to_dict() for c in self.emergency_contacts],
            "status": self.status.value,
            "is_verified": self.is_verified,
            "registered_by": self.registered_by,
            "registration_timestamp": self.registration_timestamp,
            "last_updated_timestamp": self.last_updated_timestamp,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityRecord":
        return cls(
            registry_id=int(data["registry_id"]),
            owner_principal=data["owner_principal"],
            external_id_hash=data["external_id_hash"],
            kyc=KYCData.from_dict(data["kyc"]),
            trip=TripData.from_dict(data.get("trip", {})),
            emergency_contacts=[EmergencyContact.from_dict(c) for c in data.get("emergency_contacts", [])],
            status=IdentityStatus(data.get("status", IdentityStatus.ACTIVE.value)),
            registered_by=data.get("registered_by", ""),
            registration_timestamp=data.get("registration_timestamp", ""),
            last_updated_timestamp=data.get("last_updated_timestamp", ""),
            location=data.get("location", ""),
        )


@dataclass
class VerifierInfo:
    """An onboarded verifier organization."""
    verifier_id: int
    principal: str
    organization: str
    jurisdiction: str
    role_label: str
    is_active: bool = True
    registered_by: str = ""
    registered_at: str = ""
    verification_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verifier_id": self.verifier_id,
            "principal": self.principal,
            "organization": self.organization,
            "jurisdiction": self.jurisdiction,
            "role_label": self.role_label,
            "is_active": self.is_active,
            "registered_by": self.registered_by,
            "registered_at": self.registered_at,
            "verification_count": self.verification_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifierInfo":
        return cls(**data)


@dataclass(frozen=True)
class RoleGrant:
    principal: str
    role: Role

    def to_dict(self) -> Dict[str, Any]:
        return {"principal": self.principal, "role": self.role.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleGrant":
        return cls(principal=data["principal"], role=Role(data["role"]))


@dataclass(frozen=True)
class AlertEligibility:
    """Answer to the panic-button question: may this tourist raise an alert?"""
    registry_id: int
    active: bool
    verified: bool
    trip_state: TripState

    @property
    def eligible(self) -> bool:
        return self.active and self.verified

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registry_id": self.registry_id,
            "active": self.active,
            "verified": self.verified,
            "trip_state": self.trip_state.value,
            "eligible": self.eligible,
        }
