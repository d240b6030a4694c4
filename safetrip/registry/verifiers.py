"""
Verifier Directory

Registry of onboarded verifier organisations: who they are, where they
operate, whether they are active, and how many identities they have
verified. Registration and activation keep the Role Authority in step:

    register_verifier          grants   VERIFIER
    set_verifier_active(False) revokes  VERIFIER
    set_verifier_active(True)  re-grants VERIFIER

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from safetrip.core import now_iso8601
from safetrip.registry.audit import AuditLog, AuditOperation
from safetrip.registry.events import REGISTRY_STREAM, EventStore, VerifierRegistered, VerifierStatusChanged
from safetrip.registry.hardening import AtomicCounter, ValidationError, Validators, VerifierNotFound
from safetrip.registry.models import Role, VerifierInfo
from safetrip.registry.observability import RegistryLayer, get_logger
from safetrip.registry.roles import RoleAuthority

logger = get_logger("directory", RegistryLayer.VERIFIERS)


class VerifierDirectory:
    """
    Directory of verifiers keyed by verifier_id, unique by principal.

    The lifetime verification count only ever increases.
    """

    def __init__(self, authority: RoleAuthority, audit: AuditLog, events: EventStore):
        self._authority = authority
        self._audit = audit
        self._events = events
        self._verifiers: Dict[int, VerifierInfo] = {}
        self._by_principal: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._last_id = AtomicCounter(0)
        self._version = AtomicCounter(0)

    def register_verifier(
        self,
        caller: str,
        principal: str,
        organization: str,
        role_label: str,
        jurisdiction: str,
    ) -> int:
        """Onboard a verifier and grant it the VERIFIER role."""
        self._authority.require_admin(caller, "register_verifier")
        principal = Validators.validate_principal(principal).unwrap()
        organization = Validators.validate_string(organization, "organization").unwrap()
        role_label = Validators.validate_string(role_label, "role_label").unwrap()
        jurisdiction = Validators.validate_string(jurisdiction, "jurisdiction").unwrap()

        with self._lock:
            if principal in self._by_principal:
                error = ValidationError(
                    "principal", "verifier already registered", principal,
                    code="verifier_already_registered",
                )
                logger.rejected("register_verifier", error, principal=principal)
                raise error

            verifier_id = self._last_id.increment()
            self._verifiers[verifier_id] = VerifierInfo(
                verifier_id=verifier_id,
                principal=principal,
                organization=organization,
                jurisdiction=jurisdiction,
                role_label=role_label,
                is_active=True,
                registered_by=caller,
                registered_at=now_iso8601(),
            )
            self._by_principal[principal] = verifier_id
            self._version.increment()

            self._authority.grant_role(caller, principal, Role.VERIFIER)
            self._audit.append(
                AuditOperation.VERIFIER_REGISTER, caller,
                details={"verifier_id": verifier_id, "principal": principal, "organization": organization},
            )

        self._events.append(REGISTRY_STREAM, VerifierRegistered(
            verifier_id=verifier_id,
            principal=principal,
            organization=organization,
            jurisdiction=jurisdiction,
        ))
        logger.info(f"Registered verifier {verifier_id}", operation="register_verifier", principal=principal)
        return verifier_id

    def set_verifier_active(self, caller: str, verifier_id: int, is_active: bool) -> VerifierInfo:
        """Activate or deactivate a verifier, keeping its VERIFIER role in step."""
        self._authority.require_admin(caller, "set_verifier_active")

        with self._lock:
            info = self._verifiers.get(verifier_id)
            if info is None:
                raise VerifierNotFound(verifier_id)

            info.is_active = bool(is_active)
            self._version.increment()
            if info.is_active:
                self._authority.grant_role(caller, info.principal, Role.VERIFIER)
            else:
                self._authority.revoke_role(caller, info.principal, Role.VERIFIER)

            self._audit.append(
                AuditOperation.VERIFIER_STATUS, caller,
                details={"verifier_id": verifier_id, "is_active": info.is_active},
            )
            result = dataclasses.replace(info)

        self._events.append(REGISTRY_STREAM, VerifierStatusChanged(
            verifier_id=verifier_id, principal=result.principal, is_active=result.is_active,
        ))
        logger.info(
            f"Verifier {verifier_id} {'activated' if result.is_active else 'deactivated'}",
            operation="set_verifier_active",
        )
        return result

    def record_verifications(self, principal: str, count: int = 1) -> None:
        """Add to a verifier's lifetime count; principals outside the directory are ignored."""
        if count <= 0:
            return
        with self._lock:
            verifier_id = self._by_principal.get(principal)
            if verifier_id is None:
                return
            self._verifiers[verifier_id].verification_count += count
            self._version.increment()

    # ─── reads ───────────────────────────────────────────────────────────────

    def get_verifier(self, verifier_id: int) -> VerifierInfo:
        with self._lock:
            info = self._verifiers.get(verifier_id)
            if info is None:
                raise VerifierNotFound(verifier_id)
            return dataclasses.replace(info)

    def get_verifier_by_principal(self, principal: str) -> Optional[VerifierInfo]:
        with self._lock:
            verifier_id = self._by_principal.get(principal)
            if verifier_id is None:
                return None
            return dataclasses.replace(self._verifiers[verifier_id])

    def _in_service(self, info: VerifierInfo) -> bool:
        # A direct revoke_role of VERIFIER takes a verifier out of service too.
        return info.is_active and self._authority.has_role(info.principal, Role.VERIFIER)

    def list_verifiers(self, active_only: bool = False) -> List[VerifierInfo]:
        with self._lock:
            return [
                dataclasses.replace(info)
                for _, info in sorted(self._verifiers.items())
                if not active_only or self._in_service(info)
            ]

    def counts(self) -> Tuple[int, int]:
        """(total, active); active means flagged active and still holding VERIFIER."""
        with self._lock:
            active = sum(1 for info in self._verifiers.values() if self._in_service(info))
            return len(self._verifiers), active

    @property
    def version(self) -> int:
        return self._version.get()

    @property
    def last_verifier_id(self) -> int:
        return self._last_id.get()

    def load(self, verifiers: Iterable[VerifierInfo], last_verifier_id: int = 0) -> None:
        """Replace the directory contents; used when restoring a snapshot."""
        with self._lock:
            self._verifiers = {}
            self._by_principal = {}
            for info in verifiers:
                if info.principal in self._by_principal:
                    raise ValidationError(
                        "principal", "verifier already registered", info.principal,
                        code="verifier_already_registered",
                    )
                self._verifiers[info.verifier_id] = info
                self._by_principal[info.principal] = info.verifier_id
            self._last_id.reset(max([last_verifier_id, *self._verifiers.keys()]))
            self._version.increment()
