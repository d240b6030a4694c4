"""
Role Authority

Holds the set of (principal, role) grants and answers ``has_role``. Only an
admin may grant or revoke, and the last admin cannot be removed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Set, Union

from safetrip.registry.audit import AuditLog, AuditOperation
from safetrip.registry.events import REGISTRY_STREAM, EventStore, RoleGranted, RoleRevoked
from safetrip.registry.hardening import AtomicCounter, AuthorizationError, ValidationError, Validators
from safetrip.registry.models import Role, RoleGrant
from safetrip.registry.observability import RegistryLayer, get_logger

logger = get_logger("authority", RegistryLayer.ROLES)


def coerce_role(role: Union[Role, str]) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).strip().lower())
    except ValueError:
        raise ValidationError("role", f"unknown role {role!r}", role) from None


class RoleAuthority:
    """Role grants keyed by role; thread-safe."""

    def __init__(self, audit: AuditLog, events: EventStore, admins: Iterable[str] = ()):
        self._audit = audit
        self._events = events
        self._grants: Dict[Role, Set[str]] = {role: set() for role in Role}
        self._lock = threading.RLock()
        self._version = AtomicCounter(0)
        for admin in admins:
            self._grants[Role.ADMIN].add(Validators.validate_principal(admin, "admin").unwrap())

    def has_role(self, principal: str, role: Union[Role, str]) -> bool:
        role = coerce_role(role)
        with self._lock:
            return principal in self._grants[role]

    def require(self, principal: str, *roles: Role, operation: str = "") -> None:
        """Raise AuthorizationError unless ``principal`` holds one of ``roles``."""
        with self._lock:
            if any(principal in self._grants[r] for r in roles):
                return
        needed = " or ".join(r.value for r in roles)
        error = AuthorizationError(f"{principal} lacks role {needed}", principal=principal)
        logger.rejected(operation or "authorize", error, principal=principal)
        raise error

    def require_admin(self, principal: str, operation: str = "") -> None:
        self.require(principal, Role.ADMIN, operation=operation)

    def grant_role(self, caller: str, principal: str, role: Union[Role, str]) -> bool:
        """Grant ``role`` to ``principal``. Returns False if it was already held."""
        self.require_admin(caller, "grant_role")
        role = coerce_role(role)
        principal = Validators.validate_principal(principal).unwrap()

        with self._lock:
            if principal in self._grants[role]:
                return False
            self._grants[role].add(principal)
            self._version.increment()
            self._audit.append(
                AuditOperation.ROLE_GRANT, caller, details={"principal": principal, "role": role.value},
            )

        self._events.append(REGISTRY_STREAM, RoleGranted(principal=principal, role=role.value, granted_by=caller))
        logger.info(f"Granted {role.value} to {principal}", operation="grant_role", caller=caller)
        return True

    def revoke_role(self, caller: str, principal: str, role: Union[Role, str]) -> bool:
        """Revoke ``role`` from ``principal``. Returns False if it was not held."""
        self.require_admin(caller, "revoke_role")
        role = coerce_role(role)

        with self._lock:
            if principal not in self._grants[role]:
                return False
            if role == Role.ADMIN and len(self._grants[Role.ADMIN]) == 1:
                raise ValidationError("role", "cannot revoke the last admin", principal, code="last_admin")
            self._grants[role].discard(principal)
            self._version.increment()
            self._audit.append(
                AuditOperation.ROLE_REVOKE, caller, details={"principal": principal, "role": role.value},
            )

        self._events.append(REGISTRY_STREAM, RoleRevoked(principal=principal, role=role.value, revoked_by=caller))
        logger.info(f"Revoked {role.value} from {principal}", operation="revoke_role", caller=caller)
        return True

    def roles_of(self, principal: str) -> List[Role]:
        with self._lock:
            return [role for role in Role if principal in self._grants[role]]

    def members(self, role: Union[Role, str]) -> List[str]:
        role = coerce_role(role)
        with self._lock:
            return sorted(self._grants[role])

    def grants(self) -> List[RoleGrant]:
        with self._lock:
            return [
                RoleGrant(principal, role)
                for role in Role
                for principal in sorted(self._grants[role])
            ]

    def load_grants(self, grants: Iterable[RoleGrant]) -> None:
        """Replace all grants; used when restoring a snapshot."""
        with self._lock:
            self._grants = {role: set() for role in Role}
            for grant in grants:
                self._grants[grant.role].add(grant.principal)
            self._version.increment()

    @property
    def version(self) -> int:
        """Bumped by every grant, revoke and load."""
        return self._version.get()
