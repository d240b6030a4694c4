"""
Pause / Circuit Breaker

A global flag that, while set, rejects every guarded mutation with
RegistryPaused. Reads, admin actions and emergency access stay available.

Mutations are admitted through ``guard``; the switch counts admitted
mutations and ``pause`` waits until they drain. A mutation therefore either
completes before ``pause`` returns or is rejected. ``unpause`` takes effect
for the next admission. Events are published after the admission is
released, so a bus subscriber may itself call ``pause``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from safetrip.registry.audit import AuditLog, AuditOperation
from safetrip.registry.events import REGISTRY_STREAM, EventStore, RegistryPauseChanged
from safetrip.registry.hardening import RegistryPaused
from safetrip.registry.observability import RegistryLayer, get_logger
from safetrip.registry.roles import RoleAuthority

logger = get_logger("circuit_breaker", RegistryLayer.PAUSE)


class PauseSwitch:
    """Admin-controlled circuit breaker for registry mutations."""

    def __init__(
        self,
        authority: RoleAuthority,
        audit: AuditLog,
        events: EventStore,
        paused: bool = False,
    ):
        self._authority = authority
        self._audit = audit
        self._events = events
        self._cond = threading.Condition()
        self._paused = paused
        self._in_flight = 0

    @property
    def paused(self) -> bool:
        with self._cond:
            return self._paused

    def admit(self) -> bool:
        """Register an in-flight mutation; False if the registry is paused."""
        with self._cond:
            if self._paused:
                return False
            self._in_flight += 1
            return True

    def release(self) -> None:
        with self._cond:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._cond.notify_all()

    def restore(self, paused: bool) -> None:
        """Set the flag without audit; used when restoring a snapshot."""
        with self._cond:
            self._paused = bool(paused)

    @contextmanager
    def guard(self, operation: str) -> Iterator[None]:
        """Run a mutation, or raise RegistryPaused if the registry is paused."""
        if not self.admit():
            error = RegistryPaused(operation)
            logger.rejected(operation, error)
            raise error
        try:
            yield
        finally:
            self.release()

    def pause(self, caller: str) -> bool:
        """Pause the registry. Returns False if it was already paused."""
        self._authority.require_admin(caller, "pause")
        with self._cond:
            if self._paused:
                return False
            self._paused = True
            while self._in_flight > 0:
                self._cond.wait()

        self._audit.append(AuditOperation.PAUSE, caller)
        self._events.append(REGISTRY_STREAM, RegistryPauseChanged(paused=True, changed_by=caller))
        logger.warning("Registry paused", operation="pause", caller=caller)
        return True

    def unpause(self, caller: str) -> bool:
        """Resume the registry. Returns False if it was not paused."""
        self._authority.require_admin(caller, "unpause")
        with self._cond:
            if not self._paused:
                return False
            self._paused = False

        self._audit.append(AuditOperation.UNPAUSE, caller)
        self._events.append(REGISTRY_STREAM, RegistryPauseChanged(paused=False, changed_by=caller))
        logger.info("Registry unpaused", operation="unpause", caller=caller)
        return True
