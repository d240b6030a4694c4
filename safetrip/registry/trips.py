"""
Trip Lifecycle Manager

    not_started ──start_trip──► active ──end_trip──► ended

Only the identity owner may move their trip. Starting requires an active,
verified record; ending only requires a running trip, so a trip that was
under way when the record was suspended can still be closed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from safetrip.core import now_iso8601
from safetrip.registry.events import EventStore, TripEnded, TripStarted, identity_stream
from safetrip.registry.hardening import (
    AuthorizationError,
    NotVerified,
    RecordNotActive,
    RegistryError,
    TripAlreadyActive,
    TripNotStarted,
)
from safetrip.registry.models import IdentityRecord, IdentityStatus, TripState
from safetrip.registry.observability import RegistryLayer, get_logger, timed_operation
from safetrip.registry.pause import PauseSwitch
from safetrip.registry.store import IdentityStore

logger = get_logger("lifecycle", RegistryLayer.TRIPS)


class TripLifecycleManager:
    """Owner-driven trip transitions gated on verification."""

    def __init__(self, store: IdentityStore, circuit_breaker: PauseSwitch, events: EventStore):
        self.store = store
        self.circuit_breaker = circuit_breaker
        self.events = events

    @staticmethod
    def _require_owner(caller: str, record: IdentityRecord, operation: str) -> None:
        if record.owner_principal != caller:
            error = AuthorizationError(
                f"{caller} does not own identity {record.registry_id}", code="not_owner", principal=caller,
            )
            logger.rejected(operation, error, registry_id=record.registry_id)
            raise error

    @staticmethod
    def _reject(operation: str, error: RegistryError) -> None:
        logger.rejected(operation, error)
        raise error

    @timed_operation(logger, "start_trip")
    def start_trip(self, caller: str, registry_id: int) -> str:
        """Start the owner's trip; returns the start timestamp."""
        with self.circuit_breaker.guard("start_trip"):
            started_at = now_iso8601()
            with self.store.mutate(registry_id) as record:
                self._require_owner(caller, record, "start_trip")
                if record.status != IdentityStatus.ACTIVE:
                    self._reject("start_trip", RecordNotActive(registry_id, record.status.value))
                if not record.is_verified:
                    self._reject("start_trip", NotVerified(registry_id))
                if record.trip.state != TripState.NOT_STARTED:
                    self._reject("start_trip", TripAlreadyActive(registry_id, record.trip.state.value))

                record.trip.state = TripState.ACTIVE
                record.trip.started_at = started_at

        self.events.append(identity_stream(registry_id), TripStarted(
            registry_id=registry_id, started_at=started_at,
        ))
        logger.info(f"Trip started for identity {registry_id}", operation="start_trip")
        return started_at

    @timed_operation(logger, "end_trip")
    def end_trip(self, caller: str, registry_id: int) -> str:
        """End the owner's running trip; returns the end timestamp."""
        with self.circuit_breaker.guard("end_trip"):
            ended_at = now_iso8601()
            with self.store.mutate(registry_id) as record:
                self._require_owner(caller, record, "end_trip")
                if record.trip.state != TripState.ACTIVE:
                    self._reject("end_trip", TripNotStarted(registry_id))

                record.trip.state = TripState.ENDED
                record.trip.ended_at = ended_at

        self.events.append(identity_stream(registry_id), TripEnded(
            registry_id=registry_id, ended_at=ended_at,
        ))
        logger.info(f"Trip ended for identity {registry_id}", operation="end_trip")
        return ended_at
