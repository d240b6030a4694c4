"""
Registry Events

Every state change in the registry is also recorded as a domain event.
Events are appended to a stream, then handed to in-process subscribers
such as the panic-button service or an operator dashboard.

Streams:
    identity-<registry_id>   registration, verification, status changes,
                             contacts, trips and emergency reads of one identity
    registry                 role grants, verifier changes, pause toggles
                             and bulk verification summaries

Within a stream events keep mutation order. ``sequence_number`` orders
events across streams.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type

from safetrip.core import canonical_json_bytes, now_iso8601, sha256_bytes
from safetrip.registry.observability import RegistryLayer, correlation_id_var, get_logger

logger = get_logger("bus", RegistryLayer.EVENTS)

REGISTRY_STREAM = "registry"


def identity_stream(registry_id: int) -> str:
    return f"identity-{registry_id}"


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


def _new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Event:
    """A fact about a completed registry mutation. The class name is its type."""

    event_id: str = field(default_factory=_new_event_id)
    event_timestamp: str = field(default_factory=now_iso8601)
    correlation_id: str = field(default_factory=correlation_id_var.get)

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"event_type": self.event_type, **asdict(self)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def digest(self) -> str:
        return sha256_bytes(canonical_json_bytes(self.to_dict()))


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class IdentityRegistered(Event):
    registry_id: int = 0
    owner_principal: str = ""
    external_id_hash: str = ""
    registered_by: str = ""


@dataclass
class IdentityVerified(Event):
    registry_id: int = 0
    verifier: str = ""
    verification_timestamp: str = ""


@dataclass
class IdentityStatusChanged(Event):
    registry_id: int = 0
    old_status: str = ""
    new_status: str = ""
    changed_by: str = ""
    reason: str = ""


@dataclass
class IdentityRevoked(Event):
    registry_id: int = 0
    revoked_by: str = ""
    reason: str = ""


@dataclass
class EmergencyContactAdded(Event):
    registry_id: int = 0
    contact_count: int = 0
    is_primary: bool = False


@dataclass
class TripStarted(Event):
    registry_id: int = 0
    started_at: str = ""


@dataclass
class TripEnded(Event):
    registry_id: int = 0
    ended_at: str = ""


@dataclass
class BulkVerified(Event):
    verifier: str = ""
    attempted: int = 0
    succeeded: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)


@dataclass
class EmergencyAccessed(Event):
    registry_id: int = 0
    responder: str = ""
    reason: str = ""
    audit_sequence: int = 0


@dataclass
class VerifierRegistered(Event):
    verifier_id: int = 0
    principal: str = ""
    organization: str = ""
    jurisdiction: str = ""


@dataclass
class VerifierStatusChanged(Event):
    verifier_id: int = 0
    principal: str = ""
    is_active: bool = True


@dataclass
class RoleGranted(Event):
    principal: str = ""
    role: str = ""
    granted_by: str = ""


@dataclass
class RoleRevoked(Event):
    principal: str = ""
    role: str = ""
    revoked_by: str = ""


@dataclass
class RegistryPauseChanged(Event):
    paused: bool = False
    changed_by: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Synchronous publish/subscribe.

    Handlers are called on the publishing thread, highest priority first,
    once the mutation is already committed. An exception from a handler is
    counted and logged; later handlers still run.

        @bus.subscribe(TripStarted)
        def on_trip(event):
            dashboard.mark_travelling(event.registry_id)
    """

    def __init__(self):
        # (priority, handler, accepted event types)
        self._subscriptions: List[Tuple[int, EventHandler, Set[Type[Event]]]] = []
        self._lock = threading.RLock()
        self._published = 0
        self._failures = 0

    def subscribe(self, *event_types: Type[Event], priority: int = 0) -> Callable[[EventHandler], EventHandler]:
        """Register the decorated handler; no types means every event."""
        accepted = set(event_types) or {Event}

        def register(handler: EventHandler) -> EventHandler:
            with self._lock:
                self._subscriptions.append((priority, handler, accepted))
                self._subscriptions.sort(key=lambda sub: sub[0], reverse=True)
            return handler
        return register

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            before = len(self._subscriptions)
            self._subscriptions = [sub for sub in self._subscriptions if sub[1] is not handler]
            return len(self._subscriptions) != before

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published += 1
            targets = [
                handler for _, handler, accepted in self._subscriptions
                if isinstance(event, tuple(accepted))
            ]

        for handler in targets:
            try:
                handler(event)
            except Exception:
                with self._lock:
                    self._failures += 1
                logger.error(
                    f"{getattr(handler, '__name__', repr(handler))} failed on {event.event_type}",
                    error_code="event_handler_failed",
                    exc_info=True,
                    event_id=event.event_id,
                )

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published,
                "error_count": self._failures,
                "handler_count": len(self._subscriptions),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EventRecord:
    """An event together with where it landed: global sequence and stream version."""
    sequence_number: int
    stream_id: str
    version: int
    event: Event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "stream_id": self.stream_id,
            "version": self.version,
            "event": self.event.to_dict(),
        }


class EventStore:
    """Append-only log of registry events, indexed by stream. Appends are published on ``bus``."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or EventBus()
        self._log: List[EventRecord] = []
        self._by_stream: Dict[str, List[EventRecord]] = {}
        self._lock = threading.RLock()

    def append(self, stream_id: str, event: Event) -> EventRecord:
        with self._lock:
            stream = self._by_stream.setdefault(stream_id, [])
            record = EventRecord(len(self._log) + 1, stream_id, len(stream) + 1, event)
            stream.append(record)
            self._log.append(record)
        self.bus.publish(event)
        return record

    def read_stream(self, stream_id: str, from_version: int = 0) -> List[Event]:
        with self._lock:
            records = self._by_stream.get(stream_id, [])
            return [record.event for record in records[from_version:]]

    def read_all(self, from_position: int = 0, max_count: int = 1000) -> List[EventRecord]:
        with self._lock:
            return self._log[from_position:from_position + max_count]

    def events_of_type(self, event_type: Type[Event]) -> List[Event]:
        with self._lock:
            return [record.event for record in self._log if isinstance(record.event, event_type)]

    def get_stream_version(self, stream_id: str) -> int:
        with self._lock:
            return len(self._by_stream.get(stream_id, ()))

    @property
    def total_events(self) -> int:
        return len(self._log)
