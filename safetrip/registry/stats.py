"""
Registry Statistics Aggregator

Read-only rollup of the identity table and verifier directory. The result
is memoized against the store, directory and role-grant version counters,
so any committed mutation invalidates it.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from safetrip.registry.models import IdentityStatus, TripState
from safetrip.registry.roles import RoleAuthority
from safetrip.registry.store import IdentityStore
from safetrip.registry.verifiers import VerifierDirectory


class RegistryStatistics:
    """Counts by status, verification and trip state."""

    def __init__(self, store: IdentityStore, directory: VerifierDirectory, authority: RoleAuthority):
        self.store = store
        self.directory = directory
        self.authority = authority
        self._lock = threading.Lock()
        self._cached_key: Optional[Tuple[int, int, int]] = None
        self._cached: Dict[str, int] = {}

    def get_stats(self) -> Dict[str, int]:
        key = (self.store.version, self.directory.version, self.authority.version)
        with self._lock:
            if key == self._cached_key:
                return dict(self._cached)

        stats = {
            "total": 0,
            "active": 0,
            "verified": 0,
            "pending": 0,
            "revoked": 0,
            "suspended": 0,
            "expired": 0,
            "active_trips": 0,
        }
        for record in self.store.records():
            stats["total"] += 1
            stats[record.status.value] += 1
            if record.is_verified:
                stats["verified"] += 1
            elif record.status == IdentityStatus.ACTIVE:
                stats["pending"] += 1
            if record.trip.state == TripState.ACTIVE:
                stats["active_trips"] += 1

        stats["total_verifiers"], stats["active_verifiers"] = self.directory.counts()

        with self._lock:
            self._cached_key = key
            self._cached = stats
        return dict(stats)
