"""
Identity Store

Table of identity records keyed by ``registry_id`` with two unique secondary
indexes: owner principal and external-id hash.

Concurrency:
    - Uniqueness checks, id allocation and insert happen under one index
      lock, so two registrations can never both pass the check.
    - Each record has its own lock. ``mutate`` hands out a working copy
      under that lock and commits it only if the block exits cleanly, so a
      failed operation leaves the record untouched.
    - Committed records are never modified in place; readers copy them
      without taking the record lock.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from safetrip.core import now_iso8601
from safetrip.registry.hardening import (
    AtomicCounter,
    DuplicateExternalId,
    DuplicateOwner,
    IdentityNotFound,
    KeyedLocks,
)
from safetrip.registry.models import IdentityRecord
from safetrip.registry.observability import RegistryLayer, get_logger

logger = get_logger("identity_store", RegistryLayer.STORE)


class IdentityStore:
    """Identity records with owner and external-id uniqueness."""

    def __init__(self):
        self._records: Dict[int, IdentityRecord] = {}
        self._by_owner: Dict[str, int] = {}
        self._by_external_id: Dict[str, int] = {}
        self._index_lock = threading.RLock()
        self._record_locks = KeyedLocks()
        self._last_id = AtomicCounter(0)
        self._version = AtomicCounter(0)

    # ─── writes ──────────────────────────────────────────────────────────────

    def insert(
        self,
        owner_principal: str,
        external_id_hash: str,
        build: Callable[[int], IdentityRecord],
    ) -> IdentityRecord:
        """
        Atomically check both unique indexes, allocate the next id and insert
        the record produced by ``build(registry_id)``.
        """
        with self._index_lock:
            if owner_principal in self._by_owner:
                raise DuplicateOwner(owner_principal)
            if external_id_hash in self._by_external_id:
                raise DuplicateExternalId(external_id_hash)

            registry_id = self._last_id.get() + 1
            record = build(registry_id)
            self._last_id.reset(registry_id)

            self._records[registry_id] = record
            self._by_owner[owner_principal] = registry_id
            self._by_external_id[external_id_hash] = registry_id
            self._version.increment()

        logger.debug("Inserted identity", operation="insert", registry_id=registry_id)
        return copy.deepcopy(record)

    @contextmanager
    def mutate(self, registry_id: int) -> Iterator[IdentityRecord]:
        """
        Yield a working copy of a record under its lock; commit on clean exit.

        A block that leaves the copy unchanged commits nothing. Raises
        IdentityNotFound before taking any lock if the id is unknown.
        """
        if registry_id not in self._records:
            raise IdentityNotFound(registry_id)

        with self._record_locks.hold(registry_id):
            original = self._records[registry_id]
            working = copy.deepcopy(original)
            yield working
            if working == original:
                return
            working.last_updated_timestamp = now_iso8601()
            self._records[registry_id] = working
            self._version.increment()

    # ─── reads ───────────────────────────────────────────────────────────────

    def get(self, registry_id: int) -> IdentityRecord:
        record = self._records.get(registry_id)
        if record is None:
            raise IdentityNotFound(registry_id)
        return copy.deepcopy(record)

    def find(self, registry_id: int) -> Optional[IdentityRecord]:
        record = self._records.get(registry_id)
        return copy.deepcopy(record) if record is not None else None

    def id_for_owner(self, owner_principal: str) -> Optional[int]:
        with self._index_lock:
            return self._by_owner.get(owner_principal)

    def id_for_external_id(self, external_id_hash: str) -> Optional[int]:
        with self._index_lock:
            return self._by_external_id.get(external_id_hash)

    def exists(self, registry_id: int) -> bool:
        return registry_id in self._records

    def records(self) -> List[IdentityRecord]:
        """Copies of all records ordered by registry_id."""
        with self._index_lock:
            committed = [self._records[rid] for rid in sorted(self._records)]
        return copy.deepcopy(committed)

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._records)

    @property
    def version(self) -> int:
        """Increases on every insert or committed mutation."""
        return self._version.get()

    @property
    def last_registry_id(self) -> int:
        return self._last_id.get()

    # ─── restore ─────────────────────────────────────────────────────────────

    def load(self, records: Iterable[IdentityRecord], last_registry_id: int = 0) -> None:
        """Replace the table contents; used when restoring a snapshot."""
        with self._index_lock:
            self._records = {}
            self._by_owner = {}
            self._by_external_id = {}
            for record in records:
                if record.owner_principal in self._by_owner:
                    raise DuplicateOwner(record.owner_principal)
                if record.external_id_hash in self._by_external_id:
                    raise DuplicateExternalId(record.external_id_hash)
                self._records[record.registry_id] = record
                self._by_owner[record.owner_principal] = record.registry_id
                self._by_external_id[record.external_id_hash] = record.registry_id
            self._last_id.reset(max([last_registry_id, *self._records.keys()]))
            self._version.increment()
