"""
Bulk Operation Processor

Verifies a batch of identities one at a time. Each id takes only its own
record lock, so overlapping batches and concurrent single verifications
are safe. Ids that are unknown, already verified or not active are skipped
and reported; they never fail the batch.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from safetrip.core import now_iso8601
from safetrip.registry.config import RegistryConfig
from safetrip.registry.engine import VerificationEngine
from safetrip.registry.events import REGISTRY_STREAM, BulkVerified, EventStore
from safetrip.registry.hardening import BatchTooLarge, RegistryPaused
from safetrip.registry.models import Role
from safetrip.registry.observability import RegistryLayer, get_logger, timed_operation
from safetrip.registry.pause import PauseSwitch
from safetrip.registry.roles import RoleAuthority
from safetrip.registry.verifiers import VerifierDirectory

logger = get_logger("processor", RegistryLayer.BULK)


@dataclass
class BulkVerifyResult:
    """Outcome of a bulk verification. ``skip_reasons`` maps id to error code."""
    attempted: int
    succeeded: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    skip_reasons: Dict[int, str] = field(default_factory=dict)

    def skip(self, registry_id: int, reason: str) -> None:
        self.skipped.append(registry_id)
        self.skip_reasons.setdefault(registry_id, reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": list(self.succeeded),
            "skipped": list(self.skipped),
            "skip_reasons": {str(k): v for k, v in self.skip_reasons.items()},
        }


class BulkOperationProcessor:
    """Batch verification with per-item skip."""

    def __init__(
        self,
        engine: VerificationEngine,
        authority: RoleAuthority,
        directory: VerifierDirectory,
        circuit_breaker: PauseSwitch,
        events: EventStore,
        config: RegistryConfig,
    ):
        self.engine = engine
        self.authority = authority
        self.directory = directory
        self.circuit_breaker = circuit_breaker
        self.events = events
        self.config = config

    @timed_operation(logger, "bulk_verify")
    def bulk_verify(self, caller: str, registry_ids: Iterable[int]) -> BulkVerifyResult:
        """
        Verify each id in order. If the registry is paused part-way through,
        the remaining ids are skipped with reason ``registry_paused``.
        """
        ids = list(registry_ids)
        self.authority.require(caller, Role.VERIFIER, operation="bulk_verify")

        limit = self.config.limits.max_batch_size.get()
        if len(ids) > limit:
            error = BatchTooLarge(len(ids), limit)
            logger.rejected("bulk_verify", error, caller=caller)
            raise error
        if self.circuit_breaker.paused:
            error = RegistryPaused("bulk_verify")
            logger.rejected("bulk_verify", error, caller=caller)
            raise error

        result = BulkVerifyResult(attempted=len(ids))
        timestamp = now_iso8601()
        for registry_id in ids:
            if not self.circuit_breaker.admit():
                result.skip(registry_id, RegistryPaused.code)
                continue
            try:
                skip_reason = self.engine.try_verify(registry_id, caller, timestamp)
            finally:
                self.circuit_breaker.release()

            if skip_reason is None:
                result.succeeded.append(registry_id)
            else:
                result.skip(registry_id, skip_reason)

        self.directory.record_verifications(caller, len(result.succeeded))
        self.events.append(REGISTRY_STREAM, BulkVerified(
            verifier=caller,
            attempted=result.attempted,
            succeeded=list(result.succeeded),
            skipped=list(result.skipped),
        ))
        logger.info(
            f"Bulk verification: {len(result.succeeded)}/{result.attempted} verified",
            operation="bulk_verify",
            caller=caller,
            skipped=len(result.skipped),
        )
        return result
