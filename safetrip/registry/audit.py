"""
Registry Audit Log

Tamper-evident, append-only record of privileged and emergency actions.
Each entry links to its predecessor through a SHA-256 digest over the
canonical JSON of the entry, so rewriting any entry breaks every later
link. Signed checkpoints (Ed25519) pin the chain head so an exported log
can be checked against a known state.

    entry[n].previous_digest == entry[n-1].digest
    entry[0].previous_digest == GENESIS_DIGEST

Entries are never removed or edited. Readers get copies.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import base64
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from safetrip.core import canonical_json_bytes, sha256_bytes
from safetrip.registry.hardening import AtomicCounter, CryptoUtils
from safetrip.registry.observability import RegistryLayer, get_correlation_id, get_logger

logger = get_logger("audit", RegistryLayer.AUDIT)

GENESIS_DIGEST = "0" * 64


class AuditOperation(Enum):
    """Actions that leave an audit entry."""
    ROLE_GRANT = "role_grant"
    ROLE_REVOKE = "role_revoke"
    VERIFIER_REGISTER = "verifier_register"
    VERIFIER_STATUS = "verifier_status"
    STATUS_CHANGE = "status_change"
    REVOKE = "revoke"
    EXPIRE = "expire"
    EMERGENCY_ACCESS = "emergency_access"
    PAUSE = "pause"
    UNPAUSE = "unpause"


@dataclass
class AuditEntry:
    """One audit log entry."""
    sequence: int
    operation: str
    actor: str
    timestamp: str
    reason: str = ""
    registry_id: Optional[int] = None
    outcome: str = "success"
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""
    previous_digest: str = GENESIS_DIGEST
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = self.compute_digest()

    def content(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "operation": self.operation,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "registry_id": self.registry_id,
            "outcome": self.outcome,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "previous_digest": self.previous_digest,
        }

    def compute_digest(self) -> str:
        return sha256_bytes(canonical_json_bytes(self.content()))

    def to_dict(self) -> Dict[str, Any]:
        data = self.content()
        data["digest"] = self.digest
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(**data)


def _b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def public_key_b64(private_key: Ed25519PrivateKey) -> str:
    """Raw Ed25519 public key, base64url encoded."""
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return _b64url(raw)


def generate_signing_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


@dataclass
class AuditCheckpoint:
    """A signed statement of the audit chain length and head digest."""
    length: int
    head_digest: str
    created_at: str
    signer: str
    public_key: str
    signature: str = ""

    def signing_input(self) -> bytes:
        return canonical_json_bytes({
            "length": self.length,
            "head_digest": self.head_digest,
            "created_at": self.created_at,
            "signer": self.signer,
            "public_key": self.public_key,
        })

    def verify_signature(self) -> bool:
        try:
            key = Ed25519PublicKey.from_public_bytes(_b64url_decode(self.public_key))
            key.verify(_b64url_decode(self.signature), self.signing_input())
        except (InvalidSignature, ValueError):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "head_digest": self.head_digest,
            "created_at": self.created_at,
            "signer": self.signer,
            "public_key": self.public_key,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditCheckpoint":
        return cls(**data)


class AuditLog:
    """
    Append-only, hash-chained audit log.

    Appends are serialised under one lock; the chain never forks.
    When constructed with a signing key and a checkpoint interval, a signed
    checkpoint is taken automatically every ``checkpoint_interval`` entries.
    """

    def __init__(
        self,
        signing_key: Optional[Ed25519PrivateKey] = None,
        checkpoint_interval: int = 0,
        signer: str = "registry",
    ):
        self._entries: List[AuditEntry] = []
        self._checkpoints: List[AuditCheckpoint] = []
        self._lock = threading.Lock()
        self._sequence = AtomicCounter(0)
        self._signing_key = signing_key
        self._checkpoint_interval = checkpoint_interval
        self._signer = signer

    def load(
        self,
        entries: List[Dict[str, Any]],
        checkpoints: Iterable[Dict[str, Any]] = (),
    ) -> None:
        """Replace the log with exported entries, keeping their stored digests."""
        with self._lock:
            self._entries = [AuditEntry.from_dict(e) for e in entries]
            self._checkpoints = [AuditCheckpoint.from_dict(cp) for cp in checkpoints]
            self._sequence.reset(self._entries[-1].sequence if self._entries else 0)

    def append(
        self,
        operation: AuditOperation,
        actor: str,
        reason: str = "",
        registry_id: Optional[int] = None,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an entry and return a copy of it."""
        with self._lock:
            previous = self._entries[-1].digest if self._entries else GENESIS_DIGEST
            entry = AuditEntry(
                sequence=self._sequence.increment(),
                operation=operation.value,
                actor=actor,
                timestamp=datetime.now(timezone.utc).isoformat(),
                reason=reason,
                registry_id=registry_id,
                outcome=outcome,
                details=dict(details or {}),
                correlation_id=get_correlation_id(),
                previous_digest=previous,
            )
            self._entries.append(entry)

            if (
                self._signing_key is not None
                and self._checkpoint_interval > 0
                and len(self._entries) % self._checkpoint_interval == 0
            ):
                self._checkpoints.append(self._sign_head(self._signing_key, self._signer))

        logger.info(
            f"AUDIT: {operation.value} by {actor}",
            operation="audit",
            sequence=entry.sequence,
            registry_id=registry_id,
            outcome=outcome,
        )
        return AuditEntry.from_dict(entry.to_dict())

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            previous = GENESIS_DIGEST
            for i, entry in enumerate(self._entries):
                if not CryptoUtils.secure_compare_str(entry.compute_digest(), entry.digest):
                    return (False, i)
                if entry.previous_digest != previous:
                    return (False, i)
                previous = entry.digest
            return (True, None)

    def query(
        self,
        actor: Optional[str] = None,
        operation: Optional[AuditOperation] = None,
        registry_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Query entries, oldest first."""
        with self._lock:
            entries = [AuditEntry.from_dict(e.to_dict()) for e in self._entries]

        if actor:
            entries = [e for e in entries if e.actor == actor]
        if operation:
            entries = [e for e in entries if e.operation == operation.value]
        if registry_id is not None:
            entries = [e for e in entries if e.registry_id == registry_id]

        return entries[-limit:] if limit else entries

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._entries]

    @property
    def head_digest(self) -> str:
        with self._lock:
            return self._entries[-1].digest if self._entries else GENESIS_DIGEST

    @property
    def checkpoints(self) -> List[AuditCheckpoint]:
        with self._lock:
            return list(self._checkpoints)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ─── checkpoints ─────────────────────────────────────────────────────────

    def checkpoint(self, private_key: Ed25519PrivateKey, signer: str = "registry") -> AuditCheckpoint:
        """Sign the current chain head."""
        with self._lock:
            cp = self._sign_head(private_key, signer)
            self._checkpoints.append(cp)
            return cp

    def _sign_head(self, private_key: Ed25519PrivateKey, signer: str) -> AuditCheckpoint:
        cp = AuditCheckpoint(
            length=len(self._entries),
            head_digest=self._entries[-1].digest if self._entries else GENESIS_DIGEST,
            created_at=datetime.now(timezone.utc).isoformat(),
            signer=signer,
            public_key=public_key_b64(private_key),
        )
        cp.signature = _b64url(private_key.sign(cp.signing_input()))
        return cp

    def verify_checkpoint(self, checkpoint: AuditCheckpoint, public_key: Optional[str] = None) -> bool:
        """
        Check a checkpoint against this log.

        The signature must be valid (and made by ``public_key`` when given),
        and the log must still contain the checkpointed head at the
        checkpointed length.
        """
        if public_key is not None and checkpoint.public_key != public_key:
            return False
        if not checkpoint.verify_signature():
            return False
        with self._lock:
            if checkpoint.length > len(self._entries):
                return False
            if checkpoint.length == 0:
                return checkpoint.head_digest == GENESIS_DIGEST
            return self._entries[checkpoint.length - 1].digest == checkpoint.head_digest
