"""
Registry Error Taxonomy, Validation and Hardening

Every failure a registry operation can report is a RegistryError carrying a
stable snake_case ``code``. The taxonomy has five families:

    ValidationError     malformed input, uniqueness and capacity limits
    AuthorizationError  caller lacks the role or ownership required
    StateError          record is in the wrong state for the operation
    NotFoundError       identity or verifier does not exist
    RegistryPaused      mutation attempted while the circuit breaker is open

Below the taxonomy sit the input validators, which return a
ValidationResult instead of raising so callers can collect several
problems at once, and the counters and per-record locks the stores share.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hmac
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Union

from safetrip.core import parse_iso8601, sha256_bytes


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class RegistryError(Exception):
    """Base exception for all registry failures."""

    code = "registry_error"

    def __init__(self, message: str, code: Optional[str] = None):
        if code:
            self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }


class ValidationError(RegistryError):
    """Input rejected before any state was touched."""

    code = "invalid_input"

    def __init__(
        self,
        field: str,
        message: str,
        value: Any = None,
        code: Optional[str] = None,
    ):
        self.field = field
        self.value = value
        super().__init__(f"{field}: {message}", code)


class DuplicateOwner(ValidationError):
    code = "duplicate_owner"

    def __init__(self, owner: str):
        super().__init__("owner_principal", "principal already has an identity", owner)


class DuplicateExternalId(ValidationError):
    code = "duplicate_external_id"

    def __init__(self, external_id_hash: str):
        super().__init__("external_id_hash", "external id already registered", external_id_hash)


class ContactLimitExceeded(ValidationError):
    code = "contact_limit_exceeded"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__("emergency_contacts", f"maximum {limit} emergency contacts allowed")


class ReasonRequired(ValidationError):
    code = "reason_required"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__("reason", f"a non-empty reason is required for {operation}")


class BatchTooLarge(ValidationError):
    code = "batch_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__("registry_ids", f"batch of {size} exceeds limit of {limit}", size)


class AuthorizationError(RegistryError):
    """Caller lacks the role or ownership the operation requires."""

    code = "missing_role"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        principal: Optional[str] = None,
    ):
        self.principal = principal
        super().__init__(message, code)


class StateError(RegistryError):
    """Record is not in a state that permits the operation."""

    code = "invalid_state"

    def __init__(self, message: str, registry_id: Optional[int] = None, code: Optional[str] = None):
        self.registry_id = registry_id
        super().__init__(message, code)


class AlreadyVerified(StateError):
    code = "already_verified"

    def __init__(self, registry_id: int):
        super().__init__(f"identity {registry_id} is already verified", registry_id)


class RecordNotActive(StateError):
    code = "record_not_active"

    def __init__(self, registry_id: int, status: str):
        self.status = status
        super().__init__(f"identity {registry_id} is {status}", registry_id)


class NotVerified(StateError):
    code = "not_verified"

    def __init__(self, registry_id: int):
        super().__init__(f"identity {registry_id} must be verified to start a trip", registry_id)


class TripAlreadyActive(StateError):
    code = "trip_already_active"

    def __init__(self, registry_id: int, state: str):
        self.state = state
        code = "trip_already_ended" if state == "ended" else None
        super().__init__(f"trip for identity {registry_id} is {state}", registry_id, code)


class TripNotStarted(StateError):
    code = "trip_not_started"

    def __init__(self, registry_id: int):
        super().__init__(f"trip for identity {registry_id} has not started", registry_id)


class NotFoundError(RegistryError):
    """Referenced identity or verifier does not exist."""

    code = "not_found"


class IdentityNotFound(NotFoundError):
    code = "identity_not_found"

    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"identity not found: {key}")


class VerifierNotFound(NotFoundError):
    code = "verifier_not_found"

    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"verifier not found: {key}")


class RegistryPaused(RegistryError):
    """Mutation attempted while the registry is paused."""

    code = "registry_paused"

    def __init__(self, operation: str = ""):
        self.operation = operation
        suffix = f": {operation} rejected" if operation else ""
        super().__init__(f"registry is paused{suffix}")


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Outcome of one validator: the cleaned value, or what was wrong with it."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> "ValidationResult":
        return cls(True, [], value)

    @classmethod
    def rejected(cls, field_name: str, message: str, value: Any = None) -> "ValidationResult":
        return cls(False, [ValidationError(field_name, message, value)])

    def unwrap(self) -> Any:
        """The cleaned value; raises the first error when invalid."""
        if self.errors:
            raise self.errors[0]
        return self.sanitized_value


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """
    Validators for caller-supplied registry fields.

    Strings are stripped of surrounding whitespace and NUL bytes before
    their length is checked. Digests are opaque: only presence and length
    are enforced.
    """

    PRINCIPAL_PATTERN = re.compile(r"^[A-Za-z0-9:._@/+-]+$")
    MAX_STRING_LENGTH = 512
    MAX_REASON_LENGTH = 1024
    MAX_PRINCIPAL_LENGTH = 256
    MAX_GROUP_SIZE = 500

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        if not isinstance(value, str):
            return ValidationResult.rejected(field_name, f"expected a string, got {type(value).__name__}", value)

        cleaned = value.replace("\x00", "").strip()
        limit = max_length or cls.MAX_STRING_LENGTH
        problems = []
        if len(cleaned) < min_length:
            problems.append(f"must be at least {min_length} characters")
        if len(cleaned) > limit:
            problems.append(f"must be at most {limit} characters")
        if pattern is not None and cleaned and pattern.fullmatch(cleaned) is None:
            problems.append("contains characters that are not allowed")

        if problems:
            return ValidationResult(False, [ValidationError(field_name, p, value) for p in problems])
        return ValidationResult.ok(cleaned)

    @classmethod
    def validate_principal(cls, value: Any, field_name: str = "principal") -> ValidationResult:
        """Wallet address, DID or account name: no whitespace, at most 256 characters."""
        return cls.validate_string(
            value, field_name, max_length=cls.MAX_PRINCIPAL_LENGTH, pattern=cls.PRINCIPAL_PATTERN
        )

    @classmethod
    def validate_hash(cls, value: Any, field_name: str, required: bool = True) -> ValidationResult:
        if value in (None, "") and not required:
            return ValidationResult.ok("")
        return cls.validate_string(value, field_name, max_length=cls.MAX_PRINCIPAL_LENGTH)

    @classmethod
    def validate_reason(cls, value: Any, max_length: Optional[int] = None) -> ValidationResult:
        # Blank is allowed here; operations that need a reason raise ReasonRequired.
        if value is None:
            return ValidationResult.ok("")
        return cls.validate_string(value, "reason", min_length=0, max_length=max_length or cls.MAX_REASON_LENGTH)

    @classmethod
    def validate_timestamp(cls, value: Any, field_name: str, required: bool = False) -> ValidationResult:
        """ISO 8601, kept as given. Blank is accepted unless ``required``."""
        if value in (None, ""):
            if required:
                return ValidationResult.rejected(field_name, "timestamp is required", value)
            return ValidationResult.ok("")
        if parse_iso8601(value) is None:
            return ValidationResult.rejected(field_name, "not an ISO 8601 timestamp", value)
        return ValidationResult.ok(value)

    @classmethod
    def validate_group_size(cls, value: Any) -> ValidationResult:
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.rejected("group_size", "expected an integer", value)
        if not 1 <= value <= cls.MAX_GROUP_SIZE:
            return ValidationResult.rejected("group_size", f"must be between 1 and {cls.MAX_GROUP_SIZE}", value)
        return ValidationResult.ok(value)


# =============================================================================
# DIGESTS
# =============================================================================

class CryptoUtils:
    """Digest helpers for audit and personal data."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Compare two hex digests without leaking timing."""
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    @staticmethod
    def hash_sha256(data: Union[str, bytes]) -> str:
        return sha256_bytes(data.encode("utf-8") if isinstance(data, str) else data)


def hash_sensitive_data(value: str) -> str:
    """Digest of a name, phone number or document number, as stored by the registry."""
    return CryptoUtils.hash_sha256(value.strip())


# =============================================================================
# CONCURRENCY
# =============================================================================

class AtomicCounter:
    """Integer guarded by a lock; used for id allocation and version numbers."""

    def __init__(self, initial: int = 0):
        self._lock = threading.Lock()
        self._value = initial

    def increment(self, delta: int = 1) -> int:
        """Add ``delta`` and return the new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        with self._lock:
            self._value = value


class KeyedLocks:
    """One reentrant lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[Any, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: Any) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(key, threading.RLock())

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self.get(key):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

class InvariantChecker:

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
        registry_id: Optional[int] = None,
    ) -> None:
        """Raise ``invalid_status_transition`` unless ``target_state`` is reachable from ``current_state``."""
        allowed = valid_transitions.get(current_state, set())
        if target_state in allowed:
            return
        raise StateError(
            f"cannot move from {current_state.value} to {target_state.value}; "
            f"allowed: {', '.join(sorted(s.value for s in allowed)) or 'none'}",
            registry_id,
            code="invalid_status_transition",
        )
