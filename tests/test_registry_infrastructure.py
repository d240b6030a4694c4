"""
Registry Infrastructure Tests

Tests for the supporting layers:
- Configuration (defaults, YAML files, environment overrides)
- Structured logging and correlation IDs
- Input validation helpers
- Hash-chained audit log and signed checkpoints
- Domain events
- Snapshot persistence

Copyright (c) 2026 Momentum. All rights reserved.
"""

import io
import json
import logging

import pytest

from conftest import ADMIN, REGISTRAR, RESPONDER, VERIFIER, make_kyc

from safetrip.core import canonical_json_bytes, sha256_bytes
from safetrip.registry.audit import (
    GENESIS_DIGEST,
    AuditLog,
    AuditOperation,
    generate_signing_key,
    public_key_b64,
)
from safetrip.registry.config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    RegistryConfig,
    get_config,
    get_config_manager,
)
from safetrip.registry.events import (
    BulkVerified,
    EmergencyAccessed,
    Event,
    IdentityRegistered,
    IdentityVerified,
    TripStarted,
)
from safetrip.registry.hardening import (
    AuthorizationError,
    DuplicateOwner,
    RegistryError,
    Validators,
    hash_sensitive_data,
)
from safetrip.registry.models import IdentityStatus, Role
from safetrip.registry.observability import (
    RegistryLayer,
    StructuredHandler,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)
from safetrip.registry.persistence import (
    SnapshotError,
    export_snapshot,
    load_snapshot,
    save_snapshot,
)
from safetrip.registry.registry import DigitalIdentityRegistry


# =============================================================================
# CONFIGURATION
# =============================================================================

class TestConfiguration:
    """Tests for the configuration layer."""

    def test_defaults(self):
        config = get_config()
        assert config.limits.max_batch_size.get() == 100
        assert config.persistence.verify_audit_on_load.get() is True
        assert config.audit.checkpoint_interval.get() == 0
        assert config.observability.log_format.get() == "json"

    def test_manager_is_singleton(self):
        assert ConfigManager() is get_config_manager()

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("SAFETRIP_MAX_BATCH_SIZE", "7")
        monkeypatch.setenv("SAFETRIP_VERIFY_AUDIT_ON_LOAD", "false")
        config = RegistryConfig()
        assert config.limits.max_batch_size.get() == 7
        assert config.persistence.verify_audit_on_load.get() is False

    def test_dotted_get_and_set(self):
        mgr = get_config_manager()
        mgr.set("limits.max_batch_size", "25")
        assert mgr.get("limits.max_batch_size") == 25
        assert mgr.get("limits")["max_batch_size"] == 25

    def test_invalid_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().get("limits.nope")

    def test_validator_rejects(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("limits.max_batch_size", 0)
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("observability.log_format", "xml")

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "safetrip.yaml"
        path.write_text(
            "limits:\n  max_batch_size: 12\npersistence:\n  state_path: /tmp/registry.json\n",
            encoding="utf-8",
        )
        mgr = get_config_manager()
        mgr.load_from_file(path)

        assert mgr.get("limits.max_batch_size") == 12
        assert mgr.get("persistence.state_path") == "/tmp/registry.json"
        assert path in mgr.loaded_paths

    def test_unknown_yaml_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("limits:\n  max_batch: 12\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_validate_and_schema(self):
        mgr = get_config_manager()
        assert mgr.validate() == []
        schema = mgr.export_schema()
        assert schema["properties"]["limits"]["max_batch_size"]["env_var"] == "SAFETRIP_MAX_BATCH_SIZE"

    def test_to_yaml(self):
        text = RegistryConfig().to_yaml()
        assert "max_batch_size: 100" in text


# =============================================================================
# OBSERVABILITY
# =============================================================================

class TestObservability:
    """Tests for structured logging."""

    def _capture(self, fmt="json"):
        stream = io.StringIO()
        logger = get_logger("test_capture", RegistryLayer.ENGINE)
        handler = StructuredHandler(stream=stream, fmt=fmt)
        logger._logger.addHandler(handler)
        return logger, handler, stream

    def test_json_lines_carry_correlation_and_layer(self):
        logger, handler, stream = self._capture()
        try:
            set_correlation_id("corr-test123")
            logger.info("Registered identity 1", operation="register_identity", registry_id=1)
        finally:
            logger._logger.removeHandler(handler)

        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["message"] == "Registered identity 1"
        assert line["correlation_id"] == "corr-test123"
        assert line["layer"] == "engine"
        assert line["operation"] == "register_identity"
        assert line["context"] == {"registry_id": 1}

    def test_rejected_logs_error_code(self):
        logger, handler, stream = self._capture(fmt="text")
        try:
            logger.rejected("register_identity", DuplicateOwner("tourist-a"))
        finally:
            logger._logger.removeHandler(handler)

        text = stream.getvalue()
        assert "WARNING" in text
        assert "[duplicate_owner]" in text

    def test_correlation_id_generated_on_demand(self):
        set_correlation_id("")
        cid = get_correlation_id()
        assert cid.startswith("corr-")
        assert get_correlation_id() == cid

    def test_timed_operation_preserves_result_and_errors(self):
        logger = get_logger("timed", RegistryLayer.ENGINE)

        @timed_operation(logger, "double")
        def double(x):
            if x < 0:
                raise ValueError("negative")
            return x * 2

        assert double(4) == 8
        assert double.__name__ == "double"
        with pytest.raises(ValueError):
            double(-1)

    def test_loaded_config_reaches_existing_loggers(self, tmp_path):
        from safetrip.registry import engine

        module_logger = engine.logger._logger
        default_handler = next(h for h in module_logger.handlers if isinstance(h, StructuredHandler))
        _, capture, _ = self._capture(fmt="json")
        try:
            path = tmp_path / "safetrip.yaml"
            path.write_text("observability:\n  log_level: ERROR\n  log_format: text\n", encoding="utf-8")
            get_config_manager().load_from_file(path)

            assert module_logger.level == logging.ERROR
            assert default_handler.fmt == "text"
            assert capture.fmt == "json"

            get_config_manager().reset()
            assert module_logger.level == logging.INFO
            assert default_handler.fmt == "json"
        finally:
            logging.getLogger("safetrip.engine.test_capture").removeHandler(capture)

    def test_logger_name(self):
        logger = get_logger("authority", RegistryLayer.ROLES)
        assert logger._logger.name == "safetrip.roles.authority"
        assert isinstance(logger._logger, logging.Logger)


# =============================================================================
# HARDENING
# =============================================================================

class TestHardening:
    """Tests for validation helpers and errors."""

    def test_validate_string_strips(self):
        assert Validators.validate_string("  Delhi\x00 ", "location").unwrap() == "Delhi"

    def test_validate_string_limits(self):
        assert not Validators.validate_string("", "f").is_valid
        assert not Validators.validate_string("x" * 600, "f").is_valid
        assert not Validators.validate_string(12, "f").is_valid

    def test_validate_principal(self):
        assert Validators.validate_principal("did:key:z6Mk.abc").is_valid
        assert Validators.validate_principal("0xAbC123").is_valid
        assert not Validators.validate_principal("two words").is_valid

    def test_validate_timestamp(self):
        assert Validators.validate_timestamp("2026-10-17T10:00:00Z", "t").is_valid
        assert Validators.validate_timestamp("", "t").unwrap() == ""
        assert not Validators.validate_timestamp("", "t", required=True).is_valid
        assert not Validators.validate_timestamp("yesterday", "t").is_valid

    def test_validate_group_size(self):
        assert Validators.validate_group_size(1).is_valid
        assert not Validators.validate_group_size(True).is_valid
        assert not Validators.validate_group_size(0).is_valid

    def test_hash_sensitive_data(self):
        digest = hash_sensitive_data(" P1234567 ")
        assert digest == sha256_bytes(b"P1234567")
        assert len(digest) == 64

    def test_error_to_dict(self):
        error = AuthorizationError("mallory lacks role admin", principal="mallory")
        assert error.to_dict() == {
            "error": "AuthorizationError",
            "code": "missing_role",
            "message": "mallory lacks role admin",
        }
        assert isinstance(error, RegistryError)

    def test_canonical_json_rejects_floats(self):
        assert canonical_json_bytes({"b": 1, "a": [True, None]}) == b'{"a":[true,null],"b":1}'
        with pytest.raises(ValueError):
            canonical_json_bytes({"trust_score": 0.8})


# =============================================================================
# AUDIT LOG
# =============================================================================

class TestAuditLog:
    """Tests for the hash-chained audit log."""

    def test_chain_links(self):
        log = AuditLog()
        first = log.append(AuditOperation.PAUSE, ADMIN)
        second = log.append(AuditOperation.UNPAUSE, ADMIN)

        assert first.sequence == 1
        assert first.previous_digest == GENESIS_DIGEST
        assert second.previous_digest == first.digest
        assert log.head_digest == second.digest
        assert log.verify_chain() == (True, None)

    def test_tamper_detected(self):
        log = AuditLog()
        log.append(AuditOperation.EMERGENCY_ACCESS, RESPONDER, reason="flood", registry_id=1)
        log.append(AuditOperation.EMERGENCY_ACCESS, RESPONDER, reason="flood", registry_id=2)
        log._entries[0].reason = "routine"
        assert log.verify_chain() == (False, 0)

    def test_returned_entries_are_copies(self):
        log = AuditLog()
        entry = log.append(AuditOperation.PAUSE, ADMIN)
        entry.actor = "mallory"
        assert log.query()[0].actor == ADMIN
        assert log.verify_chain() == (True, None)

    def test_query_filters(self):
        log = AuditLog()
        log.append(AuditOperation.STATUS_CHANGE, ADMIN, registry_id=1)
        log.append(AuditOperation.EMERGENCY_ACCESS, RESPONDER, reason="x", registry_id=1)
        log.append(AuditOperation.EMERGENCY_ACCESS, RESPONDER, reason="y", registry_id=2)

        assert len(log.query(actor=RESPONDER)) == 2
        assert len(log.query(operation=AuditOperation.EMERGENCY_ACCESS, registry_id=1)) == 1
        assert [e.reason for e in log.query(limit=1)] == ["y"]

    def test_signed_checkpoint(self):
        key = generate_signing_key()
        log = AuditLog()
        log.append(AuditOperation.PAUSE, ADMIN)
        checkpoint = log.checkpoint(key, signer="registry-ops")

        assert checkpoint.length == 1
        assert checkpoint.head_digest == log.head_digest
        assert checkpoint.verify_signature()
        assert log.verify_checkpoint(checkpoint, public_key=public_key_b64(key))

        log.append(AuditOperation.UNPAUSE, ADMIN)
        assert log.verify_checkpoint(checkpoint)

    def test_checkpoint_rejects_wrong_key_and_forgery(self):
        key = generate_signing_key()
        other = generate_signing_key()
        log = AuditLog()
        log.append(AuditOperation.PAUSE, ADMIN)
        checkpoint = log.checkpoint(key)

        assert not log.verify_checkpoint(checkpoint, public_key=public_key_b64(other))
        checkpoint.length = 0
        assert not checkpoint.verify_signature()

    def test_checkpoint_detects_rewritten_history(self):
        key = generate_signing_key()
        log = AuditLog()
        log.append(AuditOperation.PAUSE, ADMIN)
        checkpoint = log.checkpoint(key)

        rewritten = AuditLog()
        rewritten.append(AuditOperation.PAUSE, "mallory")
        assert not rewritten.verify_checkpoint(checkpoint)

    def test_automatic_checkpoints(self):
        log = AuditLog(signing_key=generate_signing_key(), checkpoint_interval=2)
        for _ in range(5):
            log.append(AuditOperation.PAUSE, ADMIN)
        assert [cp.length for cp in log.checkpoints] == [2, 4]

    def test_registry_wires_checkpoint_interval(self, config):
        config.audit.checkpoint_interval.set(3)
        reg = DigitalIdentityRegistry(admins=ADMIN, config=config, signing_key=generate_signing_key())
        for n in range(3):
            reg.grant_role(ADMIN, f"desk-{n}", Role.REGISTRAR)
        assert len(reg.audit.checkpoints) == 1


# =============================================================================
# EVENTS
# =============================================================================

class TestEvents:
    """Tests for domain events."""

    def test_subscriber_sees_identity_lifecycle(self, registry, register):
        seen = []

        @registry.subscribe(IdentityRegistered, IdentityVerified, TripStarted)
        def record(event):
            seen.append(event.event_type)

        registry_id = register(owner="tourist-a")
        registry.verify_identity(VERIFIER, registry_id)
        registry.start_trip("tourist-a", registry_id)
        assert seen == ["IdentityRegistered", "IdentityVerified", "TripStarted"]

    def test_identity_stream(self, registry, register):
        registry_id = register(owner="tourist-a")
        registry.verify_identity(VERIFIER, registry_id)
        registry.emergency_access(RESPONDER, registry_id, "check-in missed")

        events = registry.events_for(registry_id)
        assert [type(e) for e in events] == [IdentityRegistered, IdentityVerified, EmergencyAccessed]
        assert events[2].audit_sequence == registry.emergency_access_log(registry_id)[0].sequence

    def test_failing_handler_does_not_undo_mutation(self, registry):
        @registry.subscribe(IdentityRegistered)
        def explode(event):
            raise RuntimeError("dashboard offline")

        registry_id = registry.register_identity(REGISTRAR, "tourist-a", "ext-a", make_kyc())
        assert registry.get_identity(ADMIN, registry_id).status == IdentityStatus.ACTIVE
        assert registry.bus.metrics["error_count"] == 1

    def test_one_bulk_event_per_batch(self, registry, register):
        a, b = register(), register()
        registry.bulk_verify(VERIFIER, [a, b, 77])

        bulk_events = registry.events.events_of_type(BulkVerified)
        assert len(bulk_events) == 1
        assert bulk_events[0].succeeded == [a, b]
        assert bulk_events[0].skipped == [77]
        assert registry.events.events_of_type(IdentityVerified) == []

    def test_store_positions(self, registry, register):
        registry_id = register()
        registry.verify_identity(VERIFIER, registry_id)

        stream = f"identity-{registry_id}"
        assert registry.events.get_stream_version(stream) == 2
        records = registry.events.read_all()
        assert len(records) == registry.events.total_events
        assert [r.sequence_number for r in records] == list(range(1, len(records) + 1))
        assert records[-1].stream_id == stream

    def test_priority_and_unsubscribe(self, registry, register):
        order = []

        @registry.subscribe(IdentityRegistered)
        def low(event):
            order.append("low")

        @registry.subscribe(IdentityRegistered, priority=10)
        def high(event):
            order.append("high")

        register()
        assert order == ["high", "low"]

        assert registry.bus.unsubscribe(high)
        register()
        assert order == ["high", "low", "low"]

    def test_event_digest_is_deterministic(self):
        event = TripStarted(registry_id=3, started_at="2026-10-17T08:00:00+00:00")
        assert event.digest() == event.digest()
        assert isinstance(event, Event)
        assert event.to_dict()["event_type"] == "TripStarted"


# =============================================================================
# PERSISTENCE
# =============================================================================

def _populated(registry, register):
    a = register(owner="tourist-a")
    b = register(owner="tourist-b")
    registry.verify_identity(VERIFIER, a)
    registry.start_trip("tourist-a", a)
    registry.add_emergency_contact(
        "tourist-a", a, {"name_hash": "n1", "relationship": "parent", "phone_hash": "p1", "is_primary": True},
    )
    registry.revoke_identity(ADMIN, b, "duplicate passport")
    registry.emergency_access(RESPONDER, a, "missed check-in")
    return a, b


class TestPersistence:
    """Tests for snapshot save and load."""

    def test_save_and_load(self, registry, register, tmp_path):
        a, b = _populated(registry, register)
        path = tmp_path / "state.json"
        digest = save_snapshot(registry, path)
        assert len(digest) == 64

        restored = load_snapshot(path)
        assert restored.get_stats() == registry.get_stats()
        assert restored.get_identity(ADMIN, a).to_dict() == registry.get_identity(ADMIN, a).to_dict()
        assert restored.has_role(VERIFIER, Role.VERIFIER)
        assert restored.get_verifier(1).verification_count == 1
        assert restored.audit.head_digest == registry.audit.head_digest
        assert restored.audit.verify_chain() == (True, None)

    def test_restored_registry_keeps_rules(self, registry, register, tmp_path):
        _populated(registry, register)
        path = tmp_path / "state.json"
        save_snapshot(registry, path)
        restored = load_snapshot(path)

        assert restored.register_identity(REGISTRAR, "tourist-c", "ext-tourist-c", make_kyc()) == 3
        with pytest.raises(DuplicateOwner):
            restored.register_identity(REGISTRAR, "tourist-a", "ext-new", make_kyc())
        with pytest.raises(AuthorizationError):
            restored.pause(REGISTRAR)

    def test_paused_flag_persists(self, registry, tmp_path):
        registry.pause(ADMIN)
        path = tmp_path / "state.json"
        save_snapshot(registry, path)
        assert load_snapshot(path).paused

    def test_export_has_tables(self, registry, register):
        register()
        snapshot = export_snapshot(registry)
        assert set(snapshot) >= {"meta", "identities", "verifiers", "role_grants", "audit_log"}
        assert snapshot["meta"]["last_registry_id"] == 1
        assert {"principal": ADMIN, "role": "admin"} in snapshot["role_grants"]

    def test_tampered_audit_rejected(self, registry, register, tmp_path):
        _populated(registry, register)
        path = tmp_path / "state.json"
        save_snapshot(registry, path)

        data = json.loads(path.read_text(encoding="utf-8"))
        data["audit_log"][0]["actor"] = "mallory"
        path.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(SnapshotError) as exc:
            load_snapshot(path)
        assert exc.value.code == "audit_chain_broken"

    def test_tamper_check_can_be_disabled(self, registry, register, tmp_path, config):
        _populated(registry, register)
        path = tmp_path / "state.json"
        save_snapshot(registry, path)

        data = json.loads(path.read_text(encoding="utf-8"))
        data["audit_log"][0]["actor"] = "mallory"
        path.write_text(json.dumps(data), encoding="utf-8")

        config.persistence.verify_audit_on_load.set(False)
        restored = load_snapshot(path, config=config)
        assert restored.audit.verify_chain() == (False, 0)
        assert restored.health()["status"] == "degraded"

    def test_schema_violation(self, registry, register, tmp_path):
        register()
        path = tmp_path / "state.json"
        save_snapshot(registry, path)

        data = json.loads(path.read_text(encoding="utf-8"))
        data["identities"][0]["status"] = "deleted"
        path.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(SnapshotError) as exc:
            load_snapshot(path)
        assert exc.value.code == "invalid_snapshot"
        assert any("status" in e for e in exc.value.errors)

    def test_inconsistent_snapshot(self, registry, register, tmp_path):
        register(owner="tourist-a")
        register(owner="tourist-b")
        path = tmp_path / "state.json"
        save_snapshot(registry, path)

        data = json.loads(path.read_text(encoding="utf-8"))
        data["identities"][1]["owner_principal"] = "tourist-a"
        path.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(SnapshotError) as exc:
            load_snapshot(path)
        assert isinstance(exc.value.__cause__, DuplicateOwner)

    def test_missing_and_malformed_files(self, tmp_path):
        with pytest.raises(SnapshotError) as exc:
            load_snapshot(tmp_path / "absent.json")
        assert exc.value.code == "snapshot_not_found"

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        with pytest.raises(SnapshotError):
            load_snapshot(broken)

    def test_checkpoints_survive_snapshot(self, registry, tmp_path):
        key = generate_signing_key()
        checkpoint = registry.checkpoint_audit(key)
        path = tmp_path / "state.json"
        save_snapshot(registry, path)

        restored = load_snapshot(path)
        assert len(restored.audit.checkpoints) == 1
        assert restored.audit.verify_checkpoint(restored.audit.checkpoints[0], public_key=checkpoint.public_key)
