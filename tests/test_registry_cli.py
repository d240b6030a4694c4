"""
Registry CLI Tests

Drives the ``safetrip`` command end to end against a snapshot file.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json

import pytest

from safetrip.registry.cli import CLIError, OutputFormat, exit_code_for, format_output, main
from safetrip.registry.hardening import (
    AuthorizationError,
    DuplicateOwner,
    IdentityNotFound,
    RegistryPaused,
    TripNotStarted,
)
from safetrip.registry.persistence import SnapshotError, load_snapshot


@pytest.fixture
def state(tmp_path):
    return tmp_path / "registry.json"


@pytest.fixture
def cli(state, capsys):
    """Run the CLI against the test snapshot; returns (exit_code, parsed stdout or text)."""
    def _run(*argv, caller=None):
        args = ["--state", str(state)]
        if caller:
            args += ["--as", caller]
        capsys.readouterr()
        code = main(args + list(argv))
        out = capsys.readouterr().out
        try:
            return code, json.loads(out)
        except ValueError:
            return code, out
    return _run


@pytest.fixture
def seeded(cli):
    """Snapshot with an admin, a registrar, a verifier, a responder and one identity."""
    assert cli("init", "--admin", "admin")[0] == 0
    assert cli("role", "grant", "desk-1", "registrar", caller="admin")[0] == 0
    assert cli(
        "verifier", "register", "officer-1",
        "--organization", "Border Police", "--role-label", "border_officer", "--jurisdiction", "IN-DL",
        caller="admin",
    )[0] == 0
    assert cli("role", "grant", "medic-1", "emergency", caller="admin")[0] == 0
    code, out = cli(
        "identity", "register",
        "--owner", "tourist-a", "--external-id-hash", "ext-a",
        "--document-type", "passport", "--document-hash", "doc-a",
        "--trust-score", "75", "--location", "Delhi Airport T3",
        caller="desk-1",
    )
    assert code == 0
    return out["registry_id"]


# =============================================================================
# OUTPUT HELPERS
# =============================================================================

class TestOutput:
    """Tests for formatting and exit-code mapping."""

    def test_table_uses_first_list(self):
        text = format_output({"count": 1, "grants": [{"principal": "admin", "role": "admin"}]}, OutputFormat.TABLE)
        lines = text.splitlines()
        assert lines[0].split(" | ")[0].strip() == "principal"
        assert "admin" in lines[2]

    def test_yaml(self):
        assert format_output({"paused": True}, OutputFormat.YAML).strip() == "paused: true"

    def test_exit_codes(self):
        assert exit_code_for(RegistryPaused("verify_identity")) == 6
        assert exit_code_for(SnapshotError("bad")) == 7
        assert exit_code_for(DuplicateOwner("tourist-a")) == 2
        assert exit_code_for(AuthorizationError("no")) == 3
        assert exit_code_for(IdentityNotFound(9)) == 4
        assert exit_code_for(TripNotStarted(1)) == 5

    def test_cli_error_exit_code(self):
        assert CLIError("boom", exit_code=9).exit_code == 9


# =============================================================================
# COMMANDS
# =============================================================================

class TestCommands:
    """End-to-end command tests."""

    def test_init_refuses_overwrite(self, cli, state):
        code, out = cli("init", "--admin", "admin", "--admin", "ops")
        assert code == 0
        assert sorted(out["admins"]) == ["admin", "ops"]
        assert state.exists()

        assert cli("init", "--admin", "admin")[0] == 1
        assert cli("init", "--admin", "admin", "--force")[0] == 0

    def test_register_verify_show(self, cli, seeded, state):
        assert seeded == 1
        code, out = cli("identity", "verify", "1", caller="officer-1")
        assert code == 0
        assert out["is_verified"] is True
        assert out["verified_by"] == "officer-1"

        code, record = cli("identity", "show", "--owner", "tourist-a", caller="tourist-a")
        assert code == 0
        assert record["registry_id"] == 1
        assert record["location"] == "Delhi Airport T3"
        assert record["kyc"]["trust_score"] == 75

        registry = load_snapshot(state)
        assert registry.is_identity_verified(1)
        assert registry.get_verifier(1).verification_count == 1

    def test_trip_and_eligibility(self, cli, seeded):
        cli("identity", "verify", "1", caller="officer-1")
        code, out = cli("identity", "eligibility", "tourist-a")
        assert code == 0
        assert out["eligible"] is True

        assert cli("trip", "start", "1", caller="tourist-a")[0] == 0
        assert cli("trip", "end", "1", caller="tourist-a")[0] == 0
        assert cli("trip", "end", "1", caller="tourist-a")[0] == 5

    def test_contacts(self, cli, seeded):
        code, out = cli(
            "identity", "contact", "1",
            "--name-hash", "n1", "--relationship", "sibling", "--phone-hash", "p1", "--primary",
            caller="tourist-a",
        )
        assert code == 0
        assert out["contacts"] == 1

    def test_bulk_verify(self, cli, seeded):
        code, out = cli("bulk", "verify", "1", "42", caller="officer-1")
        assert code == 0
        assert out["succeeded"] == [1]
        assert out["skip_reasons"] == {"42": "identity_not_found"}

    def test_status_and_audit(self, cli, seeded):
        assert cli("identity", "status", "1", "revoked", caller="admin")[0] == 2
        assert cli("identity", "status", "1", "revoked", "--reason", "fraud", caller="admin")[0] == 0

        code, out = cli("audit", "list", "--operation", "revoke")
        assert code == 0
        assert out["count"] == 1
        assert out["entries"][0]["reason"] == "fraud"

        code, out = cli("audit", "verify")
        assert code == 0
        assert out["valid"] is True

    def test_emergency_access_not_found_is_audited(self, cli, seeded, state):
        code, _ = cli("emergency", "access", "99", "--reason", "flood rescue", caller="medic-1")
        assert code == 4

        entries = load_snapshot(state).emergency_access_log(99)
        assert len(entries) == 1
        assert entries[0].outcome == "not_found"

        code, out = cli("emergency", "access", "1", "--reason", "flood rescue", caller="medic-1")
        assert code == 0
        assert out["owner_principal"] == "tourist-a"
        assert cli("emergency", "log")[1]["count"] == 2

    def test_pause_blocks_writes(self, cli, seeded):
        assert cli("pause", caller="admin")[0] == 0
        assert cli("identity", "verify", "1", caller="officer-1")[0] == 6
        code, health = cli("health")
        assert health["status"] == "paused"
        assert cli("unpause", caller="admin")[0] == 0
        assert cli("identity", "verify", "1", caller="officer-1")[0] == 0

    def test_stats(self, cli, seeded):
        code, out = cli("stats")
        assert code == 0
        assert out["total"] == 1
        assert out["verified"] == 0


# =============================================================================
# ERRORS
# =============================================================================

class TestErrors:
    """Failures map to stable exit codes and a one-line message."""

    def test_missing_caller(self, cli, seeded):
        code, _ = cli("identity", "verify", "1")
        assert code == 2

    def test_unauthorized(self, cli, seeded):
        code, _ = cli("role", "grant", "mallory", "admin", caller="mallory")
        assert code == 3

    def test_unauthorized_read(self, cli, seeded):
        assert cli("identity", "show", "--id", "1", caller="mallory")[0] == 3

    def test_not_found(self, cli, seeded):
        assert cli("identity", "show", "--id", "7", caller="admin")[0] == 4

    def test_missing_snapshot(self, cli):
        assert cli("stats")[0] == 7

    def test_tampered_snapshot(self, cli, seeded, state):
        data = json.loads(state.read_text(encoding="utf-8"))
        data["audit_log"][0]["actor"] = "mallory"
        state.write_text(json.dumps(data), encoding="utf-8")
        assert cli("audit", "verify")[0] == 7

    def test_quiet(self, state, capsys):
        assert main(["--quiet", "--state", str(state), "stats"]) == 7
        assert "Error [" not in capsys.readouterr().err


# =============================================================================
# CONFIG
# =============================================================================

class TestConfigCommands:
    """Configuration subcommands."""

    def test_get(self, cli):
        code, out = cli("config", "get", "limits.max_batch_size")
        assert code == 0
        assert out == {"path": "limits.max_batch_size", "value": 100}

    def test_config_file(self, cli, tmp_path):
        path = tmp_path / "safetrip.yaml"
        path.write_text("limits:\n  max_batch_size: 1\n", encoding="utf-8")
        code, out = cli("--config", str(path), "config", "get", "limits.max_batch_size")
        assert code == 0
        assert out["value"] == 1

    def test_batch_limit_from_config_file(self, cli, seeded, tmp_path):
        path = tmp_path / "safetrip.yaml"
        path.write_text("limits:\n  max_batch_size: 1\n", encoding="utf-8")
        assert cli("--config", str(path), "bulk", "verify", "1", "2", caller="officer-1")[0] == 2

    def test_bad_config_file(self, cli, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("limits:\n  unknown: 1\n", encoding="utf-8")
        assert cli("--config", str(path), "config", "show")[0] == 2

    def test_validate(self, cli):
        code, out = cli("config", "validate")
        assert code == 0
        assert out == {"valid": True, "errors": []}

    def test_schema_lists_env_vars(self, cli):
        code, out = cli("config", "schema")
        assert code == 0
        batch = out["properties"]["limits"]["max_batch_size"]
        assert batch["env_var"] == "SAFETRIP_MAX_BATCH_SIZE"
        assert batch["default"] == "100"
