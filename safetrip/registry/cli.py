#!/usr/bin/env python3
"""
SafeTrip Registry CLI

Command-line interface for the Digital Identity Registry. Registry state is
kept in a snapshot file; each mutating command loads it, applies one
operation as the ``--as`` principal and writes it back.

Usage:
    safetrip [--state FILE] [--as PRINCIPAL] <command> [subcommand] [options]

Commands:
    init        Create a new registry snapshot
    role        Grant, revoke and list roles
    verifier    Verifier directory management
    identity    Register, verify, inspect and update identities
    trip        Start and end trips
    bulk        Batch verification
    emergency   Audited emergency access
    stats       Registry statistics
    pause       Pause all registry mutations
    unpause     Resume registry mutations
    audit       Audit log inspection
    config      Inspect effective settings
    health      Registry health

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, List, Optional

import yaml

from safetrip import __version__
from safetrip.registry.audit import AuditOperation
from safetrip.registry.config import ConfigError, get_config, get_config_manager
from safetrip.registry.hardening import (
    AuthorizationError,
    IdentityNotFound,
    NotFoundError,
    RegistryError,
    RegistryPaused,
    StateError,
    ValidationError,
)
from safetrip.registry.observability import generate_correlation_id, set_correlation_id
from safetrip.registry.persistence import SnapshotError, load_snapshot, save_snapshot
from safetrip.registry.registry import DigitalIdentityRegistry


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """A usage problem detected by the CLI itself, with the exit status to report."""

    def __init__(self, message: str, exit_code: int = 1):
        self.exit_code = exit_code
        super().__init__(message)


# Checked in order; first match wins.
EXIT_CODES = (
    (RegistryPaused, 6),
    (SnapshotError, 7),
    (ValidationError, 2),
    (AuthorizationError, 3),
    (NotFoundError, 4),
    (StateError, 5),
)


def exit_code_for(error: RegistryError) -> int:
    return next((code for error_type, code in EXIT_CODES if isinstance(error, error_type)), 1)


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    renderers = {
        OutputFormat.JSON: lambda d: json.dumps(d, indent=2, default=str),
        OutputFormat.YAML: lambda d: yaml.safe_dump(d, default_flow_style=False, sort_keys=False),
        OutputFormat.TABLE: _format_table,
    }
    return renderers.get(fmt, str)(data)


def _first_row_list(data: Any) -> Any:
    """The first list of mappings inside a result dict, or ``data`` unchanged."""
    if not isinstance(data, dict):
        return data
    for value in data.values():
        if isinstance(value, list) and value and isinstance(value[0], dict):
            return value
    return data


def _format_table(data: Any) -> str:
    """Plain-text table; cells are cut at 40 characters."""
    data = _first_row_list(data)
    if isinstance(data, dict):
        return "\n".join(f"{key}: {value}" for key, value in data.items())
    if not (isinstance(data, list) and data and isinstance(data[0], dict)):
        return str(data)

    columns = list(data[0])
    cells = [[str(item.get(col, ""))[:40] for col in columns] for item in data]
    widths = [max([len(col)] + [len(row[i]) for row in cells]) for i, col in enumerate(columns)]

    def line(values: List[str]) -> str:
        return " | ".join(value.ljust(width) for value, width in zip(values, widths))

    return "\n".join([line(columns), "-+-".join("-" * w for w in widths)] + [line(row) for row in cells])


class RegistryCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="safetrip",
            description="SafeTrip Digital Identity Registry CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"safetrip {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument(
            "--state", "-s",
            help="Registry snapshot file (default: persistence.state_path)",
        )
        self.parser.add_argument(
            "--as", dest="caller",
            help="Acting principal",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_init_commands()
        self._register_role_commands()
        self._register_verifier_commands()
        self._register_identity_commands()
        self._register_trip_commands()
        self._register_bulk_commands()
        self._register_emergency_commands()
        self._register_admin_commands()
        self._register_audit_commands()
        self._register_config_commands()

    def _register_init_commands(self) -> None:
        init = self.subparsers.add_parser("init", help="Create a new registry snapshot")
        init.add_argument("--admin", "-a", action="append", required=True, help="Initial admin (repeatable)")
        init.add_argument("--force", action="store_true", help="Overwrite an existing snapshot")

    def _register_role_commands(self) -> None:
        """Register role subcommands."""
        role = self.subparsers.add_parser("role", help="Role management")
        role_sub = role.add_subparsers(dest="subcommand")

        # role grant
        grant = role_sub.add_parser("grant", help="Grant a role")
        grant.add_argument("principal", help="Principal to grant")
        grant.add_argument("role", help="admin, registrar, verifier or emergency")

        # role revoke
        revoke = role_sub.add_parser("revoke", help="Revoke a role")
        revoke.add_argument("principal", help="Principal to revoke")
        revoke.add_argument("role", help="admin, registrar, verifier or emergency")

        # role list
        list_cmd = role_sub.add_parser("list", help="List role grants")
        list_cmd.add_argument("--role", "-r", help="Filter by role")

    def _register_verifier_commands(self) -> None:
        """Register verifier subcommands."""
        verifier = self.subparsers.add_parser("verifier", help="Verifier directory management")
        verifier_sub = verifier.add_subparsers(dest="subcommand")

        # verifier register
        register = verifier_sub.add_parser("register", help="Onboard a verifier")
        register.add_argument("principal", help="Verifier principal")
        register.add_argument("--organization", "-o", required=True, help="Organization name")
        register.add_argument("--role-label", "-l", required=True, help="Role label, e.g. border_officer")
        register.add_argument("--jurisdiction", "-j", required=True, help="Jurisdiction")

        # verifier set-active
        set_active = verifier_sub.add_parser("set-active", help="Activate or deactivate a verifier")
        set_active.add_argument("id", type=int, help="Verifier ID")
        group = set_active.add_mutually_exclusive_group(required=True)
        group.add_argument("--active", dest="is_active", action="store_true")
        group.add_argument("--inactive", dest="is_active", action="store_false")

        # verifier list
        list_cmd = verifier_sub.add_parser("list", help="List verifiers")
        list_cmd.add_argument("--active-only", action="store_true", help="Show only active")

    def _register_identity_commands(self) -> None:
        """Register identity subcommands."""
        identity = self.subparsers.add_parser("identity", help="Identity management")
        identity_sub = identity.add_subparsers(dest="subcommand")

        # identity register
        register = identity_sub.add_parser("register", help="Register an identity")
        register.add_argument("--owner", required=True, help="Owner principal")
        register.add_argument("--external-id-hash", required=True, help="Hashed external identifier")
        register.add_argument("--document-type", required=True, help="e.g. passport")
        register.add_argument("--document-hash", required=True, help="Hashed document number")
        register.add_argument("--full-name-hash", default="", help="Hashed full name")
        register.add_argument("--nationality-hash", default="", help="Hashed nationality")
        register.add_argument("--expiry", default="", help="KYC expiry (ISO8601)")
        register.add_argument("--trust-score", type=int, default=0, help="Integer trust score")
        register.add_argument("--biometric-hash", default="", help="Hashed biometric template")
        register.add_argument("--itinerary-hash", default="", help="Hashed itinerary")
        register.add_argument("--planned-start", default="", help="Planned trip start (ISO8601)")
        register.add_argument("--planned-end", default="", help="Planned trip end (ISO8601)")
        register.add_argument("--purpose", default="", help="Trip purpose")
        register.add_argument("--group-size", type=int, default=1, help="Travelling group size")
        register.add_argument("--accommodation-hash", default="", help="Hashed accommodation")
        register.add_argument("--location", default="", help="Registration desk location")

        # identity verify
        verify = identity_sub.add_parser("verify", help="Verify an identity")
        verify.add_argument("id", type=int, help="Registry ID")

        # identity status
        status = identity_sub.add_parser("status", help="Change identity status")
        status.add_argument("id", type=int, help="Registry ID")
        status.add_argument("status", help="active, suspended, revoked or expired")
        status.add_argument("--reason", "-r", default="", help="Reason (required for revoked)")

        # identity expire
        identity_sub.add_parser("expire", help="Expire identities past their KYC expiry")

        # identity show
        show = identity_sub.add_parser("show", help="Show an identity")
        key = show.add_mutually_exclusive_group(required=True)
        key.add_argument("--id", type=int, help="Registry ID")
        key.add_argument("--owner", help="Owner principal")
        key.add_argument("--external-id-hash", help="Hashed external identifier")

        # identity contact
        contact = identity_sub.add_parser("contact", help="Add an emergency contact")
        contact.add_argument("id", type=int, help="Registry ID")
        contact.add_argument("--name-hash", required=True, help="Hashed contact name")
        contact.add_argument("--relationship", required=True, help="Relationship to the tourist")
        contact.add_argument("--phone-hash", required=True, help="Hashed phone number")
        contact.add_argument("--email-hash", default="", help="Hashed email")
        contact.add_argument("--primary", action="store_true", help="Make this the primary contact")

        # identity eligibility
        eligibility = identity_sub.add_parser("eligibility", help="Check panic-alert eligibility")
        eligibility.add_argument("owner", help="Owner principal")

    def _register_trip_commands(self) -> None:
        """Register trip subcommands."""
        trip = self.subparsers.add_parser("trip", help="Trip lifecycle")
        trip_sub = trip.add_subparsers(dest="subcommand")

        start = trip_sub.add_parser("start", help="Start the caller's trip")
        start.add_argument("id", type=int, help="Registry ID")

        end = trip_sub.add_parser("end", help="End the caller's trip")
        end.add_argument("id", type=int, help="Registry ID")

    def _register_bulk_commands(self) -> None:
        bulk = self.subparsers.add_parser("bulk", help="Batch operations")
        bulk_sub = bulk.add_subparsers(dest="subcommand")

        verify = bulk_sub.add_parser("verify", help="Verify a batch of identities")
        verify.add_argument("ids", type=int, nargs="*", help="Registry IDs")

    def _register_emergency_commands(self) -> None:
        emergency = self.subparsers.add_parser("emergency", help="Emergency access")
        emergency_sub = emergency.add_subparsers(dest="subcommand")

        access = emergency_sub.add_parser("access", help="Read a record as an emergency responder")
        access.add_argument("id", type=int, help="Registry ID")
        access.add_argument("--reason", "-r", required=True, help="Justification")

        log = emergency_sub.add_parser("log", help="List emergency accesses")
        log.add_argument("--id", type=int, help="Filter by registry ID")

    def _register_admin_commands(self) -> None:
        self.subparsers.add_parser("stats", help="Registry statistics")
        self.subparsers.add_parser("pause", help="Pause registry mutations")
        self.subparsers.add_parser("unpause", help="Resume registry mutations")
        self.subparsers.add_parser("health", help="Registry health")

    def _register_audit_commands(self) -> None:
        """Register audit subcommands."""
        audit = self.subparsers.add_parser("audit", help="Audit log inspection")
        audit_sub = audit.add_subparsers(dest="subcommand")

        list_cmd = audit_sub.add_parser("list", help="List audit entries")
        list_cmd.add_argument("--actor", help="Filter by actor")
        list_cmd.add_argument("--operation", choices=[op.value for op in AuditOperation], help="Filter by operation")
        list_cmd.add_argument("--id", type=int, help="Filter by registry ID")
        list_cmd.add_argument("--limit", type=int, help="Most recent N entries")

        audit_sub.add_parser("verify", help="Verify the audit hash chain")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Inspect effective settings")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Print one setting or section")
        get.add_argument("path", help="Dotted path, e.g. limits.max_batch_size")

        config_sub.add_parser("show", help="Print every setting")
        config_sub.add_parser("validate", help="Check settings against their validators")
        config_sub.add_parser("schema", help="Describe every setting and its environment variable")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Parse ``args``, execute one command and return the process exit status."""
        parsed = self.parser.parse_args(args)
        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())
        manager = get_config_manager()
        try:
            if parsed.config:
                manager.load_from_file(parsed.config)
            else:
                manager.load_defaults()
            result = self._dispatch(parsed)
        except CLIError as e:
            return self._fail(parsed, str(e), e.exit_code)
        except RegistryError as e:
            return self._fail(parsed, e.message, exit_code_for(e), e.code)
        except ConfigError as e:
            return self._fail(parsed, str(e), 2, "config")
        except Exception as e:
            return self._fail(parsed, f"{type(e).__name__}: {e}", 1)

        if result is not None:
            print(format_output(result, OutputFormat(parsed.format)))
        return 0

    @staticmethod
    def _fail(parsed: argparse.Namespace, message: str, exit_code: int, code: str = "") -> int:
        if not parsed.quiet:
            label = f"Error [{code}]" if code else "Error"
            print(f"{label}: {message}", file=sys.stderr)
        return exit_code

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Route ``<command> [<subcommand>]`` to ``_handle_<command>[_<subcommand>]``."""
        words = [w for w in (args.command, getattr(args, "subcommand", None)) if w]
        handler = getattr(self, "_handle_" + "_".join(w.replace("-", "_") for w in words), None)
        if handler is None:
            raise CLIError(f"Unknown command: {' '.join(words)}", exit_code=2)
        return handler(args)

    # State helpers
    def _state_path(self, args: argparse.Namespace) -> pathlib.Path:
        return pathlib.Path(args.state or get_config().persistence.state_path.get())

    def _load(self, args: argparse.Namespace) -> DigitalIdentityRegistry:
        return load_snapshot(self._state_path(args))

    def _save(self, args: argparse.Namespace, registry: DigitalIdentityRegistry) -> str:
        return save_snapshot(registry, self._state_path(args))

    def _caller(self, args: argparse.Namespace) -> str:
        if not args.caller:
            raise CLIError(f"'{args.command}' requires --as PRINCIPAL", exit_code=2)
        return args.caller

    # Init
    def _handle_init(self, args: argparse.Namespace) -> Any:
        path = self._state_path(args)
        if path.exists() and not args.force:
            raise CLIError(f"Snapshot already exists: {path} (use --force)")
        registry = DigitalIdentityRegistry(admins=args.admin)
        digest = self._save(args, registry)
        return {"state": str(path), "admins": registry.authority.members("admin"), "digest": digest}

    # Role handlers
    def _handle_role_grant(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        changed = registry.grant_role(self._caller(args), args.principal, args.role)
        self._save(args, registry)
        return {"principal": args.principal, "role": args.role, "granted": changed}

    def _handle_role_revoke(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        changed = registry.revoke_role(self._caller(args), args.principal, args.role)
        self._save(args, registry)
        return {"principal": args.principal, "role": args.role, "revoked": changed}

    def _handle_role_list(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        grants = [g.to_dict() for g in registry.authority.grants()]
        if args.role:
            grants = [g for g in grants if g["role"] == args.role.lower()]
        return {"grants": grants, "count": len(grants)}

    # Verifier handlers
    def _handle_verifier_register(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        verifier_id = registry.register_verifier(
            self._caller(args), args.principal, args.organization, args.role_label, args.jurisdiction,
        )
        self._save(args, registry)
        return registry.get_verifier(verifier_id).to_dict()

    def _handle_verifier_set_active(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        info = registry.set_verifier_active(self._caller(args), args.id, args.is_active)
        self._save(args, registry)
        return info.to_dict()

    def _handle_verifier_list(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        verifiers = [v.to_dict() for v in registry.list_verifiers(args.active_only)]
        return {"verifiers": verifiers, "count": len(verifiers)}

    # Identity handlers
    def _handle_identity_register(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        kyc = {
            "document_type": args.document_type,
            "document_hash": args.document_hash,
            "full_name_hash": args.full_name_hash,
            "nationality_hash": args.nationality_hash,
            "expiry_timestamp": args.expiry,
            "trust_score": args.trust_score,
            "biometric_hash": args.biometric_hash,
        }
        trip = {
            "itinerary_hash": args.itinerary_hash,
            "planned_start": args.planned_start,
            "planned_end": args.planned_end,
            "purpose": args.purpose,
            "group_size": args.group_size,
            "accommodation_hash": args.accommodation_hash,
        }
        registry_id = registry.register_identity(
            self._caller(args), args.owner, args.external_id_hash, kyc, trip, args.location,
        )
        self._save(args, registry)
        return {"registry_id": registry_id, "owner": args.owner}

    def _handle_identity_verify(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        record = registry.verify_identity(self._caller(args), args.id)
        self._save(args, registry)
        return {
            "registry_id": record.registry_id,
            "is_verified": record.is_verified,
            "verified_by": record.kyc.verified_by,
            "verification_timestamp": record.kyc.verification_timestamp,
        }

    def _handle_identity_status(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        record = registry.change_status(self._caller(args), args.id, args.status, args.reason)
        self._save(args, registry)
        return {"registry_id": record.registry_id, "status": record.status.value}

    def _handle_identity_expire(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        expired = registry.expire_identities(self._caller(args))
        self._save(args, registry)
        return {"expired": expired, "count": len(expired)}

    def _handle_identity_show(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        caller = self._caller(args)
        if args.id is not None:
            record = registry.get_identity(caller, args.id)
        elif args.owner:
            record = registry.get_identity_by_owner(caller, args.owner)
        else:
            record = registry.get_identity_by_external_id(caller, args.external_id_hash)
        return record.to_dict()

    def _handle_identity_contact(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        contact = {
            "name_hash": args.name_hash,
            "relationship": args.relationship,
            "phone_hash": args.phone_hash,
            "email_hash": args.email_hash,
            "is_primary": args.primary,
        }
        count = registry.add_emergency_contact(self._caller(args), args.id, contact)
        self._save(args, registry)
        return {"registry_id": args.id, "contacts": count}

    def _handle_identity_eligibility(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        return registry.check_alert_eligibility(args.owner).to_dict()

    # Trip handlers
    def _handle_trip_start(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        started_at = registry.start_trip(self._caller(args), args.id)
        self._save(args, registry)
        return {"registry_id": args.id, "trip_state": "active", "started_at": started_at}

    def _handle_trip_end(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        ended_at = registry.end_trip(self._caller(args), args.id)
        self._save(args, registry)
        return {"registry_id": args.id, "trip_state": "ended", "ended_at": ended_at}

    # Bulk / emergency handlers
    def _handle_bulk_verify(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        result = registry.bulk_verify(self._caller(args), args.ids)
        self._save(args, registry)
        return result.to_dict()

    def _handle_emergency_access(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        try:
            record = registry.emergency_access(self._caller(args), args.id, args.reason)
        except IdentityNotFound:
            # The failed lookup is audited too.
            self._save(args, registry)
            raise
        self._save(args, registry)
        return record.to_dict()

    def _handle_emergency_log(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        entries = [e.to_dict() for e in registry.emergency_access_log(args.id)]
        return {"entries": entries, "count": len(entries)}

    # Admin handlers
    def _handle_stats(self, args: argparse.Namespace) -> Any:
        return self._load(args).get_stats()

    def _handle_pause(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        changed = registry.pause(self._caller(args))
        self._save(args, registry)
        return {"paused": True, "changed": changed}

    def _handle_unpause(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        changed = registry.unpause(self._caller(args))
        self._save(args, registry)
        return {"paused": False, "changed": changed}

    def _handle_health(self, args: argparse.Namespace) -> Any:
        return self._load(args).health()

    # Audit handlers
    def _handle_audit_list(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        entries = registry.audit_log(
            actor=args.actor,
            operation=AuditOperation(args.operation) if args.operation else None,
            registry_id=args.id,
            limit=args.limit,
        )
        return {"entries": [e.to_dict() for e in entries], "count": len(entries)}

    def _handle_audit_verify(self, args: argparse.Namespace) -> Any:
        registry = self._load(args)
        valid, first_bad = registry.audit.verify_chain()
        if not valid:
            raise CLIError(f"Audit chain broken at entry {first_bad}", exit_code=7)
        return {"valid": True, "entries": len(registry.audit), "head_digest": registry.audit.head_digest}

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config().to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        problems = get_config_manager().validate()
        return {"valid": not problems, "errors": problems}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    return RegistryCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
