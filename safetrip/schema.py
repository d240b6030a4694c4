"""
Snapshot Schema Validation

Every ``*.schema.json`` under safetrip/schemas is registered under its
``$id`` so documents may ``$ref`` one another. Validators are built once
per schema name.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from safetrip.core import SCHEMAS_DIR, load_json

SCHEMA_BASE_URI = "https://schemas.safetrip.example/"


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    registry = Registry()
    for path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        document = load_json(path)
        uri = document.get("$id") or SCHEMA_BASE_URI + path.name
        registry = registry.with_resource(
            uri, Resource.from_contents(document, default_specification=DRAFT202012)
        )
    return registry


@lru_cache(maxsize=8)
def schema_validator(schema_name: str) -> Draft202012Validator:
    """Validator for ``safetrip/schemas/<schema_name>``."""
    return Draft202012Validator(load_json(SCHEMAS_DIR / schema_name), registry=_schema_registry())


def validate_against_schema(obj: Any, schema_name: str) -> List[str]:
    """``"<json path>: <message>"`` for each violation, sorted by path; empty when valid."""
    errors = sorted(schema_validator(schema_name).iter_errors(obj), key=lambda e: e.json_path)
    return [f"{error.json_path}: {error.message}" for error in errors]
