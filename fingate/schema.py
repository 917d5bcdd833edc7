"""JSON Schema validation infrastructure.

Input contracts for mappings that arrive from outside the engine (payload
files, ingest requests, header overrides) live in ``fingate/schemas``:
- Schemas cross-reference each other via ``$ref`` through a registry
- Validators are cached per schema name
- Errors are reported as ``<json path>: <message>`` strings
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from fingate.core import SCHEMAS_DIR, load_json

SCHEMA_BASE_URI = "https://schemas.fingate.dev/"


class SchemaNotFound(LookupError):
    """No bundled schema with the requested name."""


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a registry of every bundled schema, keyed by ``$id``."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str, schemas_dir: Path = SCHEMAS_DIR) -> Draft202012Validator:
    """Create a validator for a bundled schema.

    Args:
        name: Schema name without suffix, e.g. ``"payload"``
        schemas_dir: Directory holding ``*.schema.json`` files

    Returns:
        A configured Draft202012Validator
    """
    schema_path = schemas_dir / f"{name}.schema.json"
    if not schema_path.exists():
        raise SchemaNotFound(name)
    schema = load_json(schema_path)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema, registry=_schema_registry(schemas_dir))


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validate an object against a bundled schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
