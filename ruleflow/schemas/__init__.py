"""
Ruleflow Document Schemas

Draft-07 JSON Schemas for the configuration documents a step consumes.
Every document is checked structurally here before the runtime builds its
typed model, so the parsers in ``ruleflow.runtime.schema`` only deal with
shapes that already passed validation.

Key functions:
- load_schema: read the bundled schema file
- get_validator: cached Draft7Validator for one document kind
- schema_errors: every violation as a (path, message) pair
- check_document: raise ConfigurationError on the most relevant violation
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple, Union

from jsonschema import Draft7Validator, ValidationError
from jsonschema.exceptions import best_match

from ruleflow.errors import ConfigurationError

SCHEMA_FILE = "ruleflow.schema.json"

# Compiled validators keyed by definition name
SCHEMA_REGISTRY: Dict[str, Draft7Validator] = {}


def get_schema_dir() -> Path:
    """Get the path to the bundled schemas directory."""
    return Path(__file__).parent


def load_schema(schema_name: str = SCHEMA_FILE) -> Dict[str, Any]:
    """
    Load a schema from disk.

    Raises:
        FileNotFoundError: If the schema file is missing
        json.JSONDecodeError: If the schema is invalid JSON
    """
    with open(get_schema_dir() / schema_name, "r") as f:
        return json.load(f)


def get_validator(definition: str) -> Draft7Validator:
    """Return the validator for one entry under ``definitions`` (e.g. "flow")."""
    if definition in SCHEMA_REGISTRY:
        return SCHEMA_REGISTRY[definition]

    root = load_schema()
    if definition not in root["definitions"]:
        raise KeyError(f"unknown document kind {definition!r}")
    schema = {
        "$schema": root["$schema"],
        "definitions": root["definitions"],
        "allOf": [{"$ref": f"#/definitions/{definition}"}],
    }
    Draft7Validator.check_schema(schema)
    validator = Draft7Validator(schema)
    SCHEMA_REGISTRY[definition] = validator
    return validator


def format_path(where: str, parts: Iterable[Union[str, int]]) -> str:
    result = where
    for part in parts:
        result += f"[{part}]" if isinstance(part, int) else f".{part}"
    return result


def _ordered(errors: Iterable[ValidationError]) -> List[ValidationError]:
    return sorted(errors, key=lambda e: [str(p) for p in e.absolute_path])


def schema_errors(document: Any, definition: str, where: str) -> List[Tuple[str, str]]:
    """Every top-level violation as ``(path, message)``, narrowed to its most specific cause."""
    issues = []
    for error in _ordered(get_validator(definition).iter_errors(document)):
        detail = best_match([error])
        issues.append((format_path(where, detail.absolute_path), detail.message))
    return issues


def check_document(document: Any, definition: str, where: str) -> None:
    """Raise ConfigurationError when ``document`` does not match its schema."""
    error = best_match(get_validator(definition).iter_errors(document))
    if error is not None:
        raise ConfigurationError(error.message, format_path(where, error.absolute_path))
