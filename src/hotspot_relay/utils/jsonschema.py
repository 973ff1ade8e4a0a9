"""JSON Schema validation wrapper."""

from __future__ import annotations

import json
from functools import lru_cache

from jsonschema import Draft202012Validator


@lru_cache(maxsize=64)
def _validator_for(schema_json: str) -> Draft202012Validator:
    return Draft202012Validator(json.loads(schema_json))


def validate_payload(schema: dict[str, object], payload: dict[str, object]) -> list[str]:
    """Validate payload against schema and return error messages.

    Args:
        schema: JSON Schema to validate against.
        payload: Data to validate.

    Returns:
        List of error message strings, prefixed with the offending path when
        the error is nested.
    """
    validator = _validator_for(json.dumps(schema, sort_keys=True))
    errors: list[str] = []
    for error in sorted(validator.iter_errors(payload), key=lambda e: list(e.absolute_path)):
        if error.absolute_path:
            path = ".".join(str(part) for part in error.absolute_path)
            errors.append(f"{path}: {error.message}")
        else:
            errors.append(error.message)
    return errors
