"""
Schema validation for junkrat.

Enforces JSON Schema validation where data crosses a boundary: model output
entering the planner, and plans leaving for storage.
Fails hard with clear errors when data doesn't match schema.
"""

import json
from pathlib import Path
from typing import Any

import jsonschema

__all__ = ["ValidationError", "validate", "validate_file", "validate_before_write", "SCHEMAS_DIR"]


class ValidationError(Exception):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


SCHEMAS_DIR = Path(__file__).resolve().parent.parent.parent / "schemas"

# Loaded schemas, keyed by name
_schema_cache: dict[str, dict] = {}


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Parsed JSON value to validate
        schema_name: Schema name (e.g., "phase_plan", "llm_phase_plan")

    Raises:
        ValidationError: If validation fails. Reports the most relevant error
            (jsonschema.exceptions.best_match) with a dotted path.
    """
    schema = _load_schema(schema_name)
    validator_cls = jsonschema.validators.validator_for(schema)
    validator = validator_cls(schema)

    error = jsonschema.exceptions.best_match(validator.iter_errors(data))
    if error is None:
        return

    path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
    raise ValidationError(schema_name, error.message, path)


def validate_file(filepath: Path, schema_name: str) -> Any:
    """
    Load a JSON file and validate it against a schema.

    Returns:
        Parsed and validated data

    Raises:
        ValidationError: If the file is missing, not JSON, or doesn't match
    """
    if not filepath.exists():
        raise ValidationError(schema_name, f"File not found: {filepath}")

    try:
        data = json.loads(filepath.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON in {filepath}: {e}") from None

    validate(data, schema_name)
    return data


def validate_before_write(data: Any, schema_name: str, filepath: Path) -> None:
    """Validate data before writing it, so invalid data never reaches disk."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e.message}",
            e.path,
        ) from None
