# schema.py
"""$jsonSchema-style document validation.

Validation is additive: fields the schema does not mention are accepted unless
the schema sets ``additionalProperties: false`` at that level.
"""
import re
from typing import List, Optional, Set

from .errors import SchemaViolation
from .utils import MISSING, bson_type, is_number

_BSON_ALIASES = {
    "number": {"int", "long", "double", "decimal"},
    "integer": {"int", "long"},
    "boolean": {"bool"},
}

_JSON_TYPES = {
    "string": {"string"},
    "number": {"int", "long", "double", "decimal"},
    "integer": {"int", "long"},
    "boolean": {"bool"},
    "object": {"object"},
    "array": {"array"},
    "null": {"null"},
}

_OBJECT_ID = re.compile(r"^[0-9a-f]{24}$")


def unwrap_schema(validator: Optional[dict]) -> Optional[dict]:
    """Accept either {"$jsonSchema": {...}} or a bare schema."""
    if validator is None:
        return None
    if not isinstance(validator, dict):
        raise ValueError("Validator must be a dict.")
    return validator.get("$jsonSchema", validator)


def _as_set(value) -> List[str]:
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _allowed_types(schema: dict) -> Optional[Set[str]]:
    allowed: Optional[Set[str]] = None
    if "bsonType" in schema:
        allowed = set()
        for t in _as_set(schema["bsonType"]):
            allowed |= _BSON_ALIASES.get(t, {t})
    if "type" in schema:
        json_allowed = set()
        for t in _as_set(schema["type"]):
            json_allowed |= _JSON_TYPES.get(t, {t})
        allowed = json_allowed if allowed is None else allowed & json_allowed
    return allowed


def _type_matches(value, allowed: Set[str]) -> bool:
    actual = bson_type(value)
    if actual in allowed:
        return True
    if "objectId" in allowed and isinstance(value, str) and _OBJECT_ID.match(value):
        return True
    return False


def validate(doc: dict, schema: Optional[dict], path: str = "") -> None:
    """Raise SchemaViolation if doc does not satisfy schema."""
    schema = unwrap_schema(schema)
    if not schema:
        return
    _validate_value(doc, schema, path or "$root")


def _validate_value(value, schema: dict, path: str):
    allowed = _allowed_types(schema)
    if allowed is not None and not _type_matches(value, allowed):
        expected = schema.get("bsonType", schema.get("type"))
        raise SchemaViolation(path, expected, bson_type(value), _describe(schema, expected, value))

    if "enum" in schema and value not in schema["enum"]:
        raise SchemaViolation(path, reason=f"value {value!r} not in enum {schema['enum']!r}")

    if is_number(value):
        if "minimum" in schema and value < schema["minimum"]:
            raise SchemaViolation(path, reason=f"{value} is less than minimum {schema['minimum']}")
        if "maximum" in schema and value > schema["maximum"]:
            raise SchemaViolation(path, reason=f"{value} is greater than maximum {schema['maximum']}")

    if isinstance(value, str):
        if "minLength" in schema and len(value) < schema["minLength"]:
            raise SchemaViolation(path, reason=f"length {len(value)} is below minLength {schema['minLength']}")
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            raise SchemaViolation(path, reason=f"length {len(value)} is above maxLength {schema['maxLength']}")
        if "pattern" in schema and re.search(schema["pattern"], value) is None:
            raise SchemaViolation(path, reason=f"{value!r} does not match pattern {schema['pattern']!r}")

    if isinstance(value, list):
        if "minItems" in schema and len(value) < schema["minItems"]:
            raise SchemaViolation(path, reason=f"array has fewer than {schema['minItems']} items")
        if "maxItems" in schema and len(value) > schema["maxItems"]:
            raise SchemaViolation(path, reason=f"array has more than {schema['maxItems']} items")
        items = schema.get("items")
        if isinstance(items, dict):
            for i, item in enumerate(value):
                _validate_value(item, items, f"{path}.{i}")

    if isinstance(value, dict):
        _validate_object(value, schema, path)


def _validate_object(doc: dict, schema: dict, path: str):
    prefix = "" if path == "$root" else f"{path}."
    properties = schema.get("properties", {})
    for key in schema.get("required", []):
        if doc.get(key, MISSING) is MISSING:
            raise SchemaViolation(f"{prefix}{key}", reason="missing required field")
    for key, prop in properties.items():
        if key in doc:
            _validate_value(doc[key], prop, f"{prefix}{key}")
    if schema.get("additionalProperties") is False:
        extra = [k for k in doc if k not in properties and k != "_id"]
        if extra:
            raise SchemaViolation(f"{prefix}{extra[0]}", reason="additional property not allowed")


def _describe(schema: dict, expected, value) -> str:
    msg = f"expected {expected}, got {bson_type(value)}"
    if schema.get("description"):
        msg += f" ({schema['description']})"
    return msg

