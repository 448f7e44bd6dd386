"""Validation and enrichment of untyped JSON input against template-declared schemas."""

import copy
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import msgspec
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from stageflow.domain.error import FieldError, SchemaValidationError, ValidationError

logger = logging.getLogger(__name__)

_decoder = msgspec.json.Decoder(float_hook=Decimal)
_encoder = msgspec.json.Encoder(decimal_format="number")

# Keys whose presence marks a document as JSON Schema rather than the simple field format.
_JSON_SCHEMA_KEYWORDS = frozenset(
    {
        "$schema",
        "$ref",
        "$defs",
        "type",
        "properties",
        "required",
        "additionalProperties",
        "patternProperties",
        "allOf",
        "anyOf",
        "oneOf",
        "not",
        "items",
        "enum",
        "const",
    }
)

_SIMPLE_TYPE_ALIASES = {
    "int": "integer",
    "integer": "integer",
    "float": "number",
    "number": "number",
    "decimal": "number",
    "bool": "boolean",
    "boolean": "boolean",
    "string": "string",
    "str": "string",
    "object": "object",
    "array": "array",
    "list": "array",
}


def loads(text: str | bytes) -> Any:
    """Decode JSON, reading non-integral numbers as :class:`~decimal.Decimal`."""
    return _decoder.decode(text)


def dumps(document: Any) -> str:
    """Encode a document as JSON, writing Decimals as JSON numbers."""
    return _encoder.encode(document).decode()


def exact_numbers(value: Any) -> Any:
    """Return a copy of ``value`` with every float replaced by the Decimal of its shortest repr."""
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, Mapping):
        return {k: exact_numbers(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [exact_numbers(v) for v in value]
    return copy.deepcopy(value)


def format_path(parts) -> str:
    """
    Render a jsonschema error path as ``a.b[0].c``; the document root is ``$``.

    :param parts: Path segments (property names and array indexes)
    :returns: The dotted/bracketed path
    :rtype: str
    """
    out = ""
    for part in parts:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "$"


class SchemaProcessor:
    """Validates caller input against a template schema and fills in declared defaults.

    Two schema formats are accepted:

    1. JSON Schema (Draft 2020-12), e.g.
       ``{"type": "object", "properties": {...}, "required": [...]}``
    2. The simple field format, e.g.
       ``{"priority": {"type": "string", "required": true, "default": "normal"}}``

    Fields not described by the schema pass through unchanged unless ``strict``
    is set. Numbers are decoded exactly: integers as ``int`` and everything else
    as :class:`~decimal.Decimal`.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def validate(self, raw_input: str | bytes | Mapping[str, Any] | None, schema: Any) -> dict[str, Any]:
        """
        Validate ``raw_input`` against ``schema`` and return the enriched input.

        :param raw_input: JSON text or an already-decoded mapping; empty means ``{}``
        :param schema: JSON Schema or simple-format schema, as text or a mapping; empty means none
        :returns: The validated input with defaults applied
        :rtype: dict[str, Any]
        :raises ValidationError: If the input is not a JSON object or the schema is malformed
        :raises SchemaValidationError: If the input violates the schema
        """
        document = self.parse_input(raw_input)
        normalized = self.normalize_schema(schema)
        if normalized is None:
            return document

        try:
            Draft202012Validator.check_schema(normalized)
        except SchemaError as e:
            raise ValidationError(f"Invalid input schema: {e.message}") from e

        self._apply_defaults(document, normalized)

        validator = Draft202012Validator(normalized)
        errors = self._collect_errors(validator, document)
        if errors:
            logger.debug("Input rejected by schema: %s", errors)
            raise SchemaValidationError(errors)
        return document

    def parse_input(self, raw_input: str | bytes | Mapping[str, Any] | None) -> dict[str, Any]:
        if raw_input is None or raw_input == "" or raw_input == b"":
            return {}
        if isinstance(raw_input, Mapping):
            return exact_numbers(raw_input)
        try:
            document = loads(raw_input)
        except msgspec.DecodeError as e:
            raise ValidationError(f"Failed to parse input JSON: {e}") from e
        if not isinstance(document, dict):
            raise ValidationError(f"Input must be a JSON object, got {type(document).__name__}")
        return document

    def normalize_schema(self, schema: Any) -> dict[str, Any] | None:
        """
        Return the schema as a JSON Schema mapping, or None when no schema is declared.

        :param schema: JSON Schema or simple-format schema, as text or a mapping
        :raises ValidationError: If the schema is not a JSON object
        """
        if schema is None or schema == "" or schema == b"":
            return None
        if isinstance(schema, (str, bytes)):
            try:
                schema = loads(schema)
            except msgspec.DecodeError as e:
                raise ValidationError(f"Failed to parse schema JSON: {e}") from e
        if not isinstance(schema, Mapping):
            raise ValidationError(f"Schema must be a JSON object, got {type(schema).__name__}")
        if not schema:
            return None

        if _JSON_SCHEMA_KEYWORDS.intersection(schema):
            normalized = dict(schema)
        else:
            normalized = self._from_simple_format(schema)

        if self.strict and "additionalProperties" not in normalized:
            normalized["additionalProperties"] = False
        # Input numbers are Decimals; schema bounds, enums and defaults must compare in the same type.
        return exact_numbers(normalized)

    def _from_simple_format(self, schema: Mapping[str, Any]) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for name, field_def in schema.items():
            if not isinstance(field_def, Mapping):
                raise ValidationError(f"Schema field '{name}' must be an object")
            prop: dict[str, Any] = {}
            type_name = field_def.get("type")
            if type_name:
                try:
                    prop["type"] = _SIMPLE_TYPE_ALIASES[str(type_name).lower()]
                except KeyError:
                    raise ValidationError(f"Schema field '{name}' has unknown type '{type_name}'") from None
            if "default" in field_def:
                prop["default"] = copy.deepcopy(field_def["default"])
            if field_def.get("description"):
                prop["description"] = field_def["description"]
            if field_def.get("required") and "default" not in field_def:
                required.append(name)
            properties[name] = prop
        normalized: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            normalized["required"] = required
        return normalized

    def _apply_defaults(self, instance: Any, schema: Any) -> None:
        """
        Fill declared defaults into ``instance`` in place, descending into nested objects and arrays.

        A ``null`` for an optional property without a default counts as omitted and is
        dropped, unless the property's type admits null.
        """
        if not isinstance(schema, Mapping):
            return
        if isinstance(instance, dict):
            required = schema.get("required") or ()
            for name, sub in (schema.get("properties") or {}).items():
                if not isinstance(sub, Mapping):
                    continue
                if instance.get(name) is None and "default" in sub:
                    instance[name] = copy.deepcopy(sub["default"])
                elif name in instance and instance[name] is None and name not in required and not _admits_null(sub):
                    del instance[name]
                if name in instance:
                    self._apply_defaults(instance[name], sub)
        elif isinstance(instance, list):
            items = schema.get("items")
            if isinstance(items, Mapping):
                for item in instance:
                    self._apply_defaults(item, items)

    def _collect_errors(self, validator: Draft202012Validator, document: dict[str, Any]) -> list[FieldError]:
        errors: list[FieldError] = []
        seen: set[tuple[str, str]] = set()
        for error in validator.iter_errors(document):
            base = list(error.absolute_path)
            if error.validator == "required" and isinstance(error.instance, dict):
                for name in error.validator_value:
                    if name in error.instance:
                        continue
                    path = format_path(base + [name])
                    if (path, "required") in seen:
                        continue
                    seen.add((path, "required"))
                    errors.append(
                        FieldError(path=path, constraint="required", message=f"required field '{name}' is missing")
                    )
                continue
            path = format_path(base)
            constraint = str(error.validator)
            if (path, constraint) in seen:
                continue
            seen.add((path, constraint))
            errors.append(FieldError(path=path, constraint=constraint, message=error.message))
        return sorted(errors, key=lambda e: (e.path, e.constraint))


def _admits_null(schema: Mapping[str, Any]) -> bool:
    type_name = schema.get("type")
    if type_name == "null" or (isinstance(type_name, list) and "null" in type_name):
        return True
    return any(v is None for v in schema.get("enum") or ()) or ("const" in schema and schema["const"] is None)
