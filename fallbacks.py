# fallbacks.py
"""
Schema-driven fallback injection and validation of method parameters.

A parameter schema is a JSON schema that may carry a ``fallbacks`` mapping
next to ``properties``::

    {
        "type": "object",
        "properties": {"email": {"type": "string"}},
        "required": ["email"],
        "fallbacks": {
            "email": [
                {"type": "memory", "key": "lastEmail"},
                {"type": "replacer", "generator": "randomEmail", "transform": "lower"},
                {"type": "static", "value": "default@test.com"},
            ]
        },
    }

Sources are tried in declared order; the first non-null value wins. The
``fallbacks`` keyword is stripped before the schema reaches the validator.
"""

import copy
from typing import Any, Callable, Dict, List, Optional

from jsonschema import Draft7Validator

from flow_errors import SchemaValidationError
from flow_logging import get_logger
from flow_templates import _MISSING, get_value_from_context
from value_generator import ValueGenerator

logger = get_logger("Fallbacks")

FALLBACKS_KEY = "fallbacks"

TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "upper": lambda v: str(v).upper(),
    "lower": lambda v: str(v).lower(),
    "str": str,
    "int": int,
    "float": float,
}

# Schema keywords whose value is a single subschema / a list of subschemas / a map of subschemas
_SUBSCHEMA_KEYS = ("items", "additionalProperties", "not", "if", "then", "else", "contains", "propertyNames")
_SUBSCHEMA_LIST_KEYS = ("allOf", "anyOf", "oneOf")
_SUBSCHEMA_MAP_KEYS = ("properties", "patternProperties", "definitions", "$defs", "dependencies")


def strip_fallbacks(schema: Any) -> Any:
    """Return a copy of ``schema`` with every ``fallbacks`` declaration removed."""
    if not isinstance(schema, dict):
        return schema
    stripped = {}
    for key, value in schema.items():
        if key == FALLBACKS_KEY:
            continue
        if key in _SUBSCHEMA_KEYS:
            stripped[key] = [strip_fallbacks(v) for v in value] if isinstance(value, list) else strip_fallbacks(value)
        elif key in _SUBSCHEMA_LIST_KEYS and isinstance(value, list):
            stripped[key] = [strip_fallbacks(v) for v in value]
        elif key in _SUBSCHEMA_MAP_KEYS and isinstance(value, dict):
            stripped[key] = {name: strip_fallbacks(sub) for name, sub in value.items()}
        else:
            stripped[key] = copy.deepcopy(value)
    return stripped


class FallbackResolver:
    """Fills missing parameter fields from ordered fallback sources, then validates."""

    def __init__(self, generator: Optional[ValueGenerator] = None):
        self.generator = generator or ValueGenerator()

    def apply_fallbacks(self, data: Any, schema: Dict[str, Any], memory: Optional[Dict[str, Any]] = None,
                        section: Optional[str] = None) -> Any:
        """Return a copy of ``data`` with fallbacks injected and validated against ``schema``."""
        result = copy.deepcopy(data) if data is not None else {}
        if isinstance(result, dict):
            self._inject(result, schema or {}, memory or {}, path="")
        self.validate(result, schema, section)
        return result

    def validate(self, data: Any, schema: Optional[Dict[str, Any]], section: Optional[str] = None):
        if not schema:
            return
        validator = Draft7Validator(strip_fallbacks(schema))
        errors = [
            {
                "path": ".".join(str(p) for p in error.absolute_path),
                "message": error.message,
                "validator": error.validator,
            }
            for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
        ]
        if errors:
            raise SchemaValidationError(errors, section=section)

    def _inject(self, data: Dict[str, Any], schema: Dict[str, Any], memory: Dict[str, Any], path: str):
        substituted = set()
        for key, sources in (schema.get(FALLBACKS_KEY) or {}).items():
            if data.get(key) is not None:
                continue
            value = self._first_value(sources or [], memory, f"{path}{key}")
            if value is not None:
                data[key] = value
                substituted.add(key)

        # Walk nested objects; fallbacks only apply at the level they are declared.
        for key, subschema in (schema.get("properties") or {}).items():
            if key in substituted or not isinstance(subschema, dict):
                continue
            nested = data.get(key)
            if isinstance(nested, dict):
                self._inject(nested, subschema, memory, path=f"{path}{key}.")

    def _first_value(self, sources: List[Dict[str, Any]], memory: Dict[str, Any], field: str) -> Any:
        for source in sources:
            value = self._source_value(source, memory)
            if value is None:
                continue
            transform = source.get("transform")
            if transform is not None:
                value = self._transform(transform, value)
            logger.debug(f"Fallback '{source.get('type')}' used for '{field}'")
            return value
        return None

    def _source_value(self, source: Dict[str, Any], memory: Dict[str, Any]) -> Any:
        kind = source.get("type")
        if kind == "static":
            return source.get("value")
        if kind == "memory":
            value = get_value_from_context(memory, str(source.get("key", "")))
            return None if value is _MISSING else value
        if kind == "replacer":
            if source.get("oneOf"):
                return self.generator.pick(source["oneOf"])
            return self.generator.generate(source.get("generator") or source.get("name"))
        raise ValueError(f"Unknown fallback type '{kind}'")

    @staticmethod
    def _transform(transform: Any, value: Any) -> Any:
        if callable(transform):
            return transform(value)
        if transform in TRANSFORMS:
            return TRANSFORMS[transform](value)
        raise ValueError(f"Unknown fallback transform '{transform}'")


def apply_fallbacks(data: Any, schema: Dict[str, Any], memory: Optional[Dict[str, Any]] = None,
                    generator: Optional[ValueGenerator] = None) -> Any:
    return FallbackResolver(generator).apply_fallbacks(data, schema, memory)
