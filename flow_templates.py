# flow_templates.py
"""
Template resolution for step parameters and mimic responses.

Placeholders are resolved by walking the structured document: only string
leaves (and dict keys) go through the placeholder engine, so generated
values containing quotes or other JSON-special characters never need
escaping.

Supported forms inside a string leaf:
  {{ path }} / {{{ path }}}   string form of a context value ('' if missing)
  {{ helper "arg" }}          call a value generator helper (barcode, pick)
  ##VAR:unquoted:path##       whole leaf replaced by the raw value
  ##VAR:string:path##         whole leaf replaced by the string form
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from flow_errors import TemplateError
from flow_logging import get_logger
from value_generator import ValueGenerator

logger = get_logger("Templates")

# --- Sentinel Object for Missing Keys ---
_MISSING = object()

_path_segment_regex = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')
_placeholder_regex = re.compile(r"\{\{\{(.*?)\}\}\}|\{\{(.*?)\}\}", re.DOTALL)
_path_regex = re.compile(r'^[\w\-]+(?:\.[\w\-]+|\[\d+\])*$')
_helper_regex = re.compile(r'^([A-Za-z_]\w*)\s+(.+)$', re.DOTALL)


# ---------------------------
# Context Helper Functions
# ---------------------------
def get_value_from_context(context: Any, key: str) -> Any:
    """
    Retrieve a value from a nested context using dot notation for keys and
    bracket notation for list indices (e.g. 'steps.login.response.body.items[0].id').
    Returns the sentinel _MISSING if the path is invalid or a key is not found,
    so that a stored None can be told apart from a missing key.
    """
    if not key:
        return _MISSING
    if not isinstance(context, (dict, list)):
        return _MISSING

    current_value = context
    for match in _path_segment_regex.finditer(key):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            index = int(index_str)
            if not isinstance(current_value, list) or not 0 <= index < len(current_value):
                return _MISSING
            current_value = current_value[index]
        else:
            if isinstance(current_value, dict):
                current_value = current_value.get(part_name, _MISSING)
                if current_value is _MISSING:
                    return _MISSING
            elif isinstance(current_value, list) and part_name.isdigit():
                index = int(part_name)
                if index >= len(current_value):
                    return _MISSING
                current_value = current_value[index]
            else:
                return _MISSING
    return current_value


def _stringify(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _expression_of(match: "re.Match") -> str:
    # group 1 is the triple-brace form, group 2 the double-brace form
    expression = match.group(1) if match.group(1) is not None else match.group(2)
    return expression.strip()


# ---------------------------
# Template Resolver
# ---------------------------
class TemplateResolver:
    """Expands placeholders using a context merged with freshly generated values."""

    def __init__(self, generator: Optional[ValueGenerator] = None):
        self.generator = generator or ValueGenerator()

    def build_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        # Generated values are merged last and win over same-named context keys.
        merged = dict(context or {})
        merged.update(self.generator.values())
        return merged

    def resolve(self, document: Any, context: Optional[Dict[str, Any]] = None) -> Any:
        """Return a resolved deep copy of ``document``. Generated values are fixed for the whole call."""
        if document is None:
            return {}
        return self._substitute(document, self.build_context(context))

    def resolve_string(self, template: str, context: Optional[Dict[str, Any]] = None) -> Any:
        return self._substitute(template, self.build_context(context))

    def resolve_text(self, text: Any, context: Optional[Dict[str, Any]] = None) -> Any:
        """
        Resolve mimic response content. JSON text is parsed and resolved
        structurally. Other text (typically JSON with unquoted placeholders
        such as ``{"amount": {{ amount }}}``) is substituted first and then
        parsed as JSON when it has become valid JSON, otherwise it stays a
        string. Structured input is resolved as is.
        """
        if not isinstance(text, str):
            return self.resolve(text, context)
        stripped = text.strip()
        if not stripped:
            return text
        try:
            parsed = json.loads(stripped)
        except ValueError:
            substituted = self._substitute_string(stripped, self.build_context(context), strict=False)
            if not isinstance(substituted, str):
                return substituted
            try:
                return json.loads(substituted)
            except ValueError:
                return substituted
        return self.resolve(parsed, context)

    def _substitute(self, data: Any, context: Dict[str, Any]) -> Any:
        if isinstance(data, str):
            return self._substitute_string(data, context)
        if isinstance(data, dict):
            return {
                _stringify(self._substitute_string(key, context)) if isinstance(key, str) else key: self._substitute(val, context)
                for key, val in data.items()
            }
        if isinstance(data, list):
            return [self._substitute(item, context) for item in data]
        # Non-substitutable types (int, float, bool, None) are returned as is
        return data

    def _substitute_string(self, data: str, context: Dict[str, Any], strict: bool = True) -> Any:
        if data.startswith("##VAR:") and data.endswith("##"):
            parts = data[len("##VAR:"):-len("##")].split(":", 1)
            if len(parts) != 2 or parts[0] not in ("string", "unquoted"):
                raise TemplateError(f"Malformed ##VAR token '{data}', expected ##VAR:string|unquoted:path##")
            var_type, var_path = parts
            value = get_value_from_context(context, var_path.strip())
            if var_type == "unquoted":
                return None if value is _MISSING else value
            return _stringify(value)

        if "{{" not in data and "}}" not in data:
            return data

        result_parts: List[str] = []
        last_end = 0
        for match in _placeholder_regex.finditer(data):
            literal = data[last_end:match.start()]
            if strict and ("{{" in literal or "}}" in literal):
                raise TemplateError(f"Unbalanced placeholder braces in template '{data}'")
            result_parts.append(literal)
            result_parts.append(_stringify(self._evaluate(_expression_of(match), context, data)))
            last_end = match.end()

        tail = data[last_end:]
        if strict and ("{{" in tail or "}}" in tail):
            raise TemplateError(f"Unbalanced placeholder braces in template '{data}'")
        result_parts.append(tail)
        return "".join(result_parts)

    def _evaluate(self, expression: str, context: Dict[str, Any], template: str) -> Any:
        if not expression:
            raise TemplateError(f"Empty placeholder in template '{template}'")

        if _path_regex.match(expression):
            value = get_value_from_context(context, expression)
            if value is _MISSING:
                logger.debug(f"Placeholder '{{{{{expression}}}}}' not found in context. Substituting with empty string.")
            return value

        helper_match = _helper_regex.match(expression)
        if helper_match:
            name, raw_arg = helper_match.group(1), helper_match.group(2).strip()
            helper = self.generator.helpers.get(name)
            if helper is None:
                raise TemplateError(f"Unknown template helper '{name}' in '{template}'")
            try:
                return helper(self._parse_argument(raw_arg, context))
            except TemplateError:
                raise
            except Exception as e:
                raise TemplateError(f"Helper '{name}' failed in '{template}': {e}") from e

        raise TemplateError(f"Invalid placeholder expression '{expression}' in template '{template}'")

    @staticmethod
    def _parse_argument(raw: str, context: Dict[str, Any]) -> Union[str, Any]:
        if len(raw) >= 2 and raw[0] == raw[-1] == "'":
            return raw[1:-1]
        try:
            return json.loads(raw)
        except ValueError:
            pass
        if _path_regex.match(raw):
            value = get_value_from_context(context, raw)
            if value is not _MISSING:
                return value
        raise TemplateError(f"Cannot parse helper argument '{raw}'")
