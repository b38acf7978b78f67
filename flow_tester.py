# flow_tester.py
"""
Evaluates a step's ``test`` block against its response.

Three independent categories are checked: ``status`` (membership), ``body``
(recursive structural comparison with ``$expr:`` leaves) and
``latentApplications`` (delegated to the running latent applications).
"""

import ast
import asyncio
import re
from typing import Any, Dict, List, Mapping, Optional

from flow_logging import get_logger

logger = get_logger("Tester")

EXPRESSION_PREFIX = "$expr:"

_SAFE_BUILTINS = {
    "len": len, "str": str, "int": int, "float": float, "bool": bool, "abs": abs,
    "min": min, "max": max, "isinstance": isinstance, "list": list, "dict": dict,
    "any": any, "all": all, "sum": sum, "round": round,
}

# String literals are left untouched by the operator rewrite
_STRING_LITERAL = re.compile(r'("(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\')')
_LENGTH = re.compile(r'([A-Za-z_][\w\.]*(?:\[[^\]]*\])*)\.length\b')
_REWRITES = [
    (re.compile(r'!=='), '!='),
    (re.compile(r'==='), '=='),
    (re.compile(r'&&'), ' and '),
    (re.compile(r'\|\|'), ' or '),
    (re.compile(r'!(?!=)'), ' not '),
    (re.compile(r'\b(?:null|undefined)\b'), 'None'),
    (re.compile(r'\btrue\b'), 'True'),
    (re.compile(r'\bfalse\b'), 'False'),
]


def translate_expression(expression: str) -> str:
    """Rewrite a JavaScript-flavoured boolean expression into Python."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        part = _LENGTH.sub(r'len(\1)', parts[i])
        for pattern, replacement in _REWRITES:
            part = pattern.sub(replacement, part)
        parts[i] = part
    return "".join(parts).strip()


def evaluate_expression(expression: str, value: Any) -> bool:
    """Evaluate ``expression`` with ``value`` bound. Any failure counts as False."""
    try:
        source = translate_expression(expression)
        tree = ast.parse(source, mode="eval")
        for node in ast.walk(tree):
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ValueError(f"Attribute '{node.attr}' is not allowed")
            if isinstance(node, ast.Name) and node.id.startswith("__"):
                raise ValueError(f"Name '{node.id}' is not allowed")
        return bool(eval(compile(tree, "<expr>", "eval"), {"__builtins__": _SAFE_BUILTINS}, {"value": value}))
    except Exception as e:
        logger.error(f"Error evaluating expression: {expression}: {e}")
        return False


def _strict_equal(expected: Any, actual: Any) -> bool:
    if isinstance(expected, bool) != isinstance(actual, bool):
        return False
    return expected == actual


def check_status(expected: Any, actual: Any) -> List[Dict[str, Any]]:
    expected = expected if isinstance(expected, list) else [expected]
    if any(_strict_equal(candidate, actual) for candidate in expected):
        return []
    return [{
        "message": "Expected status does not match actual status",
        "expected": expected,
        "actual": actual,
    }]


def check_body(expected: Any, actual: Any) -> List[Dict[str, Any]]:
    errors: List[Dict[str, Any]] = []

    def compare(exp: Any, act: Any, path: str):
        if isinstance(exp, str) and exp.startswith(EXPRESSION_PREFIX):
            expression = exp[len(EXPRESSION_PREFIX):]
            if not evaluate_expression(expression, act):
                errors.append({
                    "message": f"Expression evaluation failed at {path}",
                    "expression": expression,
                    "actual": act,
                })
            return

        if isinstance(exp, dict) and isinstance(act, dict):
            items = exp.items()
            present = lambda key: key in act
        elif isinstance(exp, list) and isinstance(act, list):
            items = enumerate(exp)
            present = lambda key: key < len(act)
        else:
            if not _strict_equal(exp, act):
                errors.append({"message": f"Value mismatch at {path}", "expected": exp, "actual": act})
            return

        for key, value in items:
            child = f"{path}.{key}" if path else str(key)
            if not present(key):
                errors.append({
                    "message": f"Missing key '{child}' in actual object",
                    "expected": value,
                    "actual": None,
                })
                continue
            compare(value, act[key], child)

    compare(expected, actual, "")
    return errors


class TestEvaluator:
    """Runs the assertions of a step ``test`` block."""

    __test__ = False  # not a pytest test class

    async def evaluate(self, expected: Dict[str, Any], actual: Dict[str, Any],
                       latent_applications: Optional[Mapping[str, Any]] = None,
                       flow: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        cases: Dict[str, List[Dict[str, Any]]] = {}

        if expected.get("status") is not None:
            cases["status"] = check_status(expected["status"], actual.get("status"))

        if expected.get("body") is not None:
            cases["body"] = check_body(expected["body"], actual.get("body"))

        checks = expected.get("latentApplications") or []
        if checks:
            cases["latentApplications"] = await self._check_latent(checks, actual, latent_applications or {}, flow)

        return {"hasErrors": any(len(c) > 0 for c in cases.values()), **cases}

    async def _check_latent(self, checks, actual, latent_applications, flow):
        async def run_check(check):
            name = check.get("application")
            app = latent_applications.get(name)
            if app is None:
                return {"application": name, "errors": [{"message": f"Latent application '{name}' is not running"}]}
            errors = await app.test(flow, check, actual)
            return {"application": name, "errors": errors} if errors else None

        results = await asyncio.gather(*(run_check(check) for check in checks))
        return [r for r in results if r]
