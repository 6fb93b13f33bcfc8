"""Restricted expression evaluation for transform, branch and loop nodes.

Expressions are evaluated with simpleeval, never with ``eval``. The
grammar covers literals (including dict/list/tuple), arithmetic,
comparisons, boolean operators, attribute/index access and a small
whitelist of functions. Every variable is visible by bare name and also
under ``variables``; ``true``/``false``/``null`` are accepted as aliases,
and bare object keys (``{done: true}``) are quoted before evaluation, so
flows authored against JavaScript-style scripts keep working. Keys inside
braces are therefore always literal strings, never variable lookups.

Branch and loop conditions may instead use the ``simple`` language: one
``<left> <operator> <right>`` comparison, no evaluator involved.

Template placeholders (``{{name}}`` / ``{{a.b.0}}``) are resolved against
the variable bag with :func:`get_nested_value`.
"""

import json
import re
from typing import Any, Dict, Optional

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.exceptions import ExpressionError

logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w\-]+(?:\.[\w\-]+)*)\s*\}\}")

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "any": any,
    "all": all,
    "sorted": sorted,
}

LITERAL_ALIASES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "result.status", "items.0.name")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        "ok"
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        "a"
    """
    if not data or not field_path:
        return None

    current: Any = data

    for part in field_path.split('.'):
        if current is None:
            return None

        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if 0 <= index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


# String literals are matched first so their contents are never rewritten
_OBJECT_KEY_PATTERN = re.compile(
    r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')|([{,]\s*)([A-Za-z_$][\w$]*)(\s*:)"""
)


def _quote_object_keys(script: str) -> str:
    """Quote bare keys in object literals: ``{done: true}`` -> ``{"done": true}``."""
    def _replace(match: "re.Match[str]") -> str:
        if match.group(1):
            return match.group(1)
        return f'{match.group(2)}"{match.group(3)}"{match.group(4)}'

    return _OBJECT_KEY_PATTERN.sub(_replace, script)


def _normalize_script(expression: str) -> str:
    """Strip a leading ``return`` and trailing semicolons, quote bare object keys."""
    script = expression.strip().rstrip(";").strip()
    if script.startswith("return "):
        script = script[len("return "):].strip()
    return _quote_object_keys(script)


def build_names(variables: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the name table visible to an expression."""
    names: Dict[str, Any] = dict(LITERAL_ALIASES)
    names.update(variables)
    names["variables"] = variables
    if extra:
        names.update(extra)
    return names


def evaluate_expression(expression: Any, variables: Dict[str, Any],
                        extra: Optional[Dict[str, Any]] = None) -> Any:
    """Evaluate an expression against the variable bag.

    Non-string values (a literal ``true`` in JSON config, a number) are
    returned unchanged.

    Raises:
        ExpressionError: the expression is empty, malformed, or failed
            while evaluating.
    """
    if not isinstance(expression, str):
        return expression

    script = _normalize_script(expression)
    if not script:
        raise ExpressionError(expression, "Empty expression")

    evaluator = EvalWithCompoundTypes(
        names=build_names(variables, extra),
        functions=SAFE_FUNCTIONS,
    )
    try:
        return evaluator.eval(script)
    except InvalidExpression as e:
        raise ExpressionError(expression, str(e)) from e
    except SyntaxError as e:
        raise ExpressionError(expression, f"Syntax error: {e.msg}") from e
    except Exception as e:
        raise ExpressionError(expression, f"{type(e).__name__}: {e}") from e


SIMPLE_OPERATORS = (">=", "<=", "==", "!=", ">", "<")


def _simple_operand(token: str, variables: Dict[str, Any]) -> Any:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    for number in (int, float):
        try:
            return number(token)
        except ValueError:
            continue
    if token in ("true", "false"):
        return token == "true"
    if token in variables:
        return variables[token]
    return get_nested_value(variables, token)


def evaluate_simple_condition(condition: Any, variables: Dict[str, Any]) -> bool:
    """Evaluate a single ``<left> <operator> <right>`` comparison.

    Operands are quoted strings, numbers, ``true``/``false`` or variable
    paths. Ordering operators compare numerically.

    Raises:
        ExpressionError: no operator, more than one comparison, or a
            non-numeric operand to an ordering operator.
    """
    if isinstance(condition, bool):
        return condition
    text = str(condition)
    operator = next((op for op in SIMPLE_OPERATORS if op in text), None)
    parts = text.split(operator) if operator else []
    if len(parts) != 2:
        raise ExpressionError(condition, "Invalid condition format, expected '<left> <operator> <right>'")

    left = _simple_operand(parts[0].strip(), variables)
    right = _simple_operand(parts[1].strip(), variables)
    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    try:
        left, right = float(left), float(right)
    except (TypeError, ValueError) as e:
        raise ExpressionError(condition, f"Non-numeric operand for '{operator}'") from e
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    return left <= right


def evaluate_condition(condition: Any, variables: Dict[str, Any],
                       extra: Optional[Dict[str, Any]] = None,
                       language: Optional[str] = None) -> bool:
    """Evaluate a condition and coerce the result to bool.

    ``language`` is ``expression`` (default, ``javascript`` is an alias)
    or ``simple``.
    """
    language = language or "expression"
    if language == "simple":
        result = evaluate_simple_condition(condition, {**variables, **(extra or {})})
    elif language in ("expression", "javascript"):
        result = bool(evaluate_expression(condition, variables, extra))
    else:
        raise ExpressionError(condition, f"Unsupported condition language: {language}")
    logger.debug("Condition evaluated", condition=condition, language=language, result=result)
    return result


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def render_template(value: Any, variables: Dict[str, Any]) -> Any:
    """Substitute ``{{path}}`` placeholders in strings, recursively.

    A string consisting of exactly one placeholder resolves to the
    variable's native value. Unknown placeholders are left in place.
    """
    if isinstance(value, str):
        whole = TEMPLATE_PATTERN.fullmatch(value.strip())
        if whole:
            resolved = get_nested_value(variables, whole.group(1))
            return value if resolved is None else resolved

        def _replace(match: "re.Match[str]") -> str:
            resolved = get_nested_value(variables, match.group(1))
            return match.group(0) if resolved is None else _stringify(resolved)

        return TEMPLATE_PATTERN.sub(_replace, value)

    if isinstance(value, list):
        return [render_template(item, variables) for item in value]

    if isinstance(value, dict):
        return {key: render_template(item, variables) for key, item in value.items()}

    return value
