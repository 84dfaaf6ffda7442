"""Conditional value rewriting for projected columns.

A modifier is a colon separated chain of ``condition:result`` pairs with an
optional trailing default::

    value=male||value=man:M:value=female:F:U

Conditions are ``||`` separated clauses, each ``left=right`` or
``left!=right``. The left operand is the projected value when it is
``value`` or empty, another column of the same record when one of that name
was already projected, and a literal otherwise. ``null`` stands for an
absent value on either side. Pairs are tried left to right and the first
matching condition wins; a result of ``value`` keeps the projected value.
Without a match and without a default the value is left unchanged.
"""

from typing import Any, Mapping

VALUE_TOKEN = "value"
NULL_TOKEN = "null"


class ValueModifierError(ValueError):
    """Raised for a modifier that cannot be parsed."""

    pass


def apply_value_modifier(modifier: str, value: Any, fields: Mapping[str, Any] | None = None) -> Any:
    """
    Rewrite ``value`` according to ``modifier``.

    Args:
        modifier: Modifier expression
        value: Value projected for the column being rewritten
        fields: Columns already projected for the same record

    Returns:
        The rewritten value

    Raises:
        ValueModifierError: If a condition has no comparison operator
    """
    fields = fields or {}
    segments = modifier.split(":")
    pairs = [(segments[i], segments[i + 1]) for i in range(0, len(segments) - 1, 2)]
    default = segments[-1] if len(segments) % 2 == 1 else None

    for condition, result in pairs:
        if _matches(condition, value, fields):
            return _result(result, value)

    if default is not None:
        return _result(default, value)
    return value


def _matches(condition: str, value: Any, fields: Mapping[str, Any]) -> bool:
    return any(_clause_matches(clause, value, fields) for clause in condition.split("||"))


def _clause_matches(clause: str, value: Any, fields: Mapping[str, Any]) -> bool:
    if "!=" in clause:
        left, right = clause.split("!=", 1)
        negate = True
    elif "=" in clause:
        left, right = clause.split("=", 1)
        negate = False
    else:
        raise ValueModifierError(f"condition '{clause}' has no '=' or '!='")

    equal = _text(_operand(left.strip(), value, fields)) == _text(_literal(right.strip()))
    return not equal if negate else equal


def _operand(token: str, value: Any, fields: Mapping[str, Any]) -> Any:
    if token in ("", VALUE_TOKEN):
        return value
    if token in fields:
        return fields[token]
    return _literal(token)


def _literal(token: str) -> Any:
    return None if token == NULL_TOKEN else token


def _result(token: str, value: Any) -> Any:
    if token == VALUE_TOKEN:
        return value
    return _literal(token)


def _text(operand: Any) -> str | None:
    if operand is None or operand == "":
        return None
    if isinstance(operand, bool):
        return "true" if operand else "false"
    return str(operand)
