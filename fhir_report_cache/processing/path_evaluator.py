"""FHIRPath evaluation against source records."""

from typing import Any, Protocol

from fhirpathpy import evaluate


class PathExpressionError(Exception):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, error: Exception):
        self.expression = expression
        super().__init__(f"Cannot evaluate '{expression}': {error}")


class PathEvaluator(Protocol):
    """Evaluates an expression against a record and returns every resulting value."""

    def __call__(self, record: dict[str, Any], expression: str) -> list[Any]: ...


class FhirPathEvaluator:
    """PathEvaluator backed by fhirpathpy."""

    def __call__(self, record: dict[str, Any], expression: str) -> list[Any]:
        try:
            result = evaluate(record, expression, {})
        except Exception as e:
            # fhirpathpy raises plain exceptions for lexer, parser and type errors alike
            raise PathExpressionError(expression, e) from e

        if result is None:
            return []
        if isinstance(result, list):
            return [value for value in result if value is not None]
        return [result]
