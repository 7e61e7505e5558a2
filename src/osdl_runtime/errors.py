from __future__ import annotations

from typing import Any


class RuntimeEngineError(Exception):
    """Base class for every error raised inside the page runtime."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.details}


class ExpressionError(RuntimeEngineError):
    pass


class ParseError(ExpressionError):
    """Malformed expression syntax."""

    def __init__(self, message: str, *, expression: str, position: int) -> None:
        super().__init__(message, expression=expression, position=position)
        self.expression = expression
        self.position = position


class EvalError(ExpressionError):
    """Unknown function or an operator applied to incompatible operands."""


class FetchError(RuntimeEngineError):
    """A data source could not produce a value."""


class ConfigError(RuntimeEngineError):
    """A data requirement (or page data source) is declared incorrectly."""


__all__ = [
    "RuntimeEngineError",
    "ExpressionError",
    "ParseError",
    "EvalError",
    "FetchError",
    "ConfigError",
]
