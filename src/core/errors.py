"""
Error taxonomy for the widget query engine.

  - ValidationError  aggregation / column mismatch, carries a message key
                     for the form layer plus a human suggestion
  - DateParseError   a date value that cannot be parsed
  - ConfigError      unknown relative-date name, unknown widget type,
                     missing structural fields

Malformed individual filter conditions are not errors: the filter compiler
drops them.
"""
from __future__ import annotations


class WidgetQueryError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(WidgetQueryError):
    def __init__(
        self,
        message: str,
        *,
        message_key: str | None = None,
        suggestion: str | None = None,
        path: tuple[str, ...] = ("metric",),
    ):
        super().__init__(message)
        self.message = message
        self.message_key = message_key
        self.suggestion = suggestion
        self.path = path

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "message_key": self.message_key,
            "suggestion": self.suggestion,
            "path": list(self.path),
        }


class DateParseError(WidgetQueryError):
    def __init__(self, value: object, reason: str | None = None):
        detail = f"Cannot parse date value {value!r}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.value = value


class ConfigError(WidgetQueryError):
    pass
