"""Typed application errors and consistent error-message formatting."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class Operation(StrEnum):
    """Operation phrases used in ``format_error_message``."""

    DB_CREATE = "creating database record"
    DB_READ = "reading database record"
    DB_UPDATE = "updating database record"
    DB_DELETE = "deleting database record"
    DB_QUERY = "querying database"

    AUTH_ACCESS = "checking access rights"

    MODEL_REQUEST = "making model request"
    MODEL_RESPONSE = "processing model response"
    MODEL_SWITCH = "switching models"

    RESOURCE_NOT_FOUND = "resource not found"
    RESOURCE_INVALID = "invalid resource"

    RATE_LIMIT = "rate limit exceeded"
    RATE_CHECK = "checking rate limits"

    USAGE_TRACK = "tracking usage"
    USAGE_STATS = "retrieving usage statistics"


class AppError(Exception):
    """Base class for every error this application raises on purpose."""

    code = "UNKNOWN_ERROR"
    status = 500

    def __init__(self, message: str | BaseException, details: dict[str, Any] | None = None):
        super().__init__(str(message))
        self.message = str(message)
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AuthorizationError(AppError):
    code = "AUTHORIZATION_ERROR"
    status = 403


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status = 400


class DatabaseError(AppError):
    code = "DATABASE_ERROR"
    status = 500


class RateLimitError(AppError):
    code = "RATE_LIMIT_ERROR"
    status = 429


class ModelError(AppError):
    """Unknown or rejected model identifier."""

    code = "MODEL_ERROR"
    status = 400


class NotFoundError(AppError):
    code = "NOT_FOUND_ERROR"
    status = 404


class ConfigurationError(AppError):
    code = "CONFIGURATION_ERROR"
    status = 500


class OpenRouterError(AppError):
    """The model provider call failed: network, non-2xx status or malformed payload."""

    code = "OPENROUTER_ERROR"
    status = 502


def _error_text(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    return "Unknown error"


def format_error_message(
    operation: Operation | str,
    error: object,
    context: dict[str, Any] | None = None,
) -> str:
    """Build ``"Error <operation>: <error> (k=v, ...)"``."""
    message = f"Error {operation}: {_error_text(error)}"
    if context:
        pairs = ", ".join(f"{key}={value}" for key, value in context.items())
        message += f" ({pairs})"
    return message


def not_found_message(resource: str, **context: Any) -> str:
    return format_error_message(Operation.RESOURCE_NOT_FOUND, f"{resource} not found", context)
