"""
MESS exchange error types.
"""

from typing import Any, Optional


class MessError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ValidationError(MessError):
    """Missing or malformed input, e.g. a request without an intent."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class NotFoundError(MessError):
    """Unknown thread, message or resource reference."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("not_found", message, details)


class InvalidTransitionError(MessError):
    def __init__(self, message: str, code: str = "invalid_transition", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class AlreadyClaimedError(InvalidTransitionError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code="already_claimed", details=details)


class ConflictError(MessError):
    """The backend moved underneath a read-modify-write cycle."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("conflict", message, details)


class SizeLimitError(MessError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("size_limit", message, details)


class FormatError(MessError):
    """A stored thread could not be parsed."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("format_error", message, details)


class BackendError(MessError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("backend_error", message, details)
