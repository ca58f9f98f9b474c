"""
Exception hierarchy for the relation view engine.

Public engine operations never raise these to their callers: mutation
boundaries convert them into ``{success: False, error}`` results and read
paths degrade to empty values. They exist so internal layers (validation,
the nio adapter) can signal failures in a uniform way.
"""

from typing import Optional


class ChatViewError(Exception):
    """Base exception for all view engine errors."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code or self.__class__.__name__


# Validation Exceptions


class ValidationError(ChatViewError):
    """Raised when user input is rejected before any network call."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = (
            f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        )
        super().__init__(detail, error_code=error_code)
        self.field = field


# Resource Exceptions


class ResourceNotFoundError(ChatViewError):
    """Raised when a room or event is not known locally."""

    def __init__(self, detail: str, error_code: str = "RESOURCE_NOT_FOUND"):
        super().__init__(detail, error_code=error_code)


class RoomNotFoundError(ResourceNotFoundError):
    """Raised when a room is not known to the protocol client."""

    def __init__(self, room_id: str):
        super().__init__("Room not found", error_code="ROOM_NOT_FOUND")
        self.room_id = room_id


class ReactionNotFoundError(ResourceNotFoundError):
    """Raised when the current user holds no matching reaction."""

    def __init__(self, event_id: str, key: str):
        super().__init__("Reaction not found", error_code="REACTION_NOT_FOUND")
        self.event_id = event_id
        self.key = key


# Transport Exceptions


class TransportError(ChatViewError):
    """Raised when the protocol client rejects a send or redaction."""

    def __init__(self, operation: str, detail: str):
        # Map to controlled vocabulary to prevent high cardinality
        operation_map = {
            "send": "SEND",
            "redact": "REDACT",
        }
        normalized_op = operation_map.get(operation.lower(), "UNKNOWN")
        super().__init__(detail, error_code=f"TRANSPORT_{normalized_op}_ERROR")
        self.operation = operation
