"""
Error taxonomy shared by the server operations and the client.

Every error carries a stable ``code`` that travels in ``{success: false,
error, code}`` acknowledgements so clients can branch without parsing text.
"""

from typing import Any, Dict


class BoardError(Exception):
    """Base class for all task board errors."""

    code = "BoardError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_ack(self) -> Dict[str, Any]:
        """Render the error as a failed acknowledgement payload."""
        return {"success": False, "error": self.message, "code": self.code}


class Unauthenticated(BoardError):
    """No identity is bound to the connection."""
    code = "Unauthenticated"


class ValidationError(BoardError):
    """Empty or malformed input."""
    code = "ValidationError"


class NotFound(BoardError):
    """Task or user does not exist."""
    code = "NotFound"


class PermissionDenied(BoardError):
    """Actor is not authorized for the task."""
    code = "PermissionDenied"


class ConnectionLost(BoardError):
    """Transport unavailable; raised and resolved on the client only."""
    code = "ConnectionLost"


class DuplicateIdentity(BoardError):
    """Registration collided with an existing login."""
    code = "DuplicateIdentity"


class InvalidCredential(BoardError):
    """No user matches the presented login and credential."""
    code = "InvalidCredential"


AlreadyExists = DuplicateIdentity

INTERNAL_ERROR_CODE = "InternalError"
TIMEOUT_CODE = "Timeout"


def failure(message: str, code: str) -> Dict[str, Any]:
    """Build a failed acknowledgement for errors outside the taxonomy."""
    return {"success": False, "error": message, "code": code}
