"""
Wire protocol for the task board WebSocket channel.

Every frame is a JSON text message shaped as an envelope:

- request:  ``{"event": "completeTask", "data": {...}, "ackId": 7}``
- ack:      ``{"event": "ack", "ackId": 7, "data": {"success": true, ...}}``
- fan-out:  ``{"event": "syncUpdate", "data": {...}}``

``ackId`` is optional on requests; without it the server still executes the
operation but sends no acknowledgement.
"""

import json
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# Client -> server events
REGISTER = "register"
LOGIN = "login"
RESTORE_SESSION = "restoreSession"
LOGOUT = "logout"
CREATE_TASK = "createTask"
SHARE_TASK = "shareTask"
COMPLETE_TASK = "completeTask"
DELETE_TASK = "deleteTask"
GET_PROFILE = "getProfile"
PING = "ping"

# Server -> client events
ACK = "ack"
SYNC_UPDATE = "syncUpdate"

# Events a client may attempt while its transport is still reconnecting
AUTH_EVENTS = frozenset({REGISTER, LOGIN, RESTORE_SESSION})
MUTATING_EVENTS = frozenset({CREATE_TASK, SHARE_TASK, COMPLETE_TASK, DELETE_TASK})

# syncUpdate payload types
SYNC_CREATED = "created"
SYNC_UPDATED = "updated"
SYNC_PROGRESS = "progress"
SYNC_DELETED = "deleted"
SYNC_TYPES = (SYNC_CREATED, SYNC_UPDATED, SYNC_PROGRESS, SYNC_DELETED)


class Envelope(BaseModel):
    """One frame on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    event: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    ack_id: Optional[int] = Field(None, alias="ackId")


def new_correlation_id() -> str:
    """Fresh id tying an optimistic edit to its ack and fan-out."""
    return uuid.uuid4().hex


def encode(event: str, data: Optional[Dict[str, Any]] = None, ack_id: Optional[int] = None) -> str:
    """Serialize an envelope to a JSON text frame."""
    frame: Dict[str, Any] = {"event": event, "data": data or {}}
    if ack_id is not None:
        frame["ackId"] = ack_id
    return json.dumps(frame)


def encode_ack(ack_id: int, data: Dict[str, Any]) -> str:
    return encode(ACK, data, ack_id)


def decode(message: str) -> Envelope:
    """
    Parse a JSON text frame into an Envelope.

    Raises:
        ValidationError: Frame is not JSON or not envelope-shaped
    """
    try:
        raw = json.loads(message)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed frame: {e}")
    if not isinstance(raw, dict):
        raise ValidationError("Frame must be a JSON object")
    try:
        return Envelope.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed envelope: {e.errors()[0].get('msg', 'invalid')}")
