"""
Pydantic models for the task board wire protocol.

Provides validation models for client request payloads, the task/profile
views returned in acknowledgements, and the ``syncUpdate`` fan-out payload.
All models serialize with camelCase aliases (``model_dump(by_alias=True)``)
and accept either spelling on input.
"""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import MAX_LOGIN_LENGTH, MAX_TITLE_LENGTH
from .progress import STATUS_TODO


class CamelModel(BaseModel):
    """Base model with camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Identity(CamelModel):
    """Authenticated user identity bound to a connection."""
    id: int
    login: str
    completed_count: int = 0


# Request payloads

class MutationRequest(CamelModel):
    """Base for mutating requests; carries the client's correlation id."""
    correlation_id: Optional[str] = Field(None, max_length=100)


class CredentialsRequest(CamelModel):
    """Payload for ``register`` and ``login``."""
    login: str = Field(min_length=1, max_length=MAX_LOGIN_LENGTH)
    credential: str = Field(validation_alias=AliasChoices("credential", "password"))

    @field_validator("login")
    @classmethod
    def validate_login(cls, v):
        """Strip surrounding whitespace and reject blank logins."""
        v = v.strip()
        if not v:
            raise ValueError("Login cannot be empty")
        return v


class RestoreSessionRequest(CamelModel):
    """Payload for ``restoreSession``."""
    login: str = Field(min_length=1, max_length=MAX_LOGIN_LENGTH)


class CreateTaskRequest(MutationRequest):
    """Payload for ``createTask``."""
    title: str
    description: Optional[str] = ""

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        if len(v) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        return (v or "").strip()


class ShareTaskRequest(MutationRequest):
    """Payload for ``shareTask``; ``userLogins`` is accepted for old clients."""
    task_id: int = Field(validation_alias=AliasChoices("taskId", "task_id"))
    recipient_logins: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("recipientLogins", "recipient_logins", "userLogins"),
    )

    @field_validator("recipient_logins")
    @classmethod
    def validate_recipients(cls, v):
        """Drop blanks and duplicates while keeping request order."""
        seen = []
        for login in v:
            login = str(login).strip()
            if login and login not in seen:
                seen.append(login)
        return seen


class TaskRefRequest(MutationRequest):
    """Payload for ``completeTask`` and ``deleteTask``."""
    task_id: int = Field(validation_alias=AliasChoices("taskId", "task_id"))


class ProfileRequest(CamelModel):
    """Payload for ``getProfile``."""
    login: str = Field(min_length=1, max_length=MAX_LOGIN_LENGTH)


# Views returned to clients

class ParticipantView(CamelModel):
    login: str
    completed: bool = False
    completed_at: Optional[str] = None


class TaskView(CamelModel):
    """Task with freshly computed progress."""
    id: int
    title: str
    description: str = ""
    status: str = STATUS_TODO
    created_by: Optional[str] = None
    created_at: str
    updated_at: str
    version: int = 1
    progress: int = 0
    total_participants: int = 0
    completed_participants: int = 0
    participants: List[ParticipantView] = Field(default_factory=list)


class Profile(CamelModel):
    """Public profile with aggregate counters and the user's task list."""
    login: str
    completed_count: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    shared_tasks: int = 0
    tasks: List[TaskView] = Field(default_factory=list)


class SyncPayload(CamelModel):
    """Payload shared by ``syncUpdate`` fan-out events and direct acks."""
    type: str
    task_id: Optional[int] = None
    task: Optional[TaskView] = None
    progress: Optional[int] = None
    actor_login: str
    correlation_id: str
    timestamp: str

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
