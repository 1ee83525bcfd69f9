"""
WebSocket Event Handlers for the Task Board

Implements one handler per protocol event plus the router that turns raw
frames into handler calls and acknowledgements.

Key Features:
- BaseHandler abstract class with service, session and broadcast integration
- Session gate: mutating handlers resolve the caller before doing any work
- Mutations fan out a ``syncUpdate`` after commit and echo the same payload,
  plus the operation result, in the direct ack
- Every failure becomes a ``{success: false, error, code}`` ack; a handler
  error never closes the connection
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from . import protocol
from .broadcast import BroadcastDispatcher, TextSocket
from .errors import INTERNAL_ERROR_CODE, BoardError, ValidationError, failure
from .models import (
    CreateTaskRequest,
    CredentialsRequest,
    Identity,
    MutationRequest,
    ProfileRequest,
    RestoreSessionRequest,
    ShareTaskRequest,
    TaskRefRequest,
)
from .service import BoardService
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


class BaseHandler(ABC):
    """
    Abstract base class for protocol event handlers.

    Provides common access to the board service, the session registry and
    the broadcast dispatcher, request parsing and standard ack formatting.
    """

    def __init__(self, service: BoardService, sessions: SessionRegistry, dispatcher: BroadcastDispatcher):
        self.service = service
        self.sessions = sessions
        self.dispatcher = dispatcher

    @abstractmethod
    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the operation for one request.

        Returns:
            Success ack payload; failures are raised as BoardError
        """

    def _format_success_response(self, **kwargs) -> Dict[str, Any]:
        return {"success": True, **kwargs}

    def _parse(self, model: Type[RequestT], data: Dict[str, Any]) -> RequestT:
        """Validate a request payload, mapping pydantic errors to ValidationError."""
        try:
            return model.model_validate(data or {})
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
            message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
            raise ValidationError(f"{field}: {message}")

    def _identity(self, connection_id: str) -> Identity:
        return self.sessions.require(connection_id)

    @staticmethod
    def _correlation_id(request: MutationRequest) -> str:
        return request.correlation_id or uuid.uuid4().hex


class RegisterHandler(BaseHandler):
    """Create a user and bind it to the connection."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._parse(CredentialsRequest, data)
        identity = self.sessions.register(request.login, request.credential)
        self.sessions.bind(connection_id, identity)
        return self._format_success_response(user=identity.to_wire())


class LoginHandler(BaseHandler):
    """Check credentials and bind the identity to the connection."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._parse(CredentialsRequest, data)
        identity = self.sessions.authenticate(request.login, request.credential)
        self.sessions.bind(connection_id, identity)
        logger.info(f"User '{identity.login}' logged in on {connection_id}")
        return self._format_success_response(user=identity.to_wire())


class RestoreSessionHandler(BaseHandler):
    """
    Re-bind a client-cached identity after reconnect.

    Trusts the presented login; see SessionRegistry.restore.
    """

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._parse(RestoreSessionRequest, data)
        identity = self.sessions.restore(request.login)
        self.sessions.bind(connection_id, identity)
        logger.info(f"Session restored for '{identity.login}' on {connection_id}")
        return self._format_success_response(user=identity.to_wire())


class LogoutHandler(BaseHandler):

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.sessions.unbind(connection_id)
        return self._format_success_response()


class CreateTaskHandler(BaseHandler):
    """Create a task and announce it to every client."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        identity = self._identity(connection_id)
        request = self._parse(CreateTaskRequest, data)
        task = self.service.create_task(identity, request.title, request.description or "")
        payload = await self.dispatcher.publish(
            protocol.SYNC_CREATED,
            actor_login=identity.login,
            correlation_id=self._correlation_id(request),
            task=task,
        )
        return self._format_success_response(**payload)


class ShareTaskHandler(BaseHandler):
    """Enroll recipients and announce the new participant set."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        identity = self._identity(connection_id)
        request = self._parse(ShareTaskRequest, data)
        result = self.service.share_task(identity, request.task_id, request.recipient_logins)

        fields = dict(
            actor_login=identity.login,
            correlation_id=self._correlation_id(request),
            task=result["task"],
        )
        if result["shared_count"] > 0:
            payload = await self.dispatcher.publish(protocol.SYNC_UPDATED, **fields)
        else:
            payload = self.dispatcher.build_payload(protocol.SYNC_UPDATED, **fields)
        return self._format_success_response(
            **payload,
            sharedCount=result["shared_count"],
            sharedWith=result["shared_with"],
        )


class CompleteTaskHandler(BaseHandler):
    """
    Record the caller's completion and announce the new progress.

    A retried completion that changes nothing is acknowledged with the same
    payload shape but not fanned out again.
    """

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        identity = self._identity(connection_id)
        request = self._parse(TaskRefRequest, data)
        result = self.service.complete_task(identity, request.task_id)

        fields = dict(
            actor_login=identity.login,
            correlation_id=self._correlation_id(request),
            task=result["task"],
            progress=result["progress"],
        )
        if result["changed"]:
            payload = await self.dispatcher.publish(protocol.SYNC_PROGRESS, **fields)
        else:
            payload = self.dispatcher.build_payload(protocol.SYNC_PROGRESS, **fields)
        return self._format_success_response(**payload)


class DeleteTaskHandler(BaseHandler):
    """Delete a task and tell every client to drop it."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        identity = self._identity(connection_id)
        request = self._parse(TaskRefRequest, data)
        self.service.delete_task(identity, request.task_id)
        payload = await self.dispatcher.publish(
            protocol.SYNC_DELETED,
            actor_login=identity.login,
            correlation_id=self._correlation_id(request),
            task_id=request.task_id,
        )
        return self._format_success_response(**payload)


class GetProfileHandler(BaseHandler):
    """Public profile lookup; no session required."""

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = self._parse(ProfileRequest, data)
        profile = self.service.get_profile(request.login)
        return self._format_success_response(profile=profile.to_wire())


class PingHandler(BaseHandler):

    async def apply(self, connection_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._format_success_response(message="pong", serverTime=int(time.time() * 1000))


AVAILABLE_HANDLERS: Dict[str, Type[BaseHandler]] = {
    protocol.REGISTER: RegisterHandler,
    protocol.LOGIN: LoginHandler,
    protocol.RESTORE_SESSION: RestoreSessionHandler,
    protocol.LOGOUT: LogoutHandler,
    protocol.CREATE_TASK: CreateTaskHandler,
    protocol.SHARE_TASK: ShareTaskHandler,
    protocol.COMPLETE_TASK: CompleteTaskHandler,
    protocol.DELETE_TASK: DeleteTaskHandler,
    protocol.GET_PROFILE: GetProfileHandler,
    protocol.PING: PingHandler,
}


def create_handler_instance(event: str, service: BoardService, sessions: SessionRegistry,
                            dispatcher: BroadcastDispatcher) -> BaseHandler:
    """
    Factory function to create a handler with its dependencies.

    Raises:
        KeyError: If event is not found in AVAILABLE_HANDLERS
    """
    if event not in AVAILABLE_HANDLERS:
        raise KeyError(f"Unknown event '{event}'. Available events: {list(AVAILABLE_HANDLERS.keys())}")
    return AVAILABLE_HANDLERS[event](service, sessions, dispatcher)


class BoardSocketHandler:
    """
    Per-server router from WebSocket frames to event handlers.

    Owns the connection lifecycle on the server side: registering the socket
    with the dispatcher on connect and dropping both the socket and its
    session on disconnect.
    """

    def __init__(self, service: BoardService, sessions: SessionRegistry, dispatcher: BroadcastDispatcher):
        self.service = service
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.handlers: Dict[str, BaseHandler] = {
            event: create_handler_instance(event, service, sessions, dispatcher)
            for event in AVAILABLE_HANDLERS
        }

    async def connect(self, websocket: TextSocket, connection_id: Optional[str] = None) -> str:
        """Register a freshly accepted socket and return its connection id."""
        connection_id = connection_id or uuid.uuid4().hex
        await self.dispatcher.register(connection_id, websocket)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Forget the socket and its session; safe to call twice."""
        self.sessions.unbind(connection_id)
        await self.dispatcher.unregister(connection_id)

    async def dispatch(self, connection_id: str, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one event and return its ack payload, never raising.

        Taxonomy errors become structured failures; anything unexpected is
        logged with its traceback and reported as a generic failure.
        """
        handler = self.handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event '{event}' from {connection_id}")
            return ValidationError(f"Unknown event '{event}'").to_ack()
        try:
            return await handler.apply(connection_id, data)
        except BoardError as e:
            logger.warning(f"Event '{event}' from {connection_id} rejected: {e.code}: {e.message}")
            return e.to_ack()
        except Exception:
            logger.exception(f"Event '{event}' from {connection_id} failed")
            return failure("Internal server error", INTERNAL_ERROR_CODE)

    async def handle_message(self, connection_id: str, message: str) -> Optional[Dict[str, Any]]:
        """
        Decode a frame, dispatch it and send the ack when one was requested.

        Returns:
            The ack payload, or None when the frame could not be decoded
        """
        try:
            envelope = protocol.decode(message)
        except ValidationError as e:
            logger.warning(f"Dropping malformed frame from {connection_id}: {e.message}")
            return None

        ack = await self.dispatch(connection_id, envelope.event, envelope.data)
        if envelope.ack_id is not None:
            await self.dispatcher.send_to(connection_id, protocol.encode_ack(envelope.ack_id, ack))
        return ack
