"""
Connection Lifecycle Manager

Asyncio client for the task board channel. Owns the transport, the
request/ack bookkeeping, automatic session restore and reconnection, and
feeds every server message into the ReconciliationEngine.

State machine::

    disconnected -> connecting -> connected -> authenticated -> disconnected

Listeners registered with ``on()`` receive ``stateChanged``,
``authenticated``, ``credentialsRequired``, ``disconnected``,
``connectivityFailed``, ``viewChanged`` and ``notification`` events.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from . import protocol
from .config import (
    DEFAULT_SERVER_URL,
    RECONNECT_ATTEMPTS,
    RECONNECT_DELAY_MAX_SECONDS,
    RECONNECT_DELAY_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
)
from .errors import TIMEOUT_CODE, ConnectionLost, Unauthenticated, ValidationError, failure
from .reconciliation import ReconciliationEngine
from .snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)

# WebSocketException covers ConnectionClosed and rejected handshakes (InvalidStatus)
TRANSPORT_ERRORS = (WebSocketException, ConnectionError, OSError, asyncio.TimeoutError)

Listener = Callable[[Any], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


class BoardClient:
    """
    Realtime task board client.

    Args:
        url: WebSocket endpoint of the server
        cache: Local snapshot cache; None disables snapshots and identity reuse
        transport_factory: Coroutine function ``(url) -> transport``; the
            transport needs ``send(str)``, ``close()`` and async iteration
            over incoming text frames (``websockets.connect`` by default)
        request_timeout: Seconds to wait for an ack
        max_reconnect_attempts: Attempts before giving up with connectivityFailed
        reconnect_delay: Base delay, doubled per attempt
        reconnect_delay_max: Ceiling for the reconnect delay
        auto_reconnect: Reconnect after an unexpected disconnect
        sleep: Coroutine used for backoff waits
    """

    def __init__(self, url: str = DEFAULT_SERVER_URL, cache: Optional[SnapshotCache] = None,
                 transport_factory: Optional[Callable[[str], Any]] = None,
                 request_timeout: float = REQUEST_TIMEOUT_SECONDS,
                 max_reconnect_attempts: int = RECONNECT_ATTEMPTS,
                 reconnect_delay: float = RECONNECT_DELAY_SECONDS,
                 reconnect_delay_max: float = RECONNECT_DELAY_MAX_SECONDS,
                 auto_reconnect: bool = True,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.url = url
        self.cache = cache
        self.transport_factory = transport_factory or websockets.connect
        self.request_timeout = request_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.auto_reconnect = auto_reconnect
        self.sleep = sleep

        self.engine = ReconciliationEngine()
        self.state = ConnectionState.DISCONNECTED
        self.user: Optional[Dict[str, Any]] = None

        self._transport: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._connected = asyncio.Event()
        self._closing = False

    # Event emitter

    def on(self, event: str, callback: Listener) -> None:
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Listener) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Listener for '{event}' failed")

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.debug(f"Client state {previous.value} -> {state.value}")
        self._emit("stateChanged", {"state": state.value, "previous": previous.value})

    def _emit_view(self) -> None:
        self._emit("viewChanged", self.engine.tasks())

    def _notify(self, message: str, level: str = "info", **extra) -> None:
        self._emit("notification", {"level": level, "message": message, **extra})

    # Queries

    @property
    def current_login(self) -> Optional[str]:
        return self.user.get("login") if self.user else None

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    def tasks(self) -> List[Dict[str, Any]]:
        """Current reconciled task view."""
        return self.engine.tasks()

    # Transport

    async def connect(self) -> bool:
        """
        Open the channel and restore a cached session if there is one.

        Returns:
            False when the server could not be reached; a reconnect loop is
            started in that case if auto_reconnect is on
        """
        self._closing = False
        try:
            await self._open()
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Could not connect to {self.url}: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()
            return False
        return True

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        transport = await self.transport_factory(self.url)
        self._transport = transport
        self._reader = asyncio.create_task(self._read_loop(transport))
        self._set_state(ConnectionState.CONNECTED)
        self._connected.set()
        logger.info(f"Connected to {self.url}")
        await self._after_connect()

    async def _after_connect(self) -> None:
        cached = self.cache.load_identity() if self.cache else None
        login = self.current_login or (cached or {}).get("login")
        if login:
            ack = await self.restore_session(login)
            if ack.get("success") or ack.get("code") in (ConnectionLost.code, TIMEOUT_CODE):
                return
            logger.info(f"Session restore for '{login}' rejected: {ack.get('error')}")
            self.user = None
            if self.cache:
                self.cache.clear_identity()
        self._emit("credentialsRequired", {"login": login})

    async def _read_loop(self, transport: Any) -> None:
        try:
            async for message in transport:
                self._handle_frame(message)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Connection to {self.url} lost: {e}")
        finally:
            self._on_transport_lost(transport)

    def _handle_frame(self, message: str) -> None:
        try:
            envelope = protocol.decode(message)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed server frame: {e.message}")
            return

        if envelope.event == protocol.ACK:
            future = self._pending.get(envelope.ack_id)
            if future is not None and not future.done():
                future.set_result(envelope.data)
        elif envelope.event == protocol.SYNC_UPDATE:
            self._apply_sync(envelope.data)
        else:
            logger.debug(f"Ignoring server event '{envelope.event}'")

    def _on_transport_lost(self, transport: Any) -> None:
        if transport is None or transport is not self._transport:
            return
        self._transport = None
        self._connected.clear()

        lost = ConnectionLost("Connection lost").to_ack()
        for future in self._pending.values():
            if not future.done():
                future.set_result(dict(lost))
        self._pending.clear()

        self._set_state(ConnectionState.DISCONNECTED)
        self._emit("disconnected", {"login": self.current_login})
        if not self._closing:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self.auto_reconnect or self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def reconnect_delay_for(self, attempt: int) -> float:
        """Backoff delay before the given 1-based attempt."""
        return min(self.reconnect_delay * 2 ** (attempt - 1), self.reconnect_delay_max)

    async def _reconnect_loop(self) -> None:
        for attempt in range(1, self.max_reconnect_attempts + 1):
            delay = self.reconnect_delay_for(attempt)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{self.max_reconnect_attempts})")
            await self.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
            except TRANSPORT_ERRORS as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                self._set_state(ConnectionState.DISCONNECTED)
                continue
            if self.is_connected:
                return

        logger.error(f"Giving up after {self.max_reconnect_attempts} reconnect attempts")
        self._emit("connectivityFailed", {"attempts": self.max_reconnect_attempts})
        self._notify("Unable to reach the task board server", level="error")

    async def close(self) -> None:
        """Shut down the transport and stop reconnecting."""
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass

        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Error while closing transport: {e}")
        if self._reader is not None:
            try:
                await asyncio.wait_for(self._reader, timeout=self.request_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._reader.cancel()
        self._on_transport_lost(transport)
        self._set_state(ConnectionState.DISCONNECTED)

    # Requests

    def _gate(self, event: str) -> Optional[Dict[str, Any]]:
        """Failure ack for a request that must not be sent, else None."""
        if not self.is_connected:
            return ConnectionLost("Not connected to the server").to_ack()
        if event in protocol.MUTATING_EVENTS and not self.is_authenticated:
            return Unauthenticated("Log in first").to_ack()
        return None

    async def request(self, event: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send one request and wait for its ack.

        Never raises for transport or server failures; they come back as
        ``{success: false, error, code}``.
        """
        if event in protocol.AUTH_EVENTS and not self.is_connected:
            try:
                await asyncio.wait_for(self._connected.wait(), timeout=self.request_timeout)
            except asyncio.TimeoutError:
                return failure(f"Request '{event}' timed out waiting for a connection", TIMEOUT_CODE)
        blocked = self._gate(event)
        if blocked is not None:
            return blocked
        return await self._send_request(event, data or {})

    async def _send_request(self, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        transport = self._transport
        if transport is None:
            return ConnectionLost("Not connected to the server").to_ack()

        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await transport.send(protocol.encode(event, data, ack_id))
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request '{event}' timed out after {self.request_timeout}s")
            return failure(f"Request '{event}' timed out", TIMEOUT_CODE)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Request '{event}' failed: {e}")
            return ConnectionLost(str(e) or "Connection lost").to_ack()
        finally:
            self._pending.pop(ack_id, None)

    # Authentication

    async def _authenticate(self, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ack = await self.request(event, data)
        if ack.get("success"):
            await self._on_authenticated(ack["user"])
        return ack

    async def _on_authenticated(self, user: Dict[str, Any]) -> None:
        if self.current_login != user.get("login"):
            self.engine.clear()
        self.user = user
        self._set_state(ConnectionState.AUTHENTICATED)
        logger.info(f"Authenticated as '{user['login']}'")
        self._emit("authenticated", user)

        if self.cache:
            self.cache.save_identity(user)
            cached = self.cache.load(user["login"])
            if cached and self.engine.load_snapshot(cached):
                self._emit_view()
        await self.refresh()

    async def register(self, login: str, credential: str) -> Dict[str, Any]:
        return await self._authenticate(protocol.REGISTER, {"login": login, "credential": credential})

    async def login(self, login: str, credential: str) -> Dict[str, Any]:
        """Log in with a login and credential."""
        return await self._authenticate(protocol.LOGIN, {"login": login, "credential": credential})

    async def restore_session(self, login: str) -> Dict[str, Any]:
        return await self._authenticate(protocol.RESTORE_SESSION, {"login": login})

    async def logout(self) -> Dict[str, Any]:
        """End the session, clearing the cached identity and the view."""
        ack = await self.request(protocol.LOGOUT) if self.is_connected else {"success": True}
        if self.cache:
            if self.current_login:
                self.cache.clear(self.current_login)
            self.cache.clear_identity()
        self.user = None
        self.engine.clear()
        if self.is_connected:
            self._set_state(ConnectionState.CONNECTED)
        self._emit_view()
        return ack

    # Reads

    async def get_profile(self, login: Optional[str] = None) -> Dict[str, Any]:
        return await self.request(protocol.GET_PROFILE, {"login": login or self.current_login or ""})

    async def ping(self) -> Dict[str, Any]:
        return await self.request(protocol.PING)

    async def refresh(self) -> Dict[str, Any]:
        """Replace the view with the authoritative task set of the current user."""
        ack = await self.get_profile()
        if ack.get("success"):
            self.engine.replace_all(ack["profile"].get("tasks", []))
            self._emit_view()
            self._persist()
        else:
            logger.warning(f"Refresh failed: {ack.get('code')}: {ack.get('error')}")
        return ack

    def _persist(self) -> None:
        if not self.cache or not self.current_login:
            return
        try:
            self.cache.save(self.current_login, self.engine.snapshot())
        except OSError as e:
            logger.warning(f"Could not save snapshot: {e}")

    # Mutations

    async def _mutate(self, event: str, data: Dict[str, Any],
                      optimistic: Optional[Callable[[str], Any]] = None) -> Dict[str, Any]:
        blocked = self._gate(event)
        if blocked is not None:
            return blocked

        correlation_id = protocol.new_correlation_id()
        if optimistic is not None and optimistic(correlation_id):
            self._emit_view()
        else:
            self.engine.track(correlation_id)

        ack = await self._send_request(event, {**data, "correlationId": correlation_id})
        if ack.get("success"):
            if self.engine.confirm(ack):
                self._emit_view()
            self._persist()
            self._notify(self._describe_own(event, ack), correlationId=correlation_id, origin="self")
        else:
            if self.engine.rollback(correlation_id):
                self._emit_view()
            self._notify(
                f"{event} failed: {ack.get('error', 'unknown error')}",
                level="error",
                code=ack.get("code"),
                correlationId=correlation_id,
                origin="self",
            )
        return ack

    async def create_task(self, title: str, description: str = "") -> Dict[str, Any]:
        return await self._mutate(
            protocol.CREATE_TASK,
            {"title": title, "description": description},
            lambda cid: self.engine.optimistic_create(cid, title.strip(), description, self.current_login),
        )

    async def share_task(self, task_id: int, recipient_logins: List[str]) -> Dict[str, Any]:
        return await self._mutate(
            protocol.SHARE_TASK,
            {"taskId": task_id, "recipientLogins": list(recipient_logins)},
        )

    async def complete_task(self, task_id: int) -> Dict[str, Any]:
        return await self._mutate(
            protocol.COMPLETE_TASK,
            {"taskId": task_id},
            lambda cid: self.engine.optimistic_complete(cid, task_id, self.current_login),
        )

    async def delete_task(self, task_id: int) -> Dict[str, Any]:
        return await self._mutate(
            protocol.DELETE_TASK,
            {"taskId": task_id},
            lambda cid: self.engine.optimistic_delete(cid, task_id),
        )

    # Fan-out

    def _apply_sync(self, payload: Dict[str, Any]) -> None:
        correlation_id = payload.get("correlationId")
        duplicate = self.engine.seen(correlation_id)
        if self.engine.confirm(payload):
            self._emit_view()
            self._persist()
        if duplicate or self.engine.is_own(correlation_id):
            return
        self._notify(self._describe_remote(payload), correlationId=correlation_id, origin="remote")

    @staticmethod
    def _title(payload: Dict[str, Any]) -> str:
        task = payload.get("task") or {}
        return task.get("title") or f"#{payload.get('taskId')}"

    def _describe_own(self, event: str, ack: Dict[str, Any]) -> str:
        title = self._title(ack)
        if event == protocol.CREATE_TASK:
            return f"Task '{title}' created"
        if event == protocol.SHARE_TASK:
            shared = ack.get("sharedCount", 0)
            if not shared:
                return f"No new participants for '{title}'"
            return f"Shared '{title}' with {', '.join(ack.get('sharedWith', []))}"
        if event == protocol.COMPLETE_TASK:
            return f"'{title}' is {ack.get('progress', 0)}% complete"
        return "Task deleted"

    def _describe_remote(self, payload: Dict[str, Any]) -> str:
        actor = payload.get("actorLogin") or "Someone"
        title = self._title(payload)
        kind = payload.get("type")
        if kind == protocol.SYNC_CREATED:
            return f"{actor} created '{title}'"
        if kind == protocol.SYNC_UPDATED:
            return f"{actor} shared '{title}'"
        if kind == protocol.SYNC_PROGRESS:
            return f"{actor} completed their part of '{title}' ({payload.get('progress', 0)}%)"
        return f"{actor} deleted task {title}"
