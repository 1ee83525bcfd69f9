"""
Integration tests for the BoardClient lifecycle manager.

A real server stack (store, sessions, dispatcher, router) is reached through
an in-process loopback transport so the state machine, request gating,
reconnection and reconciliation can be driven deterministically.
"""

import asyncio
import os
import sys

import pytest
from websockets.exceptions import InvalidHandshake

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from conftest import make_client, make_recording_sleep, settle, wait_until
from task_board.client import ConnectionState
from task_board.snapshot_cache import SnapshotCache


class EventLog:
    """Collects emitted client events by name."""

    def __init__(self, client, *names):
        self.events = {name: [] for name in names}
        for name in names:
            client.on(name, self.events[name].append)

    def __getitem__(self, name):
        return self.events[name]


async def _registered(server, login, **kwargs):
    client = make_client(server, **kwargs)
    assert await client.connect() is True
    ack = await client.register(login, "secret")
    assert ack["success"], ack
    return client


class TestConnectAndAuthenticate:

    @pytest.mark.asyncio
    async def test_connect_without_identity_requires_credentials(self, loopback_server):
        client = make_client(loopback_server)
        log = EventLog(client, "stateChanged", "credentialsRequired")

        assert await client.connect() is True
        assert client.state == ConnectionState.CONNECTED
        assert [e["state"] for e in log["stateChanged"]] == ["connecting", "connected"]
        assert len(log["credentialsRequired"]) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_register_authenticates(self, loopback_server):
        client = make_client(loopback_server)
        log = EventLog(client, "authenticated")
        await client.connect()

        ack = await client.register("alice", "secret")
        assert ack["success"] is True
        assert client.state == ConnectionState.AUTHENTICATED
        assert client.current_login == "alice"
        assert log["authenticated"][0]["login"] == "alice"
        await client.close()
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_bad_login_stays_connected(self, loopback_server):
        alice = await _registered(loopback_server, "alice")
        await alice.close()

        client = make_client(loopback_server)
        await client.connect()
        ack = await client.login("alice", "wrong")
        assert ack["code"] == "InvalidCredential"
        assert client.state == ConnectionState.CONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_cached_identity_restores_session(self, loopback_server, tmp_path):
        cache_dir = str(tmp_path / "cache")
        first = await _registered(loopback_server, "alice", cache_dir=cache_dir)
        await first.create_task("Buy milk")
        await first.close()

        second = make_client(loopback_server, cache_dir=cache_dir)
        views = EventLog(second, "viewChanged", "authenticated")
        await second.connect()

        assert second.state == ConnectionState.AUTHENTICATED
        assert second.current_login == "alice"
        assert [t["title"] for t in second.tasks()] == ["Buy milk"]
        assert len(views["authenticated"]) == 1
        await second.close()

    @pytest.mark.asyncio
    async def test_rejected_restore_clears_identity(self, loopback_server, tmp_path):
        cache = SnapshotCache(str(tmp_path))
        cache.save_identity({"id": 99, "login": "ghost", "completedCount": 0})

        client = make_client(loopback_server, cache_dir=str(tmp_path))
        log = EventLog(client, "credentialsRequired")
        await client.connect()

        assert client.state == ConnectionState.CONNECTED
        assert log["credentialsRequired"] == [{"login": "ghost"}]
        assert cache.load_identity() is None
        await client.close()

    @pytest.mark.asyncio
    async def test_logout_clears_view_and_identity(self, loopback_server, tmp_path):
        client = await _registered(loopback_server, "alice", cache_dir=str(tmp_path))
        await client.create_task("Buy milk")

        ack = await client.logout()
        assert ack["success"] is True
        assert client.state == ConnectionState.CONNECTED
        assert client.tasks() == []
        assert client.cache.load_identity() is None
        assert loopback_server.board.sessions.count() == 0
        await client.close()


class TestRequestGating:

    @pytest.mark.asyncio
    async def test_mutation_while_unauthenticated_is_not_sent(self, loopback_server):
        client = make_client(loopback_server)
        await client.connect()

        ack = await client.create_task("Buy milk")
        assert ack["code"] == "Unauthenticated"
        assert client.tasks() == []
        assert loopback_server.board.database.count_users() == 0
        await client.close()

    @pytest.mark.asyncio
    async def test_request_while_disconnected(self, loopback_server):
        client = make_client(loopback_server)
        ack = await client.get_profile("alice")
        assert ack["code"] == "ConnectionLost"
        ack = await client.complete_task(1)
        assert ack["code"] == "ConnectionLost"

    @pytest.mark.asyncio
    async def test_auth_request_waits_for_connection_then_times_out(self, loopback_server):
        client = make_client(loopback_server, request_timeout=0.05)
        ack = await client.login("alice", "secret")
        assert ack["code"] == "Timeout"

    @pytest.mark.asyncio
    async def test_request_timeout(self, loopback_server):
        client = await _registered(loopback_server, "alice", request_timeout=0.05)
        loopback_server.hold_requests = True
        ack = await client.ping()
        assert ack == {"success": False, "error": "Request 'ping' timed out", "code": "Timeout"}
        loopback_server.hold_requests = False
        await client.close()


class TestMutationsAndNotifications:

    @pytest.mark.asyncio
    async def test_shared_task_between_two_clients(self, loopback_server):
        alice = await _registered(loopback_server, "alice")
        bob = await _registered(loopback_server, "bob")
        alice_notes = EventLog(alice, "notification")
        bob_notes = EventLog(bob, "notification")

        created = await alice.create_task("Buy milk")
        task_id = created["taskId"]
        await alice.share_task(task_id, ["bob"])
        await settle()

        assert [t["id"] for t in alice.tasks()] == [task_id]
        assert bob.tasks()[0]["totalParticipants"] == 2

        ack = await alice.complete_task(task_id)
        assert ack["progress"] == 50
        ack = await bob.complete_task(task_id)
        assert ack["progress"] == 100
        await settle()

        for client in (alice, bob):
            view = client.tasks()[0]
            assert view["status"] == "done"
            assert view["progress"] == 100

        # Own actions notify once each; fan-out of own actions stays silent
        assert [n["origin"] for n in alice_notes["notification"]] == ["self", "self", "self", "remote"]
        assert [n["origin"] for n in bob_notes["notification"]] == ["remote", "remote", "remote", "self"]
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio
    async def test_optimistic_create_is_visible_before_ack(self, loopback_server):
        client = await _registered(loopback_server, "alice")
        views = EventLog(client, "viewChanged")
        loopback_server.hold_requests = True

        pending = asyncio.create_task(client.create_task("Buy milk"))
        await settle()
        assert views["viewChanged"][0][0]["id"].startswith("local:")

        transport = loopback_server.transports[-1]
        loopback_server.hold_requests = False
        for message in transport.held:
            await loopback_server.board.socket_handler.handle_message(transport.connection_id, message)
        ack = await pending

        assert [t["id"] for t in client.tasks()] == [ack["taskId"]]
        await client.close()

    @pytest.mark.asyncio
    async def test_failed_delete_is_rolled_back(self, loopback_server):
        alice = await _registered(loopback_server, "alice")
        mallory = await _registered(loopback_server, "mallory")
        notes = EventLog(mallory, "notification")
        task_id = (await alice.create_task("Private"))["taskId"]
        await settle()
        assert [t["id"] for t in mallory.tasks()] == [task_id]

        ack = await mallory.delete_task(task_id)
        assert ack["code"] == "PermissionDenied"
        assert [t["id"] for t in mallory.tasks()] == [task_id]
        assert notes["notification"][-1]["level"] == "error"
        await alice.close()
        await mallory.close()

    @pytest.mark.asyncio
    async def test_delete_propagates(self, loopback_server):
        alice = await _registered(loopback_server, "alice")
        bob = await _registered(loopback_server, "bob")
        task_id = (await alice.create_task("Temp"))["taskId"]
        await alice.delete_task(task_id)
        await settle()

        assert alice.tasks() == []
        assert bob.tasks() == []
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(self, loopback_server):
        client = await _registered(loopback_server, "alice")
        received = []

        def broken(_):
            raise RuntimeError("listener bug")

        client.on("notification", broken)
        client.on("notification", received.append)
        await client.create_task("Buy milk")
        assert len(received) == 1

        client.off("notification", received.append)
        await client.create_task("Buy bread")
        assert len(received) == 1
        await client.close()


class TestDisconnectAndReconnect:

    @pytest.mark.asyncio
    async def test_pending_requests_resolve_with_connection_lost(self, loopback_server):
        client = await _registered(loopback_server, "alice", auto_reconnect=False)
        task_id = (await client.create_task("Buy milk"))["taskId"]
        loopback_server.hold_requests = True

        pending = asyncio.create_task(client.complete_task(task_id))
        await settle()
        assert client.tasks()[0]["status"] == "done"

        await loopback_server.drop_all()
        ack = await pending
        assert ack["code"] == "ConnectionLost"
        assert client.state == ConnectionState.DISCONNECTED
        assert client.tasks()[0]["status"] == "todo"
        await client.close()

    @pytest.mark.asyncio
    async def test_reconnect_restores_session_and_view(self, loopback_server, tmp_path):
        delays = []

        async def short_sleep(delay):
            delays.append(delay)
            await asyncio.sleep(0.01)

        alice = await _registered(loopback_server, "alice", cache_dir=str(tmp_path), sleep=short_sleep)
        bob = await _registered(loopback_server, "bob")
        task_id = (await alice.create_task("Buy milk"))["taskId"]
        await alice.share_task(task_id, ["bob"])
        log = EventLog(alice, "disconnected", "authenticated")

        loopback_server.down = True
        await loopback_server.drop_all()
        # Bob's completion lands while Alice is offline
        board = loopback_server.board
        board.service.complete_task(board.sessions.restore("bob"), task_id)
        loopback_server.down = False

        await wait_until(lambda: alice.tasks() and alice.tasks()[0]["progress"] == 50)
        assert alice.state == ConnectionState.AUTHENTICATED
        assert len(log["disconnected"]) == 1
        assert len(log["authenticated"]) == 1
        assert delays[0] == 1.0

        server_view = board.service.get_profile("alice").to_wire()["tasks"]
        assert [(t["id"], t["progress"]) for t in alice.tasks()] == [(t["id"], t["progress"]) for t in server_view]
        await alice.close()
        await bob.close()

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_max_attempts(self, loopback_server):
        delays = []
        client = await _registered(
            loopback_server, "alice",
            max_reconnect_attempts=4,
            sleep=make_recording_sleep(delays),
        )
        log = EventLog(client, "connectivityFailed", "notification")

        loopback_server.down = True
        await loopback_server.drop_all()
        await wait_until(lambda: log["connectivityFailed"])

        assert delays == [1.0, 2.0, 4.0, 5.0]
        assert client.state == ConnectionState.DISCONNECTED
        assert log["connectivityFailed"] == [{"attempts": 4}]
        assert [n["level"] for n in log["notification"]] == ["error"]
        await client.close()

    @pytest.mark.asyncio
    async def test_initial_connect_failure_schedules_reconnect(self, loopback_server):
        delays = []
        loopback_server.down = True
        client = make_client(loopback_server, max_reconnect_attempts=2, sleep=make_recording_sleep(delays))
        log = EventLog(client, "connectivityFailed")

        assert await client.connect() is False
        await wait_until(lambda: log["connectivityFailed"])
        assert loopback_server.connect_attempts == 3
        await client.close()

    def test_backoff_schedule(self, loopback_server):
        client = make_client(loopback_server)
        assert [client.reconnect_delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_rejected_handshake_triggers_reconnect(self, loopback_server):
        rejections = []

        async def flaky_factory(url):
            if len(rejections) < 2:
                rejections.append(url)
                raise InvalidHandshake("server returned HTTP 502")
            return await loopback_server.transport_factory(url)

        delays = []
        client = make_client(loopback_server, sleep=make_recording_sleep(delays))
        client.transport_factory = flaky_factory

        assert await client.connect() is False
        assert client.state == ConnectionState.DISCONNECTED
        await wait_until(lambda: client.is_connected)
        assert delays == [1.0, 2.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_handshake_rejections_end_in_connectivity_failure(self, loopback_server):
        async def rejecting_factory(url):
            raise InvalidHandshake("server returned HTTP 503")

        client = make_client(loopback_server, max_reconnect_attempts=3)
        client.transport_factory = rejecting_factory
        log = EventLog(client, "connectivityFailed")

        assert await client.connect() is False
        await wait_until(lambda: log["connectivityFailed"])
        assert log["connectivityFailed"] == [{"attempts": 3}]
        assert client.state == ConnectionState.DISCONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_open_timeout_is_a_transport_failure(self, loopback_server):
        async def slow_factory(url):
            raise asyncio.TimeoutError()

        client = make_client(loopback_server, auto_reconnect=False)
        client.transport_factory = slow_factory
        assert await client.connect() is False
        assert client.state == ConnectionState.DISCONNECTED
