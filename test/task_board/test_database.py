"""
Test suite for BoardDatabase with transaction and concurrency checks.

Tests cover:
- Schema creation and WAL configuration
- User creation and credential verification
- Task creation with the creator's participation row
- Sharing, completion counters and deletion inside single transactions
- Serialized completion under concurrent access
"""

import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.database import BoardDatabase
from task_board.errors import DuplicateIdentity, NotFound, PermissionDenied, ValidationError


def _user(database, login):
    return database.create_user(login, "secret")


class TestBoardDatabaseInitialization:
    """Test database initialization and schema creation."""

    def test_wal_mode_enabled(self, database):
        cursor = database._connection.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].upper() == "WAL"

    def test_schema_creation(self, database):
        cursor = database._connection.cursor()
        cursor.execute("""
            SELECT name FROM sqlite_master
            WHERE type='table' AND name IN ('users', 'tasks', 'participations')
            ORDER BY name
        """)
        assert [row[0] for row in cursor.fetchall()] == ["participations", "tasks", "users"]

    def test_reopen_keeps_data(self, db_path):
        with BoardDatabase(db_path) as db:
            _user(db, "alice")
        with BoardDatabase(db_path) as db:
            assert db.get_user_by_login("alice") is not None
            assert db.count_users() == 1

    def test_ping(self, database):
        assert database.ping() is True


class TestUsers:
    """User records and credential checks."""

    def test_create_user(self, database):
        user = _user(database, "alice")
        assert user["login"] == "alice"
        assert user["completed_count"] == 0

    def test_duplicate_login_rejected(self, database):
        _user(database, "alice")
        with pytest.raises(DuplicateIdentity):
            _user(database, "alice")
        assert database.count_users() == 1

    def test_verify_credential(self, database):
        _user(database, "alice")
        assert database.verify_credential("alice", "secret")["login"] == "alice"
        assert database.verify_credential("alice", "wrong") is None
        assert database.verify_credential("nobody", "secret") is None

    def test_credential_is_not_stored_in_plain_text(self, database):
        _user(database, "alice")
        cursor = database._connection.cursor()
        cursor.execute("SELECT credential_hash FROM users WHERE login = 'alice'")
        assert cursor.fetchone()[0] != "secret"


class TestTaskCreation:
    """Task rows and the creator participation written together."""

    def test_creator_is_first_participant(self, database):
        alice = _user(database, "alice")
        task = database.create_task(alice["id"], "Buy milk", "2 liters")

        assert task["title"] == "Buy milk"
        assert task["status"] == "todo"
        assert task["progress"] == 0
        assert task["created_by"] == "alice"
        assert task["version"] == 1
        assert [p["login"] for p in task["participants"]] == ["alice"]

    def test_list_tasks_newest_first(self, database):
        alice = _user(database, "alice")
        first = database.create_task(alice["id"], "First")
        second = database.create_task(alice["id"], "Second")
        listed = database.list_tasks_for_user(alice["id"])
        assert [t["id"] for t in listed] == [second["id"], first["id"]]

    def test_get_missing_task(self, database):
        assert database.get_task(999) is None


class TestSharing:
    """Participation rows added by share_task."""

    def test_share_skips_unknown_and_existing(self, database):
        alice = _user(database, "alice")
        _user(database, "bob")
        task = database.create_task(alice["id"], "Buy milk")

        result = database.share_task(task["id"], alice["id"], ["bob", "ghost"])
        assert result["shared_count"] == 1
        assert result["shared_with"] == ["bob"]
        assert result["task"]["version"] == 2

        again = database.share_task(task["id"], alice["id"], ["bob"])
        assert again["shared_count"] == 0
        assert again["task"]["version"] == 2

    def test_share_requires_access(self, database):
        alice = _user(database, "alice")
        mallory = _user(database, "mallory")
        task = database.create_task(alice["id"], "Private")
        with pytest.raises(PermissionDenied):
            database.share_task(task["id"], mallory["id"], ["mallory"])

    def test_share_done_task_rejected(self, database):
        alice = _user(database, "alice")
        _user(database, "bob")
        task = database.create_task(alice["id"], "Solo")
        database.complete_task(task["id"], alice["id"])
        with pytest.raises(ValidationError):
            database.share_task(task["id"], alice["id"], ["bob"])

    def test_share_missing_task(self, database):
        alice = _user(database, "alice")
        with pytest.raises(NotFound):
            database.share_task(42, alice["id"], ["bob"])


class TestCompletion:
    """Completion, the done transition and counters."""

    def test_transition_increments_every_participant_once(self, database):
        alice = _user(database, "alice")
        bob = _user(database, "bob")
        task = database.create_task(alice["id"], "Buy milk")
        database.share_task(task["id"], alice["id"], ["bob"])

        first = database.complete_task(task["id"], alice["id"])
        assert first["progress"] == 50
        assert first["transitioned"] is False
        assert database.get_user_by_login("alice")["completed_count"] == 0

        second = database.complete_task(task["id"], bob["id"])
        assert second["progress"] == 100
        assert second["task"]["status"] == "done"
        assert second["transitioned"] is True
        assert database.get_user_by_login("alice")["completed_count"] == 1
        assert database.get_user_by_login("bob")["completed_count"] == 1

    def test_completion_is_idempotent(self, database):
        alice = _user(database, "alice")
        _user(database, "bob")
        task = database.create_task(alice["id"], "Buy milk")
        database.share_task(task["id"], alice["id"], ["bob"])

        first = database.complete_task(task["id"], alice["id"])
        retry = database.complete_task(task["id"], alice["id"])
        assert retry["changed"] is False
        assert retry["progress"] == first["progress"]
        assert retry["task"]["version"] == first["task"]["version"]

    def test_completing_done_task_is_noop(self, database):
        alice = _user(database, "alice")
        bob = _user(database, "bob")
        task = database.create_task(alice["id"], "Solo")
        database.complete_task(task["id"], alice["id"])

        result = database.complete_task(task["id"], bob["id"])
        assert result["changed"] is False
        assert result["task"]["total_participants"] == 1
        assert database.get_user_by_login("alice")["completed_count"] == 1
        assert database.get_user_by_login("bob")["completed_count"] == 0

    def test_auto_enroll_non_participant(self, database):
        alice = _user(database, "alice")
        bob = _user(database, "bob")
        task = database.create_task(alice["id"], "Open task")

        result = database.complete_task(task["id"], bob["id"], auto_enroll=True)
        assert result["task"]["total_participants"] == 2
        assert result["progress"] == 50

    def test_require_participation(self, database):
        alice = _user(database, "alice")
        bob = _user(database, "bob")
        task = database.create_task(alice["id"], "Closed task")

        with pytest.raises(PermissionDenied):
            database.complete_task(task["id"], bob["id"], auto_enroll=False)
        assert database.get_task(task["id"])["total_participants"] == 1

    def test_complete_missing_task(self, database):
        alice = _user(database, "alice")
        with pytest.raises(NotFound):
            database.complete_task(1234, alice["id"])


class TestDeletion:
    """Task deletion with participation cleanup."""

    def test_delete_removes_participations(self, database):
        alice = _user(database, "alice")
        _user(database, "bob")
        task = database.create_task(alice["id"], "Buy milk")
        database.share_task(task["id"], alice["id"], ["bob"])

        result = database.delete_task(task["id"], alice["id"])
        assert result["removed_participants"] == 2
        assert database.get_task(task["id"]) is None
        cursor = database._connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM participations WHERE task_id = ?", (task["id"],))
        assert cursor.fetchone()[0] == 0

    def test_delete_requires_access(self, database):
        alice = _user(database, "alice")
        mallory = _user(database, "mallory")
        task = database.create_task(alice["id"], "Private")
        with pytest.raises(PermissionDenied):
            database.delete_task(task["id"], mallory["id"])
        assert database.get_task(task["id"]) is not None

    def test_delete_missing_task(self, database):
        alice = _user(database, "alice")
        with pytest.raises(NotFound):
            database.delete_task(77, alice["id"])


class TestConcurrency:
    """Concurrent mutations against one store."""

    def test_concurrent_completions_flip_once(self, database):
        """Every participant completing at once increments counters exactly once."""
        users = [_user(database, f"user{i}") for i in range(8)]
        task = database.create_task(users[0]["id"], "Team task")
        database.share_task(task["id"], users[0]["id"], [u["login"] for u in users[1:]])

        with ThreadPoolExecutor(max_workers=len(users)) as executor:
            futures = [executor.submit(database.complete_task, task["id"], u["id"]) for u in users]
            results = [future.result() for future in as_completed(futures)]

        assert sum(1 for r in results if r["transitioned"]) == 1
        assert database.get_task(task["id"])["status"] == "done"
        for user in users:
            assert database.get_user_by_login(user["login"])["completed_count"] == 1

    def test_concurrent_complete_and_delete(self, database):
        """Completion racing deletion either lands first or sees NotFound."""
        alice = _user(database, "alice")
        bob = _user(database, "bob")
        task = database.create_task(alice["id"], "Contested")
        database.share_task(task["id"], alice["id"], ["bob"])

        def complete():
            try:
                return database.complete_task(task["id"], bob["id"])
            except NotFound:
                return "not_found"

        with ThreadPoolExecutor(max_workers=2) as executor:
            completion = executor.submit(complete)
            deletion = executor.submit(database.delete_task, task["id"], alice["id"])
            outcome = completion.result()
            deletion.result()

        assert outcome == "not_found" or outcome["progress"] == 50
        assert database.get_task(task["id"]) is None
        assert database.get_user_by_login("bob")["completed_count"] == 0
