"""
Task Store with Atomic Completion

Provides SQLite-based persistence for users, shared tasks and per-user
participation records. Every mutation runs inside a single explicit
transaction while holding the connection lock, so a completion and a
concurrent deletion of the same task can never interleave.
"""

import hashlib
import hmac
import logging
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import DuplicateIdentity, NotFound, PermissionDenied, ValidationError
from .progress import STATUS_DONE, compute_progress

logger = logging.getLogger(__name__)


def utc_now_str() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _hash_credential(credential: str, salt: str) -> str:
    # Opaque digest only; credential hardening is out of scope
    return hashlib.sha256(f"{salt}:{credential}".encode("utf-8")).hexdigest()


class BoardDatabase:
    """
    SQLite store for the shared task board.

    Features:
    - WAL mode for concurrent read/write access
    - Single connection guarded by an RLock, shared across threads
    - Explicit BEGIN IMMEDIATE / COMMIT / ROLLBACK per mutation
    - Completion counters updated in the same transaction as the status flip
    """

    def __init__(self, db_path: str):
        """
        Initialize BoardDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file (``:memory:`` is accepted)
        """
        self.db_path = db_path
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        try:
            # Autocommit mode; transactions are opened explicitly
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create users, tasks and participations tables with indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                login TEXT NOT NULL UNIQUE,
                credential_hash TEXT NOT NULL,
                credential_salt TEXT NOT NULL,
                completed_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'todo',
                created_by INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (created_by) REFERENCES users (id),
                CONSTRAINT status_vocabulary CHECK (status IN ('todo', 'done'))
            )
        """)

        # One row per (task, user); the creator's row is written with the task
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS participations (
                task_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                PRIMARY KEY (task_id, user_id),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_participations_user
            ON participations (user_id, task_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_created
            ON tasks (created_at DESC)
        """)

    @contextmanager
    def _transaction(self):
        """Hold the connection lock for one explicit write transaction."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    # User operations

    def create_user(self, login: str, credential: str) -> Dict[str, Any]:
        """
        Register a new user.

        Raises:
            DuplicateIdentity: If the login is already taken
        """
        salt = secrets.token_hex(8)
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO users (login, credential_hash, credential_salt, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (login, _hash_credential(credential, salt), salt, utc_now_str()),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError:
            raise DuplicateIdentity(f"User '{login}' already exists")
        return {"id": user_id, "login": login, "completed_count": 0}

    def verify_credential(self, login: str, credential: str) -> Optional[Dict[str, Any]]:
        """Return the user if login and credential match, otherwise None."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT id, login, completed_count, credential_hash, credential_salt
                FROM users WHERE login = ?
                """,
                (login,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        expected = _hash_credential(credential, row[4])
        if not hmac.compare_digest(expected, row[3]):
            return None
        return {"id": row[0], "login": row[1], "completed_count": row[2]}

    def get_user_by_login(self, login: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT id, login, completed_count FROM users WHERE login = ?",
                (login,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return {"id": row[0], "login": row[1], "completed_count": row[2]}

    def count_users(self) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT COUNT(*) FROM users")
            return cursor.fetchone()[0]

    # Task reads

    def _fetch_participants(self, cursor: sqlite3.Cursor, task_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
        """Load participants for several tasks in one query, keyed by task id."""
        task_ids = list(task_ids)
        participants: Dict[int, List[Dict[str, Any]]] = {task_id: [] for task_id in task_ids}
        if not task_ids:
            return participants
        placeholders = ",".join("?" * len(task_ids))
        cursor.execute(
            f"""
            SELECT p.task_id, p.user_id, u.login, p.completed, p.completed_at
            FROM participations p
            JOIN users u ON u.id = p.user_id
            WHERE p.task_id IN ({placeholders})
            ORDER BY p.task_id, p.rowid
            """,
            task_ids,
        )
        for task_id, user_id, login, completed, completed_at in cursor.fetchall():
            participants[task_id].append({
                "user_id": user_id,
                "login": login,
                "completed": bool(completed),
                "completed_at": completed_at,
            })
        return participants

    def _build_task_view(self, row: tuple, participants: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Assemble a task dict with progress recomputed from participants."""
        result = compute_progress(participants)
        return {
            "id": row[0],
            "title": row[1],
            "description": row[2] or "",
            "status": row[3],
            "created_by": row[4],
            "created_at": row[5],
            "updated_at": row[6],
            "version": row[7],
            "progress": result.progress,
            "total_participants": result.total,
            "completed_participants": result.completed,
            "participants": [
                {"login": p["login"], "completed": p["completed"], "completed_at": p["completed_at"]}
                for p in participants
            ],
        }

    _TASK_COLUMNS = """
        t.id, t.title, t.description, t.status, u.login,
        t.created_at, t.updated_at, t.version
    """

    def _get_task_with_cursor(self, cursor: sqlite3.Cursor, task_id: int) -> Optional[Dict[str, Any]]:
        cursor.execute(
            f"""
            SELECT {self._TASK_COLUMNS}
            FROM tasks t
            LEFT JOIN users u ON u.id = t.created_by
            WHERE t.id = ?
            """,
            (task_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        participants = self._fetch_participants(cursor, [task_id])[task_id]
        return self._build_task_view(row, participants)

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        """Return a task view or None if the task does not exist."""
        with self._connection_lock:
            return self._get_task_with_cursor(self._connection.cursor(), task_id)

    def list_tasks_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        """Return every task the user participates in, newest first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"""
                SELECT {self._TASK_COLUMNS}
                FROM tasks t
                JOIN participations p ON p.task_id = t.id AND p.user_id = ?
                LEFT JOIN users u ON u.id = t.created_by
                ORDER BY t.created_at DESC, t.id DESC
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
            participants = self._fetch_participants(cursor, [row[0] for row in rows])
        return [self._build_task_view(row, participants[row[0]]) for row in rows]

    # Task mutations

    def create_task(self, creator_id: int, title: str, description: str = "") -> Dict[str, Any]:
        """
        Create a task together with the creator's participation row.

        Args:
            creator_id: User id of the creator
            title: Non-empty task title
            description: Optional description

        Returns:
            Task view of the new task (progress 0, status todo)
        """
        now = utc_now_str()
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO tasks (title, description, status, created_by, created_at, updated_at)
                VALUES (?, ?, 'todo', ?, ?, ?)
                """,
                (title, description or "", creator_id, now, now),
            )
            task_id = cursor.lastrowid
            cursor.execute(
                "INSERT INTO participations (task_id, user_id, completed) VALUES (?, ?, 0)",
                (task_id, creator_id),
            )
            task = self._get_task_with_cursor(cursor, task_id)
        logger.info(f"Task {task_id} created by user {creator_id}")
        return task

    def _require_task_status(self, cursor: sqlite3.Cursor, task_id: int) -> tuple:
        cursor.execute("SELECT created_by, status FROM tasks WHERE id = ?", (task_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFound(f"Task {task_id} not found")
        return row

    def _is_participant(self, cursor: sqlite3.Cursor, task_id: int, user_id: int) -> bool:
        cursor.execute(
            "SELECT 1 FROM participations WHERE task_id = ? AND user_id = ?",
            (task_id, user_id),
        )
        return cursor.fetchone() is not None

    def share_task(self, task_id: int, actor_id: int, recipient_logins: List[str]) -> Dict[str, Any]:
        """
        Add participation rows for recipients that exist and are not yet enrolled.

        Unknown logins and existing participants are skipped silently.

        Raises:
            NotFound: Task does not exist
            PermissionDenied: Actor is neither creator nor participant
            ValidationError: Task is already done
        """
        with self._transaction() as cursor:
            created_by, status = self._require_task_status(cursor, task_id)
            if created_by != actor_id and not self._is_participant(cursor, task_id, actor_id):
                raise PermissionDenied(f"No access to task {task_id}")
            if status == STATUS_DONE:
                raise ValidationError(f"Task {task_id} is already done")

            shared_with: List[str] = []
            for login in recipient_logins:
                cursor.execute("SELECT id FROM users WHERE login = ?", (login,))
                row = cursor.fetchone()
                if not row:
                    logger.info(f"Share of task {task_id} skipped unknown login '{login}'")
                    continue
                cursor.execute(
                    """
                    INSERT INTO participations (task_id, user_id, completed)
                    VALUES (?, ?, 0)
                    ON CONFLICT (task_id, user_id) DO NOTHING
                    """,
                    (task_id, row[0]),
                )
                if cursor.rowcount > 0:
                    shared_with.append(login)

            if shared_with:
                cursor.execute(
                    "UPDATE tasks SET updated_at = ?, version = version + 1 WHERE id = ?",
                    (utc_now_str(), task_id),
                )
            task = self._get_task_with_cursor(cursor, task_id)

        return {"shared_count": len(shared_with), "shared_with": shared_with, "task": task}

    def complete_task(self, task_id: int, user_id: int, auto_enroll: bool = True) -> Dict[str, Any]:
        """
        Mark the user's participation completed and recompute progress.

        Idempotent: completing twice, or completing a task that is already
        done, changes nothing. When progress reaches 100 the task flips to
        done and every participant's completed_count is incremented exactly
        once, all inside this transaction.

        Args:
            task_id: Task to complete
            user_id: Completing user
            auto_enroll: Create a participation row for a non-participant
                instead of rejecting the call

        Returns:
            Dict with task view, progress, ``transitioned`` (became done in
            this call) and ``changed`` (any row was written)

        Raises:
            NotFound: Task does not exist
            PermissionDenied: Non-participant while auto_enroll is off
        """
        now = utc_now_str()
        with self._transaction() as cursor:
            _, status = self._require_task_status(cursor, task_id)

            changed = False
            transitioned = False
            if status != STATUS_DONE:
                if not self._is_participant(cursor, task_id, user_id):
                    if not auto_enroll:
                        raise PermissionDenied(f"User is not a participant of task {task_id}")
                    cursor.execute(
                        "INSERT INTO participations (task_id, user_id, completed) VALUES (?, ?, 0)",
                        (task_id, user_id),
                    )
                    changed = True

                cursor.execute(
                    """
                    UPDATE participations SET completed = 1, completed_at = ?
                    WHERE task_id = ? AND user_id = ? AND completed = 0
                    """,
                    (now, task_id, user_id),
                )
                changed = changed or cursor.rowcount > 0

                cursor.execute(
                    "SELECT completed FROM participations WHERE task_id = ?",
                    (task_id,),
                )
                result = compute_progress({"completed": bool(row[0])} for row in cursor.fetchall())

                if result.is_done:
                    cursor.execute(
                        """
                        UPDATE tasks SET status = 'done', updated_at = ?, version = version + 1
                        WHERE id = ? AND status = 'todo'
                        """,
                        (now, task_id),
                    )
                    transitioned = cursor.rowcount == 1
                    if transitioned:
                        cursor.execute(
                            """
                            UPDATE users SET completed_count = completed_count + 1
                            WHERE id IN (SELECT user_id FROM participations WHERE task_id = ?)
                            """,
                            (task_id,),
                        )
                elif changed:
                    cursor.execute(
                        "UPDATE tasks SET updated_at = ?, version = version + 1 WHERE id = ?",
                        (now, task_id),
                    )

            task = self._get_task_with_cursor(cursor, task_id)

        if transitioned:
            logger.info(f"Task {task_id} done; completion counters incremented")
        return {
            "task": task,
            "progress": task["progress"],
            "transitioned": transitioned,
            "changed": changed or transitioned,
        }

    def delete_task(self, task_id: int, user_id: int) -> Dict[str, Any]:
        """
        Delete a task and its participation rows.

        Raises:
            NotFound: Task does not exist
            PermissionDenied: User is neither creator nor participant
        """
        with self._transaction() as cursor:
            created_by, _ = self._require_task_status(cursor, task_id)
            if created_by != user_id and not self._is_participant(cursor, task_id, user_id):
                raise PermissionDenied(f"No access to task {task_id}")
            cursor.execute("DELETE FROM participations WHERE task_id = ?", (task_id,))
            removed_participants = cursor.rowcount
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Task {task_id} not found")

        logger.info(f"Task {task_id} deleted by user {user_id}")
        return {"task_id": task_id, "removed_participants": removed_participants}

    def ping(self) -> bool:
        """Cheap connectivity check used by the health endpoint."""
        with self._connection_lock:
            self._connection.execute("SELECT 1").fetchone()
        return True

    def close(self):
        """Close the database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
