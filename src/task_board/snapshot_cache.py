"""
Client-local snapshot cache.

Keeps one JSON snapshot of the task view per login, plus the last
authenticated identity, so a client can render immediately and restore its
session after a short network gap. Snapshots are only ever used to
pre-populate the view; the next authoritative set always replaces them.
"""

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import DEFAULT_CACHE_DIR, SNAPSHOT_MAX_AGE_SECONDS

logger = logging.getLogger(__name__)


class SnapshotCache:
    """
    File-backed cache with a staleness ceiling.

    Args:
        directory: Where snapshot and identity files live
        max_age_seconds: Snapshots older than this are discarded on load
        clock: Time source returning epoch seconds
    """

    IDENTITY_FILE = "identity.json"

    def __init__(self, directory: Optional[str] = None, max_age_seconds: float = SNAPSHOT_MAX_AGE_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.directory = Path(directory or DEFAULT_CACHE_DIR)
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self.directory.mkdir(parents=True, exist_ok=True)

    def _snapshot_path(self, login: str) -> Path:
        # Hashed so distinct logins never share a file
        digest = hashlib.sha256(login.encode("utf-8")).hexdigest()
        return self.directory / f"snapshot_{digest}.json"

    def _write(self, path: Path, content: Dict[str, Any]) -> None:
        # Write-then-rename so a crash never leaves a half-written file
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(content), encoding="utf-8")
        tmp_path.replace(path)

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            content = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding unreadable cache file {path.name}: {e}")
            path.unlink(missing_ok=True)
            return None
        return content if isinstance(content, dict) else None

    def save(self, login: str, tasks: List[Dict[str, Any]]) -> None:
        """Persist the current task view for a login."""
        self._write(self._snapshot_path(login), {
            "login": login,
            "savedAt": self.clock(),
            "tasks": tasks,
        })

    def load(self, login: str) -> Optional[List[Dict[str, Any]]]:
        """
        Return the cached task list, or None when absent, unreadable or stale.

        A stale snapshot is deleted so it cannot be picked up later.
        """
        path = self._snapshot_path(login)
        content = self._read(path)
        if content is None:
            return None
        saved_at = content.get("savedAt")
        tasks = content.get("tasks")
        if not isinstance(saved_at, (int, float)) or not isinstance(tasks, list):
            path.unlink(missing_ok=True)
            return None
        age = self.clock() - saved_at
        if age > self.max_age_seconds:
            logger.info(f"Snapshot for '{login}' is {age:.0f}s old; discarding")
            path.unlink(missing_ok=True)
            return None
        return tasks

    def clear(self, login: str) -> None:
        self._snapshot_path(login).unlink(missing_ok=True)

    def save_identity(self, user: Dict[str, Any]) -> None:
        """Remember the authenticated user for automatic session restore."""
        self._write(self.directory / self.IDENTITY_FILE, {"user": user, "savedAt": self.clock()})

    def load_identity(self) -> Optional[Dict[str, Any]]:
        content = self._read(self.directory / self.IDENTITY_FILE)
        if not content:
            return None
        user = content.get("user")
        if not isinstance(user, dict) or not user.get("login"):
            return None
        return user

    def clear_identity(self) -> None:
        (self.directory / self.IDENTITY_FILE).unlink(missing_ok=True)
