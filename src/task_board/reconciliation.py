"""
Client Reconciliation Engine

Merges three sources into one task view per connection:

- optimistic edits applied the moment the user acts,
- server confirmations (direct acks and ``syncUpdate`` fan-out), which may
  arrive in either order, late, or twice,
- a local snapshot used only until the authoritative set arrives.

Each task moves ``unknown -> optimistic -> confirmed``. Confirmations merge
field by field (present server fields win, absent ones keep the previous
value), are idempotent per correlation id, ignore versions older than the
one already known, and cannot resurrect a deleted task. Rolling back a
failed edit restores the latest server state, not the state the edit saw.
"""

import copy
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import CORRELATION_MEMORY
from .database import utc_now_str
from .progress import STATUS_DONE, STATUS_TODO, compute_progress
from .protocol import SYNC_CREATED, SYNC_DELETED

logger = logging.getLogger(__name__)

TaskKey = Union[int, str]

LOCAL_ID_PREFIX = "local:"

# Wire name -> accepted spellings, covering the profile, fan-out, ack and
# cache shapes as well as the snake_case rows older servers sent
_FIELD_ALIASES = {
    "id": ("id", "taskId", "task_id"),
    "title": ("title",),
    "description": ("description",),
    "status": ("status",),
    "createdBy": ("createdBy", "created_by_login"),
    "createdAt": ("createdAt", "created_at"),
    "updatedAt": ("updatedAt", "updated_at"),
    "version": ("version",),
    "progress": ("progress",),
    "totalParticipants": ("totalParticipants", "total_participants", "total_users"),
    "completedParticipants": ("completedParticipants", "completed_participants", "completed_users"),
    "participants": ("participants",),
}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _normalize_participant(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict) or not raw.get("login"):
        return None
    participant = {"login": str(raw["login"]), "completed": bool(raw.get("completed"))}
    completed_at = raw.get("completedAt", raw.get("completed_at"))
    if completed_at is not None:
        participant["completedAt"] = completed_at
    return participant


def normalize_task(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Convert any incoming task shape to the canonical camelCase dict.

    Applied at every ingestion boundary (profile fetch, fan-out, ack, cache)
    before merging. Fields that are absent or null are left out so a merge
    never overwrites a known value with nothing.
    """
    if not raw:
        return {}
    task: Dict[str, Any] = {}
    for name, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if raw.get(alias) is not None:
                task[name] = raw[alias]
                break

    if "id" in task:
        task_id = task["id"]
        if not (isinstance(task_id, str) and task_id.startswith(LOCAL_ID_PREFIX)):
            task_id = _as_int(task_id)
            if task_id is None:
                del task["id"]
            else:
                task["id"] = task_id

    if "status" in task:
        task["status"] = STATUS_DONE if str(task["status"]).lower() == STATUS_DONE else STATUS_TODO

    for name in ("progress", "version", "totalParticipants", "completedParticipants"):
        if name in task:
            value = _as_int(task[name])
            if value is None:
                del task[name]
            else:
                task[name] = value
    if "progress" in task:
        task["progress"] = max(0, min(100, task["progress"]))

    if "participants" in task:
        if isinstance(task["participants"], list):
            task["participants"] = [
                p for p in (_normalize_participant(raw_p) for raw_p in task["participants"]) if p
            ]
        else:
            del task["participants"]

    # A done task is complete by definition
    if task.get("status") == STATUS_DONE and "progress" not in task:
        task["progress"] = 100
    return task


class SyncState(str, Enum):
    UNKNOWN = "unknown"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"


@dataclass
class TaskEntry:
    """One task in the local view."""
    key: TaskKey
    fields: Dict[str, Any]
    state: SyncState = SyncState.UNKNOWN
    hidden: bool = False


@dataclass
class PendingMutation:
    """
    An optimistic edit awaiting its server confirmation.

    ``previous`` is the server-known base the edit was applied on; server
    updates that land while the edit is in flight are folded into it so a
    rollback only undoes the local change.
    """
    correlation_id: str
    kind: str
    key: TaskKey
    previous: Optional[TaskEntry] = None


class ReconciliationEngine:
    """
    Single authoritative task view for one client connection.

    Not thread-safe; it is meant to be driven from one asyncio loop where
    socket callbacks and user actions interleave but never run in parallel.
    """

    def __init__(self, memory: int = CORRELATION_MEMORY):
        self._entries: Dict[TaskKey, TaskEntry] = {}
        self._pending: Dict[str, PendingMutation] = {}
        self._applied: "OrderedDict[str, None]" = OrderedDict()
        self._own: "OrderedDict[str, None]" = OrderedDict()
        self._tombstones: set = set()
        self._memory = memory

    # Queries

    def tasks(self) -> List[Dict[str, Any]]:
        """Visible tasks, newest first."""
        visible = [copy.deepcopy(entry.fields) for entry in self._entries.values() if not entry.hidden]
        visible.sort(key=lambda t: (str(t.get("createdAt", "")), str(t.get("id", ""))), reverse=True)
        return visible

    def get(self, key: TaskKey) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None or entry.hidden:
            return None
        return copy.deepcopy(entry.fields)

    def state_of(self, key: TaskKey) -> SyncState:
        entry = self._entries.get(key)
        return entry.state if entry else SyncState.UNKNOWN

    def is_own(self, correlation_id: Optional[str]) -> bool:
        """True if this client issued the mutation with that correlation id."""
        return bool(correlation_id) and correlation_id in self._own

    def seen(self, correlation_id: Optional[str]) -> bool:
        """True if a confirmation with that correlation id was already applied."""
        return bool(correlation_id) and correlation_id in self._applied

    def pending_count(self) -> int:
        return len(self._pending)

    def snapshot(self) -> List[Dict[str, Any]]:
        """
        Server-known state suitable for the local cache.

        Optimistic guesses are replaced by the value they were derived from;
        unconfirmed creations are left out.
        """
        previous_by_key = {
            pending.key: pending.previous for pending in self._pending.values() if pending.previous
        }
        result = []
        for key, entry in self._entries.items():
            if isinstance(key, str):
                continue
            source = entry
            if entry.state == SyncState.OPTIMISTIC and key in previous_by_key:
                source = previous_by_key[key]
            if not source.hidden:
                result.append(copy.deepcopy(source.fields))
        return result

    # Bookkeeping

    def _bounded_add(self, store: "OrderedDict[str, None]", correlation_id: str) -> None:
        store[correlation_id] = None
        store.move_to_end(correlation_id)
        while len(store) > self._memory:
            store.popitem(last=False)

    def track(self, correlation_id: str) -> None:
        """Record a correlation id as issued by this client."""
        self._bounded_add(self._own, correlation_id)

    def _begin(self, correlation_id: str, kind: str, key: TaskKey) -> None:
        entry = self._entries.get(key)
        self.track(correlation_id)
        self._pending[correlation_id] = PendingMutation(
            correlation_id=correlation_id,
            kind=kind,
            key=key,
            previous=copy.deepcopy(entry) if entry else None,
        )

    # Optimistic updates

    def optimistic_create(self, correlation_id: str, title: str, description: str = "",
                          login: Optional[str] = None) -> str:
        """Show a new task under a temporary id until the server assigns one."""
        key = f"{LOCAL_ID_PREFIX}{correlation_id}"
        now = utc_now_str()
        participants = [{"login": login, "completed": False}] if login else []
        self._begin(correlation_id, SYNC_CREATED, key)
        self._entries[key] = TaskEntry(
            key=key,
            fields={
                "id": key,
                "title": title,
                "description": description or "",
                "status": STATUS_TODO,
                "createdBy": login,
                "createdAt": now,
                "updatedAt": now,
                "progress": 0,
                "totalParticipants": len(participants),
                "completedParticipants": 0,
                "participants": participants,
            },
            state=SyncState.OPTIMISTIC,
        )
        return key

    def optimistic_complete(self, correlation_id: str, task_id: int, login: str) -> bool:
        """
        Mark the user's part done and guess the resulting progress.

        Returns:
            False if the task is not in the view (nothing to guess from)
        """
        entry = self._entries.get(task_id)
        if entry is None or entry.hidden:
            self.track(correlation_id)
            return False
        self._begin(correlation_id, "complete", task_id)

        fields = entry.fields
        if fields.get("status") != STATUS_DONE:
            participants = [dict(p) for p in fields.get("participants", [])]
            if participants or "totalParticipants" not in fields:
                for participant in participants:
                    if participant["login"] == login:
                        participant["completed"] = True
                        break
                else:
                    # Server auto-enrolls a completing non-participant
                    participants.append({"login": login, "completed": True})
                result = compute_progress(participants)
                fields["participants"] = participants
            else:
                total = fields["totalParticipants"]
                completed = min(total, fields.get("completedParticipants", 0) + 1)
                result = compute_progress([{"completed": i < completed} for i in range(total)])
            fields["progress"] = result.progress
            fields["status"] = result.status
            fields["totalParticipants"] = result.total
            fields["completedParticipants"] = result.completed
        entry.state = SyncState.OPTIMISTIC
        return True

    def optimistic_delete(self, correlation_id: str, task_id: int) -> bool:
        """Hide a task until the deletion is confirmed or rolled back."""
        entry = self._entries.get(task_id)
        if entry is None:
            self.track(correlation_id)
            return False
        self._begin(correlation_id, SYNC_DELETED, task_id)
        entry.hidden = True
        entry.state = SyncState.OPTIMISTIC
        return True

    def rollback(self, correlation_id: str) -> bool:
        """
        Undo an optimistic edit whose request failed.

        Returns:
            True if the view changed
        """
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return False
        entry = self._entries.get(pending.key)
        if entry is None:
            return False
        if pending.previous is None:
            del self._entries[pending.key]
            return True
        restored = copy.deepcopy(pending.previous)
        if self._has_pending(pending.key):
            # Another edit on the same task is still in flight
            restored.state = SyncState.OPTIMISTIC
            restored.hidden = restored.hidden or self._has_pending_delete(pending.key)
        changed = restored.fields != entry.fields or restored.hidden != entry.hidden
        self._entries[pending.key] = restored
        return changed

    # Server-driven updates

    def _has_pending_delete(self, key: TaskKey) -> bool:
        return any(p.key == key and p.kind == SYNC_DELETED for p in self._pending.values())

    def _has_pending(self, key: TaskKey) -> bool:
        return any(p.key == key for p in self._pending.values())

    def _merge(self, task_id: int, incoming: Dict[str, Any]) -> bool:
        entry = self._entries.get(task_id)
        if entry is None:
            if "title" not in incoming:
                # A bare progress update for a task we never saw
                return False
            incoming["id"] = task_id
            self._entries[task_id] = TaskEntry(key=task_id, fields=incoming, state=SyncState.CONFIRMED)
            return True

        known_version = entry.fields.get("version")
        new_version = incoming.get("version")
        if known_version is not None and new_version is not None and new_version < known_version:
            logger.debug(f"Ignoring stale update for task {task_id}: v{new_version} < v{known_version}")
            return False

        for pending in self._pending.values():
            if pending.key == task_id and pending.previous is not None:
                base = pending.previous
                base.fields = {**base.fields, **incoming, "id": task_id}
                base.state = SyncState.CONFIRMED

        merged = {**entry.fields, **incoming, "id": task_id}
        hidden = self._has_pending_delete(task_id)
        state = SyncState.OPTIMISTIC if self._has_pending(task_id) else SyncState.CONFIRMED
        changed = merged != entry.fields or hidden != entry.hidden
        entry.fields = merged
        entry.hidden = hidden
        entry.state = state
        return changed

    def confirm(self, payload: Dict[str, Any]) -> bool:
        """
        Apply a direct ack or a ``syncUpdate`` payload.

        Returns:
            True if the visible view changed
        """
        correlation_id = payload.get("correlationId")
        if self.seen(correlation_id):
            self._pending.pop(correlation_id, None)
            return False

        kind = payload.get("type")
        task = normalize_task(payload.get("task"))
        task_id = _as_int(payload.get("taskId"))
        if task_id is None:
            task_id = task.get("id") if isinstance(task.get("id"), int) else None
        pending = self._pending.pop(correlation_id, None) if correlation_id else None

        changed = False
        if pending is not None and pending.kind == SYNC_CREATED:
            changed = self._entries.pop(pending.key, None) is not None

        if task_id is None:
            logger.debug(f"Ignoring {kind} confirmation without a task id")
        elif kind == SYNC_DELETED:
            self._tombstones.add(task_id)
            changed = self._entries.pop(task_id, None) is not None or changed
        elif task_id in self._tombstones:
            logger.debug(f"Ignoring {kind} for deleted task {task_id}")
        else:
            if payload.get("progress") is not None and "progress" not in task:
                task["progress"] = _as_int(payload["progress"])
            changed = self._merge(task_id, task) or changed

        if correlation_id:
            self._bounded_add(self._applied, correlation_id)
        return changed

    def load_snapshot(self, tasks: Iterable[Dict[str, Any]]) -> int:
        """
        Pre-populate the view from the local cache.

        Only fills tasks the view does not know yet; cached data never
        overrides an optimistic or confirmed entry.

        Returns:
            Number of tasks added
        """
        added = 0
        for raw in tasks or []:
            task = normalize_task(raw)
            task_id = task.get("id")
            if not isinstance(task_id, int) or task_id in self._entries or task_id in self._tombstones:
                continue
            self._entries[task_id] = TaskEntry(key=task_id, fields=task, state=SyncState.UNKNOWN)
            added += 1
        return added

    def replace_all(self, tasks: Iterable[Dict[str, Any]]) -> None:
        """
        Install the authoritative task set.

        Everything not in the set is dropped, including cached entries,
        except creations still waiting for their ack. Tasks with a pending
        edit keep their optimistic marker until that edit resolves.
        """
        entries: Dict[TaskKey, TaskEntry] = {}
        for raw in tasks or []:
            task = normalize_task(raw)
            task_id = task.get("id")
            if not isinstance(task_id, int):
                continue
            existing = self._entries.get(task_id)
            if (existing is not None
                    and existing.fields.get("version", 0) > task.get("version", 0)):
                # A fan-out newer than this read already landed
                entries[task_id] = existing
                continue
            has_pending = self._has_pending(task_id)
            for pending in self._pending.values():
                if pending.key == task_id and pending.previous is not None:
                    pending.previous.fields = copy.deepcopy(task)
                    pending.previous.state = SyncState.CONFIRMED
            entries[task_id] = TaskEntry(
                key=task_id,
                fields=task,
                state=SyncState.OPTIMISTIC if has_pending else SyncState.CONFIRMED,
                hidden=self._has_pending_delete(task_id),
            )
        for pending in self._pending.values():
            if pending.kind == SYNC_CREATED and pending.key in self._entries:
                entries[pending.key] = self._entries[pending.key]
        self._entries = entries

    def clear(self) -> None:
        """Forget everything, e.g. on logout."""
        self._entries.clear()
        self._pending.clear()
        self._applied.clear()
        self._own.clear()
        self._tombstones.clear()


__all__ = [
    "LOCAL_ID_PREFIX",
    "PendingMutation",
    "ReconciliationEngine",
    "SyncState",
    "TaskEntry",
    "normalize_task",
]
