"""
Task board operations.

Validates inputs, enforces the enrollment policy and turns store rows into
``TaskView``/``Profile`` models. All mutating operations take an already
resolved ``Identity``; the socket handlers obtain it from the
SessionRegistry so an unauthenticated caller never reaches this layer.
"""

import logging
from typing import Any, Dict, List

from .config import ENROLLMENT_AUTO, ENROLLMENT_POLICIES, MAX_TITLE_LENGTH
from .database import BoardDatabase
from .errors import NotFound, ValidationError
from .models import Identity, Profile, TaskView
from .progress import STATUS_DONE

logger = logging.getLogger(__name__)


class BoardService:
    """Task Store operations with the Completion Aggregator applied."""

    def __init__(self, database: BoardDatabase, enrollment_policy: str = ENROLLMENT_AUTO):
        if enrollment_policy not in ENROLLMENT_POLICIES:
            raise ValueError(f"Unknown enrollment policy '{enrollment_policy}'")
        self.db = database
        self.enrollment_policy = enrollment_policy

    @staticmethod
    def _task_id(task_id: Any) -> int:
        try:
            value = int(task_id)
        except (TypeError, ValueError):
            raise ValidationError("Task ID must be a valid integer")
        if value <= 0:
            raise ValidationError("Task ID must be a positive integer")
        return value

    def create_task(self, identity: Identity, title: str, description: str = "") -> TaskView:
        """
        Create a todo task owned by the caller, who becomes its first participant.

        Raises:
            ValidationError: Empty or oversized title
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title cannot be empty")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
        task = self.db.create_task(identity.id, title, (description or "").strip())
        return TaskView(**task)

    def share_task(self, identity: Identity, task_id: Any, recipient_logins: List[str]) -> Dict[str, Any]:
        """
        Enroll recipients as participants.

        Returns:
            Dict with ``shared_count``, ``shared_with`` and the updated ``task``
        """
        task_id = self._task_id(task_id)
        recipients = []
        for login in recipient_logins or []:
            login = str(login).strip()
            if login and login != identity.login and login not in recipients:
                recipients.append(login)
        result = self.db.share_task(task_id, identity.id, recipients)
        logger.info(
            f"Task {task_id} shared by '{identity.login}' with {result['shared_count']} user(s)"
        )
        return {
            "shared_count": result["shared_count"],
            "shared_with": result["shared_with"],
            "task": TaskView(**result["task"]),
        }

    def complete_task(self, identity: Identity, task_id: Any) -> Dict[str, Any]:
        """
        Record the caller's completion; idempotent for retries.

        Returns:
            Dict with ``progress``, ``task``, ``transitioned`` and ``changed``
        """
        task_id = self._task_id(task_id)
        result = self.db.complete_task(
            task_id,
            identity.id,
            auto_enroll=self.enrollment_policy == ENROLLMENT_AUTO,
        )
        task = TaskView(**result["task"])
        logger.info(f"Task {task_id} completion by '{identity.login}': progress {task.progress}%")
        return {
            "progress": task.progress,
            "task": task,
            "transitioned": result["transitioned"],
            "changed": result["changed"],
        }

    def delete_task(self, identity: Identity, task_id: Any) -> bool:
        """Delete a task the caller created or participates in."""
        task_id = self._task_id(task_id)
        self.db.delete_task(task_id, identity.id)
        return True

    def get_task(self, task_id: Any) -> TaskView:
        task_id = self._task_id(task_id)
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return TaskView(**task)

    def get_profile(self, login: str) -> Profile:
        """
        Public profile for any login; no authorization required.

        Raises:
            NotFound: Unknown login
        """
        login = (login or "").strip()
        user = self.db.get_user_by_login(login)
        if not user:
            raise NotFound(f"User '{login}' not found")
        tasks = [TaskView(**task) for task in self.db.list_tasks_for_user(user["id"])]
        return Profile(
            login=user["login"],
            completed_count=user["completed_count"],
            total_tasks=len(tasks),
            completed_tasks=sum(1 for task in tasks if task.status == STATUS_DONE),
            shared_tasks=sum(1 for task in tasks if task.total_participants > 1),
            tasks=tasks,
        )
