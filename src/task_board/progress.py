"""
Completion Aggregator

Single source of truth for deriving a shared task's progress and status from
its participation records. The store, the profile read path and the client's
optimistic guesses all call ``compute_progress`` so the derived values never
drift between code paths.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

STATUS_TODO = "todo"
STATUS_DONE = "done"
TASK_STATUSES = (STATUS_TODO, STATUS_DONE)


@dataclass(frozen=True)
class ProgressResult:
    """Derived completion state of one task."""
    progress: int
    status: str
    completed: int
    total: int

    @property
    def is_done(self) -> bool:
        return self.status == STATUS_DONE


def percentage(completed: int, total: int) -> int:
    """
    Integer percentage rounded half up.

    Integer arithmetic keeps 1/8 at 13 rather than the 12 that float
    banker's rounding would give.
    """
    if total <= 0:
        return 0
    value = (200 * completed + total) // (2 * total)
    # 100 is reserved for full completion (matters past 200 participants)
    if completed < total:
        value = min(value, 99)
    return value


def _is_completed(participation: Union[Mapping[str, Any], Any]) -> bool:
    if isinstance(participation, Mapping):
        return bool(participation.get("completed"))
    return bool(getattr(participation, "completed", False))


def compute_progress(participations: Iterable[Union[Mapping[str, Any], Any]]) -> ProgressResult:
    """
    Compute progress and status from participation records.

    Args:
        participations: Mappings or objects exposing a ``completed`` flag

    Returns:
        ProgressResult with progress in 0..100 and status ``done`` exactly
        when every participant completed and there is at least one.
    """
    total = 0
    completed = 0
    for participation in participations:
        total += 1
        if _is_completed(participation):
            completed += 1

    progress = percentage(completed, total)
    status = STATUS_DONE if total > 0 and progress == 100 else STATUS_TODO
    return ProgressResult(progress=progress, status=status, completed=completed, total=total)
