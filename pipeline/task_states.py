"""Task status state machine.

    suggested -> approved -> executing -> completed
         \\                          \\-> issue
          \\-> issue  (user rejection)

Stages may author a task directly in any state (the birthday stage creates its
task already ``executing``); after that, status only moves along the edges
below and never backward.
"""
from pipeline.errors import InvalidTransitionError
from pipeline.models import Task, TaskStatus

LEGAL_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.SUGGESTED: frozenset({TaskStatus.APPROVED, TaskStatus.ISSUE}),
    TaskStatus.APPROVED: frozenset({TaskStatus.EXECUTING}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.ISSUE}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ISSUE: frozenset(),
}

# Distance along the graph, used to pick the more advanced of two copies.
_RANK = {
    TaskStatus.SUGGESTED: 0,
    TaskStatus.APPROVED: 1,
    TaskStatus.EXECUTING: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.ISSUE: 3,
}


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in LEGAL_TRANSITIONS[current]


def is_terminal(status: TaskStatus) -> bool:
    return not LEGAL_TRANSITIONS[status]


def advance(task: Task, requested: TaskStatus) -> Task:
    """Move a task to a new status in place.

    Raises:
        InvalidTransitionError: If the edge is not part of the state machine
    """
    requested = TaskStatus(requested)
    if not can_transition(task.status, requested):
        raise InvalidTransitionError(task.id, task.status.value, requested.value)
    task.status = requested
    return task


def most_advanced(stored: Task, live: Task) -> Task:
    """Pick between two copies of the same task without moving it backward.

    Ties go to the stored copy, since the store is the authority.
    """
    if _RANK[live.status] > _RANK[stored.status]:
        return live
    return stored
