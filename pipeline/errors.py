"""Exception hierarchy for the event pipeline.

Collaborator failures are split into transient ones (the detector skips the
tick and tries again on the next one) and terminal stage failures (recorded on
the processing record and never retried automatically).
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class CollaboratorError(PipelineError, RuntimeError):
    """An external collaborator (calendar, classifier, automation) failed."""


class CalendarFetchError(CollaboratorError):
    """The calendar could not be fetched (network, HTTP or payload error)."""


class CalendarAuthError(CalendarFetchError):
    """The calendar rejected the credentials (expired or revoked token)."""


class ClassificationError(CollaboratorError):
    """The language model did not return a usable event analysis."""


class AutomationError(CollaboratorError):
    """The browser-automation service failed to start or finish a task."""


class InvalidTransitionError(PipelineError, ValueError):
    """A task status change is not an edge of the task state machine."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Task '{task_id}' cannot move from '{current}' to '{requested}'"
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class TaskNotFoundError(PipelineError, KeyError):
    """No stored task matches the given event and task id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Task not found"
