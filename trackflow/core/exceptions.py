"""
Engine-wide exception hierarchy.

Every service raises one of these types; nothing returns error codes.
The (external) HTTP layer maps them to responses once:

    NotFoundError                    → 404
    ForbiddenError                   → 403
    ValidationError and subclasses   → 422
    ConflictError and subclasses     → 409
    ConcurrentModificationError      → 409

Usage:
    from trackflow.core.exceptions import NotFoundError, TransitionNotAcceptableError

    raise NotFoundError(resource="Workflow", resource_id=flow_id)
    raise TransitionNotAcceptableError("DONE", "DOING")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Workflow", "Work").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the acting identity lacks the role an operation needs."""

    def __init__(self, action: str, resource: str | None = None) -> None:
        self.action = action
        self.resource = resource
        msg = f"Forbidden: {action}"
        if resource:
            msg += f" on {resource}"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value or break a reference.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
        message: Overrides the default "already exists" wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


# ── State machine ────────────────────────────────────────────────────────────


class UnknownStateError(ValidationError):
    """A referenced state name does not exist in the workflow."""

    def __init__(self, state_name: str) -> None:
        self.state_name = state_name
        super().__init__(f"unknown workflow state {state_name!r}", {"state": state_name})


class StateInvalidError(ValidationError):
    """Stored definition is inconsistent (an edge points at a missing state)."""

    def __init__(self, message: str = "state is invalid") -> None:
        super().__init__(message)


class StateExistedError(ConflictError):
    """Creating or renaming a state would collide with an existing name."""

    def __init__(self, state_name: str) -> None:
        super().__init__("WorkflowState", "name", state_name)


class TransitionExistedError(ConflictError):
    """A workflow already has an edge between the same two states."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__("WorkflowStateTransition", "edge", f"{from_state}->{to_state}")


class TransitionNotAcceptableError(ValidationError):
    """No transition (or more than one) matches the requested move."""

    def __init__(self, from_state: str, to_state: str, matched: int = 0) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.matched = matched
        super().__init__(
            f"transition from {from_state!r} to {to_state!r} is not acceptable",
            {"from": from_state, "to": to_state, "matched": matched},
        )


class StateCategoryInvalidError(ValidationError):
    """Operation requires a different state category (e.g. archive from in_process)."""

    def __init__(self, category: str, expected: str = "done or rejected") -> None:
        self.category = category
        super().__init__(f"state category {category!r} is invalid, expected {expected}")


# ── Work lifecycle ───────────────────────────────────────────────────────────


class ArchiveStatusInvalidError(ValidationError):
    """Mutation attempted on an archived work item."""

    def __init__(self, work_id: str) -> None:
        self.work_id = work_id
        super().__init__(f"work {work_id} is archived")


class WorkflowIsReferencedError(ConflictError):
    """Workflow delete blocked by works or process steps that still use it."""

    def __init__(self, workflow_id: str, referrer: str) -> None:
        self.workflow_id = workflow_id
        self.referrer = referrer
        super().__init__(
            "Workflow", "id", workflow_id,
            message=f"workflow {workflow_id} is referenced by {referrer}",
        )


# ── Optimistic concurrency ───────────────────────────────────────────────────


class ConcurrentModificationError(Exception):
    """A conditional update matched an unexpected number of rows.

    Raised when the compare-and-swap precondition no longer holds because
    another writer got there first or the caller's expected value was stale.
    """

    def __init__(self, expected: int = 1, actual: int = 0, subject: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.subject = subject
        msg = f"expected affected row is {expected}, but actual is {actual}"
        if subject:
            msg = f"{subject}: {msg}"
        super().__init__(msg)


class WorkProcessStepStateInvalidError(ConcurrentModificationError):
    """The open process step to close was not found exactly once."""

    def __init__(self, work_id: str, actual: int) -> None:
        self.work_id = work_id
        super().__init__(1, actual, subject=f"open process step of work {work_id}")
