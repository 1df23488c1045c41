"""
Engine-wide exception hierarchy.

Services raise these types and never return error tuples. Callers (request
handlers, scripts, jobs) catch them once and translate to their own surface.

Usage:
    from approval_engine.core.exceptions import NotFoundError, NotAuthorizedError

    raise NotFoundError(resource="Identity", resource_id="jane@corp.example")
    raise NotAuthorizedError(expected_key="bob@corp.example", expected_name="Bob", level=2)

Propagation rules:
  - Structural and authorization errors (NotFoundError, EmptyChainError,
    NotAuthorizedError, NotPendingError, InvalidGradeError, ValidationError)
    abort the attempted transition before any state is touched.
  - CycleDetectedError is raised inside the hierarchy walk only and is always
    recovered by the builder, which truncates the walk.
  - ConflictError signals a lost optimistic-lock race; nothing was written.
"""


class NotFoundError(Exception):
    """Raised when a requested identity, chain or record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Identity", "ApprovalChain").
        resource_id: The key or PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
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
    """Raised when a concurrent writer changed the record first.

    Args:
        resource: Model name.
        field: The field that carried the conflict (e.g. "version_id").
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} was modified concurrently"
        super().__init__(msg)


class EmptyChainError(Exception):
    """Raised when a build produced no usable approval step."""

    def __init__(self, requester_key: str, workflow_kind: str) -> None:
        self.requester_key = requester_key
        self.workflow_kind = workflow_kind
        super().__init__(
            f"No approver could be resolved for {requester_key!r} "
            f"(workflow_kind={workflow_kind})"
        )


class NotAuthorizedError(Exception):
    """Raised when someone other than the active approver tries to decide.

    Only the one identity currently entitled to decide is named; later
    approvers in the chain are never exposed.
    """

    def __init__(
        self,
        expected_key: str | None,
        expected_name: str | None = None,
        level: int | None = None,
        acting_key: str | None = None,
    ) -> None:
        self.expected_key = expected_key
        self.expected_name = expected_name
        self.level = level
        self.acting_key = acting_key
        who = expected_name or expected_key or "nobody"
        if expected_name and expected_key:
            who = f"{expected_name} <{expected_key}>"
        msg = f"Only {who} may decide"
        if level is not None:
            msg += f" level {level}"
        msg += " at this stage"
        super().__init__(msg)


class NotPendingError(Exception):
    """Raised when a decision is attempted on a chain that is already terminal."""

    def __init__(self, chain_id: int | str | None, status: str) -> None:
        self.chain_id = chain_id
        self.status = status
        label = f"ApprovalChain id={chain_id}" if chain_id is not None else "ApprovalChain"
        super().__init__(f"{label} is no longer pending (status={status})")


class InvalidGradeError(ValidationError):
    """Raised when a grade is missing, outside [1.0, 5.0] or too precise."""

    def __init__(self, grade, reason: str = "Grade must be between 1.0 and 5.0") -> None:
        self.grade = grade
        super().__init__(f"{reason} (got {grade!r})", details={"grade": reason})


class CycleDetectedError(Exception):
    """Raised by the supervisor walk when it must stop for safety.

    Never escapes the builder: the walk is truncated at ``last_key`` and the
    chain falls back to the furthest resolvable approver.
    """

    def __init__(self, last_key: str, reason: str) -> None:
        self.last_key = last_key
        self.reason = reason
        super().__init__(f"Hierarchy walk stopped at {last_key!r}: {reason}")
