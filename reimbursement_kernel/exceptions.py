"""
Typed exception hierarchy for the reimbursement kernel.

Every error a caller can act on has its own class, a machine-readable
``code`` class attribute, and structured attributes carrying the context.
Callers catch by type and read attributes; they never parse messages.

    ReimbursementKernelError (base)
    |
    +-- RequestError
    |   +-- RequestNotFoundError        NOT_FOUND
    |   +-- InvalidStateError           INVALID_STATE
    |
    +-- AuthorizationError
    |   +-- NotOwnerError               NOT_OWNER
    |   +-- ForbiddenError              FORBIDDEN
    |
    +-- ValidationError                 VALIDATION_ERROR
    |
    +-- ConcurrencyError
    |   +-- StorageConflictError        STORAGE_CONFLICT
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError  IMMUTABILITY_VIOLATION
    |
    +-- ServerFaultError                SERVER_FAULT

Handling patterns:

    try:
        workflow.record_decision(request_id, admin_id, "approve", approved_amount="120")
    except InvalidStateError as e:
        # re-read the request; somebody else resolved it
        return {"error": e.code, "status": e.current_status}
    except ValidationError as e:
        return {"error": e.code, "field": e.field}

Audit and notification failures are never raised; they are logged by the
component that swallowed them.
"""


class ReimbursementKernelError(Exception):
    """
    Base exception for all reimbursement kernel errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "REIMBURSEMENT_KERNEL_ERROR"


# Request-related exceptions


class RequestError(ReimbursementKernelError):
    """Base exception for request lifecycle errors."""

    code: str = "REQUEST_ERROR"


class RequestNotFoundError(RequestError):
    """No request exists with the given identifier."""

    code: str = "NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Reimbursement request not found: {request_id}")


class InvalidStateError(RequestError):
    """The operation is not valid for the request's current status."""

    code: str = "INVALID_STATE"

    def __init__(self, request_id: str, current_status: str, operation: str):
        self.request_id = request_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} request {request_id} in status '{current_status}'"
        )


# Authorization-related exceptions


class AuthorizationError(ReimbursementKernelError):
    """Base exception for actor/permission mismatches."""

    code: str = "AUTHORIZATION_ERROR"


class NotOwnerError(AuthorizationError):
    """The acting user does not own the request."""

    code: str = "NOT_OWNER"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} does not own request {request_id}")


class ForbiddenError(AuthorizationError):
    """The acting user lacks the capability for this operation."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, operation: str):
        self.actor_id = actor_id
        self.operation = operation
        super().__init__(f"Actor {actor_id} is not allowed to {operation}")


# Input validation


class ValidationError(ReimbursementKernelError):
    """Malformed or missing required input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Concurrency-related exceptions


class ConcurrencyError(ReimbursementKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class StorageConflictError(ConcurrencyError):
    """A concurrent write collided and the internal retry did not resolve it."""

    code: str = "STORAGE_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, detail: str = ""):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.detail = detail
        message = f"Concurrent write conflict on {entity_type} {entity_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


# Immutability-related exceptions


class ImmutabilityError(ReimbursementKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Unexpected failures


class ServerFaultError(ReimbursementKernelError):
    """
    Unexpected failure inside an operation.

    The operation's transaction was rolled back; nothing was applied.
    The original exception is chained as ``__cause__``.
    """

    code: str = "SERVER_FAULT"

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        message = f"Server fault during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
