"""
Typed Exception Hierarchy for the Grantflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the approval engine (HTTP handlers, background jobs, tests) must
branch on the kind of failure, not on its wording.  Every error therefore:

  1. Has its own class (catch by type, not message)
  2. Has a ``code`` class attribute (machine-readable, API-safe)
  3. Has an ``http_status`` class attribute (4xx for caller mistakes,
     5xx for integrity faults)
  4. Carries structured data as instance attributes

Example:
    try:
        service.record_decision(request_id, actor, DecisionType.APPROVED)
    except DuplicateDecisionError as e:
        respond(status=e.http_status, code=e.code, level=e.level)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    GrantflowError (base)
    |
    +-- AccessError
    |   +-- UnauthorizedError
    |   +-- ForbiddenError
    |
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- ApprovalRequestNotFoundError
    |
    +-- ValidationError
    |   +-- WorkflowValidationError
    |   +-- ApprovalValidationError
    |
    +-- ConflictError
    |   +-- ConflictingWorkflowError
    |   +-- DuplicateApprovalRequestError
    |   +-- WorkflowInUseError
    |   +-- ApprovalAlreadyResolvedError
    |   +-- InvalidApprovalTransitionError
    |
    +-- DecisionError
    |   +-- ForbiddenDecisionError
    |   +-- NotAnApproverError
    |   +-- DuplicateDecisionError
    |
    +-- IntegrityFault
    |   +-- ConfigurationConflictError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | HTTP | When Raised
-------------|-----------------------------|------|-------------------------------
Access       | UNAUTHORIZED                | 401  | No resolved actor
             | FORBIDDEN                   | 403  | Wrong org, or non-admin mutation
-------------|-----------------------------|------|-------------------------------
Not found    | WORKFLOW_NOT_FOUND          | 404  | Unknown workflow id
             | APPROVAL_REQUEST_NOT_FOUND  | 404  | Unknown request id
-------------|-----------------------------|------|-------------------------------
Validation   | WORKFLOW_VALIDATION_FAILED  | 400  | Malformed chain or stages
             | APPROVAL_VALIDATION_FAILED  | 400  | Missing rejection reason, stale stage
-------------|-----------------------------|------|-------------------------------
Conflict     | CONFLICTING_WORKFLOW        | 409  | Second active workflow for a transition
             | DUPLICATE_APPROVAL_REQUEST  | 409  | Grant already has a pending request
             | WORKFLOW_IN_USE             | 409  | Delete with pending requests
             | APPROVAL_ALREADY_RESOLVED   | 409  | Mutating a terminal request
             | INVALID_APPROVAL_TRANSITION | 409  | Status change outside the lifecycle table
-------------|-----------------------------|------|-------------------------------
Decision     | FORBIDDEN_DECISION          | 403  | Self-approval disallowed
             | NOT_AN_APPROVER             | 403  | Actor does not qualify for the level
             | DUPLICATE_DECISION          | 409  | Same actor, same level, twice
-------------|-----------------------------|------|-------------------------------
Integrity    | CONFIGURATION_CONFLICT      | 500  | Multiple active workflows found
Concurrency  | OPTIMISTIC_LOCK_CONFLICT    | 409  | Request changed underneath us
Immutability | IMMUTABILITY_VIOLATION      | 500  | Decision UPDATE/DELETE attempted
"""


class GrantflowError(Exception):
    """
    Base exception for all grantflow errors.

    All subclasses define ``code`` and ``http_status`` class attributes.
    ``public_message`` is what a caller outside the process may see; it
    defaults to the exception message.
    """

    code: str = "GRANTFLOW_ERROR"
    http_status: int = 500

    @property
    def public_message(self) -> str:
        return str(self)

    def details(self) -> dict:
        """Structured attributes safe to return to the caller."""
        return {
            k: v for k, v in vars(self).items()
            if not k.startswith("_")
        }


# Access-related exceptions


class AccessError(GrantflowError):
    """Base exception for authentication and authorization failures."""

    code: str = "ACCESS_ERROR"
    http_status: int = 403


class UnauthorizedError(AccessError):
    """No authenticated actor was resolved for the call."""

    code: str = "UNAUTHORIZED"
    http_status: int = 401

    def __init__(self, reason: str = "Authentication required"):
        self.reason = reason
        super().__init__(reason)


class ForbiddenError(AccessError):
    """Actor is authenticated but lacks the role or membership required."""

    code: str = "FORBIDDEN"
    http_status: int = 403

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# Lookup exceptions


class NotFoundError(GrantflowError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"
    http_status: int = 404


class WorkflowNotFoundError(NotFoundError):
    """Approval workflow with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Approval workflow not found: {workflow_id}")


class ApprovalRequestNotFoundError(NotFoundError):
    """Approval request with given ID was not found."""

    code: str = "APPROVAL_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


# Validation exceptions


class ValidationError(GrantflowError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"
    http_status: int = 400


class WorkflowValidationError(ValidationError):
    """Workflow configuration failed structural validation."""

    code: str = "WORKFLOW_VALIDATION_FAILED"

    def __init__(self, errors: tuple[str, ...]):
        self.errors = tuple(errors)
        super().__init__(
            "Invalid approval workflow: " + "; ".join(self.errors)
        )


class ApprovalValidationError(ValidationError):
    """An approval request or decision is missing required data."""

    code: str = "APPROVAL_VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Conflict exceptions


class ConflictError(GrantflowError):
    """Base exception for state conflicts."""

    code: str = "CONFLICT"
    http_status: int = 409


class ConflictingWorkflowError(ConflictError):
    """An active workflow already guards this stage transition."""

    code: str = "CONFLICTING_WORKFLOW"

    def __init__(
        self,
        org_id: str,
        from_stage: str,
        to_stage: str,
        existing_workflow_id: str | None = None,
    ):
        self.org_id = org_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.existing_workflow_id = existing_workflow_id
        message = f"An active workflow already exists for {from_stage} -> {to_stage}"
        if existing_workflow_id is not None:
            message += f": {existing_workflow_id}"
        super().__init__(message)


class DuplicateApprovalRequestError(ConflictError):
    """The grant already has a pending approval request."""

    code: str = "DUPLICATE_APPROVAL_REQUEST"

    def __init__(self, grant_id: str, existing_request_id: str | None = None):
        self.grant_id = grant_id
        self.existing_request_id = existing_request_id
        message = f"A pending approval request already exists for grant {grant_id}"
        if existing_request_id is not None:
            message += f": {existing_request_id}"
        super().__init__(message)


class WorkflowInUseError(ConflictError):
    """Workflow cannot be deleted while pending requests reference it."""

    code: str = "WORKFLOW_IN_USE"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        self.suggestion = "Deactivate the workflow instead"
        super().__init__(
            f"Cannot delete workflow {workflow_id} with pending approval requests"
        )


class ApprovalAlreadyResolvedError(ConflictError):
    """Approval request is in a terminal status and cannot change."""

    code: str = "APPROVAL_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} is already {status}")


class InvalidApprovalTransitionError(ConflictError):
    """Requested status change is not in the request lifecycle table."""

    code: str = "INVALID_APPROVAL_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid approval transition: {from_status} -> {to_status}"
        )


# Decision exceptions


class DecisionError(GrantflowError):
    """Base exception for rejected approval decisions."""

    code: str = "DECISION_ERROR"
    http_status: int = 403


class ForbiddenDecisionError(DecisionError):
    """Requester tried to decide on their own request."""

    code: str = "FORBIDDEN_DECISION"

    def __init__(self, request_id: str, user_id: str):
        self.request_id = request_id
        self.user_id = user_id
        super().__init__(
            f"Self-approval is not allowed for request {request_id}"
        )


class NotAnApproverError(DecisionError):
    """Actor does not qualify as an approver for the live level."""

    code: str = "NOT_AN_APPROVER"

    def __init__(self, request_id: str, user_id: str, level: int):
        self.request_id = request_id
        self.user_id = user_id
        self.level = level
        super().__init__(
            f"User {user_id} is not an approver for request {request_id} "
            f"at level {level}"
        )


class DuplicateDecisionError(DecisionError):
    """Actor already recorded a decision at this level."""

    code: str = "DUPLICATE_DECISION"
    http_status: int = 409

    def __init__(self, request_id: str, user_id: str, level: int):
        self.request_id = request_id
        self.user_id = user_id
        self.level = level
        super().__init__(
            f"User {user_id} already decided on request {request_id} "
            f"at level {level}"
        )


# Integrity faults


class IntegrityFault(GrantflowError):
    """Base exception for stored data that violates an invariant.

    These are server faults.  Details are logged, never returned.
    """

    code: str = "INTEGRITY_FAULT"
    http_status: int = 500

    @property
    def public_message(self) -> str:
        return "Internal configuration error"

    def details(self) -> dict:
        return {}


class ConfigurationConflictError(IntegrityFault):
    """More than one active workflow matched a stage transition."""

    code: str = "CONFIGURATION_CONFLICT"

    def __init__(
        self,
        org_id: str,
        from_stage: str,
        to_stage: str,
        workflow_ids: tuple[str, ...],
    ):
        self.org_id = org_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.workflow_ids = tuple(workflow_ids)
        super().__init__(
            f"{len(self.workflow_ids)} active workflows match "
            f"{from_stage} -> {to_stage} in org {org_id}"
        )


# Concurrency exceptions


class ConcurrencyError(GrantflowError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    http_status: int = 409


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability


class ImmutabilityViolationError(GrantflowError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"
    http_status: int = 500

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
