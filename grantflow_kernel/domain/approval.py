"""
Approval domain types (``grantflow_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the grant
stages and org roles, the request lifecycle state machine, workflow and
level configuration, request/decision records, evaluation results, and
the collaborator protocols (store, stage gateway, notification dispatcher).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Lifecycle state machine -- ``APPROVAL_TRANSITIONS`` defines the only
  valid status transitions.  Terminal states have no outgoing edges.
* ``expired`` is never a stored status; it is derived from
  ``ApprovalRequest.expires_at`` by the engine.
* Decision records are immutable snapshots; requests carry their full
  decision history.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Protocol
from uuid import UUID


# =========================================================================
# Pipeline vocabulary
# =========================================================================


class GrantStage(str, Enum):
    """Pipeline stages a saved grant moves through."""

    RESEARCHING = "researching"
    DRAFTING = "drafting"
    SUBMITTED = "submitted"
    AWARDED = "awarded"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


GRANT_STAGES: frozenset[str] = frozenset(s.value for s in GrantStage)


class OrgRole(str, Enum):
    """Role of a user within an organization."""

    ADMIN = "admin"
    CONTRIBUTOR = "contributor"


ORG_ROLES: frozenset[str] = frozenset(r.value for r in OrgRole)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the identity provider."""

    user_id: UUID
    org_id: UUID
    role: OrgRole

    @property
    def is_admin(self) -> bool:
        return self.role == OrgRole.ADMIN


# =========================================================================
# Approval Status Lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    """Stored approval request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
})


class DecisionType(str, Enum):
    """Decision types that an approver can make."""

    APPROVED = "approved"
    REJECTED = "rejected"


class DecisionSource(str, Enum):
    """Who cast a decision: a person, or the workflow policy itself."""

    HUMAN = "human"
    POLICY = "policy"


class DecisionTransition(str, Enum):
    """Effect of one recorded decision on its request."""

    ADVANCED = "advanced"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNCHANGED = "unchanged"


class DecisionViolation(str, Enum):
    """Reasons the engine refuses a decision before recording it."""

    SELF_APPROVAL = "self_approval"
    NOT_AN_APPROVER = "not_an_approver"
    DUPLICATE_DECISION = "duplicate_decision"
    MISSING_REJECTION_REASON = "missing_rejection_reason"


class InitiationAction(str, Enum):
    """What happens when a user asks to move a grant between stages."""

    APPLY_IMMEDIATELY = "apply_immediately"
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"


class OutcomeKind(str, Enum):
    """Status changes reported to the notification dispatcher."""

    REQUESTED = "requested"
    ADVANCED = "advanced"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"
    CANCELLED = "cancelled"


# =========================================================================
# Workflow configuration
# =========================================================================


@dataclass(frozen=True)
class ApprovalLevel:
    """One level of an approval chain.

    Approvers qualify either by ``role`` or by membership in
    ``specific_users``.  ``required_approvers`` distinct approvals satisfy
    the level.
    """

    level: int
    role: str | None = None
    specific_users: tuple[UUID, ...] = ()
    required_approvers: int = 1

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ApprovalLevel:
        """Build a level from its JSON form (as stored and as sent by clients)."""
        users = data.get("specific_users") or ()
        return cls(
            level=int(data["level"]),
            role=data.get("role") or None,
            specific_users=tuple(
                u if isinstance(u, UUID) else UUID(str(u)) for u in users
            ),
            required_approvers=int(data.get("required_approvers", 1)),
        )

    def to_mapping(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "level": self.level,
            "required_approvers": self.required_approvers,
        }
        if self.role is not None:
            data["role"] = self.role
        if self.specific_users:
            data["specific_users"] = [str(u) for u in self.specific_users]
        return data


def chain_from_mappings(raw: Iterable[Mapping[str, Any]]) -> tuple[ApprovalLevel, ...]:
    """Parse a JSON approval chain into levels, preserving order."""
    return tuple(ApprovalLevel.from_mapping(item) for item in raw)


@dataclass(frozen=True)
class ApprovalWorkflow:
    """Approval requirements guarding one stage transition in one org."""

    workflow_id: UUID
    org_id: UUID
    name: str
    from_stage: str
    to_stage: str
    approval_chain: tuple[ApprovalLevel, ...]
    is_active: bool = True
    require_all_levels: bool = True
    allow_self_approval: bool = False
    auto_approve_admin: bool = False
    description: str | None = None
    created_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_level(self, level: int) -> ApprovalLevel | None:
        for item in self.approval_chain:
            if item.level == level:
                return item
        return None

    @property
    def last_level(self) -> int:
        return max((item.level for item in self.approval_chain), default=0)


@dataclass(frozen=True)
class WorkflowDefinition:
    """Caller-supplied configuration for a new workflow."""

    name: str
    from_stage: str
    to_stage: str
    approval_chain: tuple[ApprovalLevel, ...]
    description: str | None = None
    is_active: bool = True
    require_all_levels: bool = True
    allow_self_approval: bool = False
    auto_approve_admin: bool = False


@dataclass(frozen=True)
class WorkflowPatch:
    """Partial update of a workflow.  ``None`` leaves a field unchanged.

    An empty ``description`` clears it.
    """

    name: str | None = None
    description: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    approval_chain: tuple[ApprovalLevel, ...] | None = None
    is_active: bool | None = None
    require_all_levels: bool | None = None
    allow_self_approval: bool | None = None
    auto_approve_admin: bool | None = None

    def apply_to(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        changes = {
            name: value
            for name, value in vars(self).items()
            if value is not None
        }
        if changes.get("description") == "":
            changes["description"] = None
        return replace(workflow, **changes)


# =========================================================================
# Request and Decision Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalDecisionRecord:
    """Record of a single approval decision. Immutable.

    ``approver_id`` is None for policy decisions (auto-approval).
    """

    decision_id: UUID
    request_id: UUID
    approver_id: UUID | None
    decision: DecisionType
    level: int
    comments: str = ""
    source: DecisionSource = DecisionSource.HUMAN
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of an approval request and its decisions.

    ``version`` increments on every persisted change and guards
    concurrent decision recording.
    """

    request_id: UUID
    org_id: UUID
    grant_id: UUID
    workflow_id: UUID | None
    requested_by: UUID
    from_stage: str
    to_stage: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    current_level: int = 1
    request_notes: str | None = None
    rejection_reason: str | None = None
    requested_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    version: int = 1
    decisions: tuple[ApprovalDecisionRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    def decisions_at_level(self, level: int) -> tuple[ApprovalDecisionRecord, ...]:
        return tuple(d for d in self.decisions if d.level == level)

    def approvers_at_level(self, level: int) -> frozenset[UUID]:
        """Distinct users who approved at ``level``."""
        return frozenset(
            d.approver_id
            for d in self.decisions
            if d.level == level
            and d.decision == DecisionType.APPROVED
            and d.approver_id is not None
        )

    def has_decided(self, user_id: UUID, level: int) -> bool:
        return any(
            d.approver_id == user_id and d.level == level
            for d in self.decisions
        )


@dataclass(frozen=True)
class RequestFilters:
    """Filters for listing approval requests."""

    status: ApprovalStatus | None = None
    grant_id: UUID | None = None
    pending_for_user: bool = False


# =========================================================================
# Evaluation Results
# =========================================================================


@dataclass(frozen=True)
class InitiationEvaluation:
    """Result of deciding how a stage-transition request is handled."""

    action: InitiationAction
    reason: str = ""


@dataclass(frozen=True)
class DecisionCheck:
    """Result of the pre-recording checks for a decision.

    ``level`` is the chain level the decision counts toward, or None when
    the actor qualifies for no live level.
    """

    level: int | None
    violation: DecisionViolation | None = None

    @property
    def allowed(self) -> bool:
        return self.violation is None


@dataclass(frozen=True)
class DecisionEvaluation:
    """Request state computed after applying one decision."""

    transition: DecisionTransition
    status: ApprovalStatus
    current_level: int
    approvals_at_level: int = 0
    required_approvers: int = 0
    reason: str = ""


@dataclass(frozen=True)
class InitiationResult:
    """Returned to callers of ``create_request``."""

    applied: bool
    auto_approved: bool = False
    request: ApprovalRequest | None = None


@dataclass(frozen=True)
class DecisionResult:
    """Returned to callers of ``record_decision``."""

    request: ApprovalRequest
    transition: DecisionTransition
    level: int
    approvals_at_level: int = 0
    required_approvers: int = 0


@dataclass(frozen=True)
class ApprovalOutcome:
    """Status change handed to the notification dispatcher."""

    kind: OutcomeKind
    request_id: UUID
    org_id: UUID
    grant_id: UUID
    workflow_id: UUID | None
    from_stage: str
    to_stage: str
    actor_id: UUID | None
    level: int
    occurred_at: datetime
    reason: str = ""
    next_level: int | None = None
    notify_users: tuple[UUID, ...] = ()
    notify_role: str | None = None


# =========================================================================
# Collaborator Protocols
# =========================================================================


class GrantStageGateway(Protocol):
    """Reads and moves a saved grant's pipeline stage."""

    def current_stage(self, grant_id: UUID) -> str | None:
        """Return the grant's stage, or None if it cannot be determined."""
        ...

    def apply_stage(
        self,
        org_id: UUID,
        grant_id: UUID,
        from_stage: str,
        to_stage: str,
    ) -> None:
        """Move the grant to ``to_stage``."""
        ...


class NotificationDispatcher(Protocol):
    """Receives approval outcomes for downstream email/in-app delivery."""

    def dispatch(self, outcome: ApprovalOutcome) -> None:
        ...


class ApprovalStore(Protocol):
    """Typed persistence operations the approval services depend on."""

    def find_active_workflows(
        self,
        org_id: UUID,
        from_stage: str,
        to_stage: str,
        exclude_workflow_id: UUID | None = None,
    ) -> list[ApprovalWorkflow]:
        ...

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow | None:
        ...

    def list_workflows(
        self, org_id: UUID, active_only: bool = False,
    ) -> list[ApprovalWorkflow]:
        ...

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        ...

    def update_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        ...

    def delete_workflow(self, workflow_id: UUID) -> None:
        ...

    def has_pending_requests(self, workflow_id: UUID) -> bool:
        ...

    def max_pending_level(self, workflow_id: UUID) -> int | None:
        ...

    def find_pending_request_for_grant(
        self, grant_id: UUID,
    ) -> ApprovalRequest | None:
        ...

    def add_request(self, request: ApprovalRequest) -> ApprovalRequest:
        ...

    def get_request(
        self, request_id: UUID, for_update: bool = False,
    ) -> ApprovalRequest | None:
        ...

    def add_decision(self, decision: ApprovalDecisionRecord) -> None:
        ...

    def save_request(
        self, request: ApprovalRequest, expected_version: int,
    ) -> ApprovalRequest:
        ...

    def list_requests(
        self,
        org_id: UUID,
        status: ApprovalStatus | None = None,
        grant_id: UUID | None = None,
    ) -> list[ApprovalRequest]:
        ...


__all__ = [
    "APPROVAL_TRANSITIONS",
    "GRANT_STAGES",
    "ORG_ROLES",
    "TERMINAL_APPROVAL_STATUSES",
    "Actor",
    "ApprovalDecisionRecord",
    "ApprovalLevel",
    "ApprovalOutcome",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalStore",
    "ApprovalWorkflow",
    "DecisionCheck",
    "DecisionEvaluation",
    "DecisionResult",
    "DecisionSource",
    "DecisionTransition",
    "DecisionType",
    "DecisionViolation",
    "GrantStage",
    "GrantStageGateway",
    "InitiationAction",
    "InitiationEvaluation",
    "InitiationResult",
    "NotificationDispatcher",
    "OrgRole",
    "OutcomeKind",
    "RequestFilters",
    "WorkflowDefinition",
    "WorkflowPatch",
    "chain_from_mappings",
]
