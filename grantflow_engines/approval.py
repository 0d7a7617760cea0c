"""
grantflow_engines.approval -- Pure approval workflow evaluation engine.

Responsibility:
    Decide how a stage-transition request is handled, whether an actor
    may decide on a request and at which level, what a recorded decision
    does to the request, whether a workflow definition is well formed,
    and whether a pending request has aged past its expiry.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import grantflow_kernel/domain/ types.

Invariants enforced:
    - A single rejection at any level ends the request.
    - Levels only move forward; a request leaves ``pending`` only through
      ``approved`` or ``rejected`` (decisions) or ``cancelled`` (services).
    - Decisions are taken only at ``current_level``.  With
      ``require_all_levels`` every level must meet its threshold in order
      1..N; without it the request is approved once the current level is
      satisfied.
    - Purity: no clock access, no I/O, no database.

Failure modes:
    - Returns ``InitiationEvaluation(APPLY_IMMEDIATELY)`` when no workflow
      governs the transition (fail-open for unguarded transitions).
    - Returns ``DecisionCheck`` with a ``violation`` instead of raising;
      the service layer maps violations to typed exceptions.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from grantflow_kernel.domain.approval import (
    GRANT_STAGES,
    ORG_ROLES,
    ApprovalDecisionRecord,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
    DecisionCheck,
    DecisionEvaluation,
    DecisionTransition,
    DecisionType,
    DecisionViolation,
    InitiationAction,
    InitiationEvaluation,
    OrgRole,
)


def evaluate_initiation(
    workflow: ApprovalWorkflow | None,
    requester_role: str,
) -> InitiationEvaluation:
    """Decide whether a transition applies now, auto-approves, or waits.

    Args:
        workflow: The active workflow for the transition (None = unguarded).
        requester_role: Org role of the user asking for the transition.

    Returns:
        InitiationEvaluation with the action to take and a reason.
    """
    if workflow is None:
        return InitiationEvaluation(
            action=InitiationAction.APPLY_IMMEDIATELY,
            reason="No active workflow guards this transition",
        )

    if workflow.auto_approve_admin and requester_role == OrgRole.ADMIN:
        return InitiationEvaluation(
            action=InitiationAction.AUTO_APPROVE,
            reason="Auto-approved: requester is an organization admin",
        )

    return InitiationEvaluation(
        action=InitiationAction.REQUIRE_APPROVAL,
        reason=f"Approval required by workflow '{workflow.name}'",
    )


def is_qualified_approver(
    level: ApprovalLevel,
    user_id: UUID,
    role: str,
) -> bool:
    """Check if a user may approve at ``level``.

    ``specific_users`` takes precedence over ``role`` when both are set.
    """
    if level.specific_users:
        return user_id in level.specific_users
    if level.role is not None:
        return role == level.role
    return False


def live_levels(
    workflow: ApprovalWorkflow,
    request: ApprovalRequest,
) -> tuple[ApprovalLevel, ...]:
    """Levels that may currently receive decisions.

    Only ``current_level`` is live.  ``require_all_levels`` decides what
    happens once it is satisfied, not who may decide.
    """
    level = workflow.get_level(request.current_level)
    return (level,) if level is not None else ()


def select_decision_level(
    workflow: ApprovalWorkflow,
    request: ApprovalRequest,
    user_id: UUID,
    role: str,
) -> ApprovalLevel | None:
    """Return the live level the user qualifies for, or None."""
    for level in live_levels(workflow, request):
        if is_qualified_approver(level, user_id, role):
            return level
    return None


def check_decision(
    workflow: ApprovalWorkflow,
    request: ApprovalRequest,
    approver_id: UUID,
    approver_role: str,
    decision: DecisionType,
    comments: str | None = None,
) -> DecisionCheck:
    """Run the pre-recording checks for a decision, in order.

    1. Self-approval when the workflow disallows it.
    2. Actor qualifies for no live level.
    3. Actor already decided at the selected level.
    4. Rejection without a reason.

    Args:
        workflow: The workflow governing the request.
        request: The pending request, with its decision history.
        approver_id: The deciding user.
        approver_role: The deciding user's org role.
        decision: Approve or reject.
        comments: Free text; required when rejecting.

    Returns:
        DecisionCheck with the selected level and the first violation found.
    """
    level = select_decision_level(workflow, request, approver_id, approver_role)
    level_number = level.level if level is not None else None

    if approver_id == request.requested_by and not workflow.allow_self_approval:
        return DecisionCheck(
            level=level_number,
            violation=DecisionViolation.SELF_APPROVAL,
        )

    if level is None:
        return DecisionCheck(
            level=None,
            violation=DecisionViolation.NOT_AN_APPROVER,
        )

    if request.has_decided(approver_id, level.level):
        return DecisionCheck(
            level=level.level,
            violation=DecisionViolation.DUPLICATE_DECISION,
        )

    if decision == DecisionType.REJECTED and not (comments or "").strip():
        return DecisionCheck(
            level=level.level,
            violation=DecisionViolation.MISSING_REJECTION_REASON,
        )

    return DecisionCheck(level=level.level)


def evaluate_decision(
    workflow: ApprovalWorkflow,
    request: ApprovalRequest,
    decision: ApprovalDecisionRecord,
) -> DecisionEvaluation:
    """Compute the request state after ``decision`` is recorded.

    ``request.decisions`` may or may not already contain ``decision``;
    approvals are counted as distinct users either way.

    Args:
        workflow: The workflow governing the request.
        request: The request as it was before the decision.
        decision: The decision being applied.

    Returns:
        DecisionEvaluation with the transition, status, and level.
    """
    level = workflow.get_level(decision.level)
    required = level.required_approvers if level is not None else 0

    if decision.decision == DecisionType.REJECTED:
        return DecisionEvaluation(
            transition=DecisionTransition.REJECTED,
            status=ApprovalStatus.REJECTED,
            current_level=request.current_level,
            required_approvers=required,
            reason=f"Rejected at level {decision.level}",
        )

    approvers = set(request.approvers_at_level(decision.level))
    if decision.approver_id is not None:
        approvers.add(decision.approver_id)
    count = len(approvers)

    if count < required:
        return DecisionEvaluation(
            transition=DecisionTransition.UNCHANGED,
            status=ApprovalStatus.PENDING,
            current_level=request.current_level,
            approvals_at_level=count,
            required_approvers=required,
            reason=f"{count}/{required} approvals at level {decision.level}",
        )

    if not workflow.require_all_levels or decision.level >= workflow.last_level:
        return DecisionEvaluation(
            transition=DecisionTransition.APPROVED,
            status=ApprovalStatus.APPROVED,
            current_level=decision.level,
            approvals_at_level=count,
            required_approvers=required,
            reason=f"Level {decision.level} satisfied, request approved",
        )

    return DecisionEvaluation(
        transition=DecisionTransition.ADVANCED,
        status=ApprovalStatus.PENDING,
        current_level=decision.level + 1,
        approvals_at_level=count,
        required_approvers=required,
        reason=f"Level {decision.level} satisfied, advanced to level {decision.level + 1}",
    )


def is_pending_for_user(
    workflow: ApprovalWorkflow,
    request: ApprovalRequest,
    user_id: UUID,
    role: str,
) -> bool:
    """True if the user could record a decision on the request right now."""
    if request.status != ApprovalStatus.PENDING:
        return False
    if user_id == request.requested_by and not workflow.allow_self_approval:
        return False
    level = select_decision_level(workflow, request, user_id, role)
    if level is None:
        return False
    return not request.has_decided(user_id, level.level)


def validate_workflow_definition(
    from_stage: str,
    to_stage: str,
    approval_chain: tuple[ApprovalLevel, ...],
) -> tuple[str, ...]:
    """Check the structural rules of a workflow definition.

    Returns:
        A tuple of error messages; empty when the definition is valid.
    """
    errors: list[str] = []

    if from_stage not in GRANT_STAGES:
        errors.append(f"unknown from_stage '{from_stage}'")
    if to_stage not in GRANT_STAGES:
        errors.append(f"unknown to_stage '{to_stage}'")
    if from_stage == to_stage:
        errors.append("from_stage and to_stage must differ")

    if not approval_chain:
        errors.append("approval_chain must have at least one level")
        return tuple(errors)

    numbers = sorted(level.level for level in approval_chain)
    if numbers != list(range(1, len(numbers) + 1)):
        errors.append(
            "approval levels must be contiguous starting at 1, got "
            + ", ".join(str(n) for n in numbers)
        )

    for level in approval_chain:
        errors.extend(_validate_level(level))

    return tuple(errors)


def _validate_level(level: ApprovalLevel) -> list[str]:
    errors: list[str] = []
    prefix = f"level {level.level}"

    if level.role is not None and level.specific_users:
        errors.append(f"{prefix}: set either role or specific_users, not both")
    elif level.role is None and not level.specific_users:
        errors.append(f"{prefix}: role or specific_users is required")

    if level.role is not None and level.role not in ORG_ROLES:
        errors.append(f"{prefix}: unknown role '{level.role}'")

    if level.required_approvers < 1:
        errors.append(f"{prefix}: required_approvers must be at least 1")
    elif level.specific_users and level.required_approvers > len(set(level.specific_users)):
        errors.append(
            f"{prefix}: required_approvers ({level.required_approvers}) exceeds "
            f"the {len(set(level.specific_users))} listed users"
        )

    return errors


def compute_expiry(requested_at: datetime, expiry_days: int) -> datetime:
    """Age threshold after which a pending request displays as expired."""
    return requested_at + timedelta(days=expiry_days)


def is_request_expired(request: ApprovalRequest, as_of: datetime) -> bool:
    """Derived ``expired`` state: pending and past ``expires_at``.

    Never stored; a pending request past expiry still accepts decisions.
    """
    if request.status != ApprovalStatus.PENDING or request.expires_at is None:
        return False
    return request.expires_at <= as_of
