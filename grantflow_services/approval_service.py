"""
grantflow_services.approval_service -- Approval request lifecycle.

Responsibility:
    Resolves the workflow guarding a stage transition, creates approval
    requests (or applies the transition immediately), records approver
    decisions and advances levels, cancels pending requests, and lists
    requests for an organization.  Rule evaluation is delegated to the
    pure approval engine; persistence to an ``ApprovalStore``; stage
    changes to a ``GrantStageGateway``; notifications to a
    ``NotificationDispatcher``.

Architecture position:
    Services layer.  May import from grantflow_engines/ (pure engines)
    and grantflow_kernel/ (domain, exceptions, logging).

Invariants enforced:
    - At most one active workflow applies to a transition; more is a
      configuration fault, never a silent choice.
    - At most one pending request per grant; while one is open the grant
      takes no other request, auto-approved ones included.
    - Status changes follow ``APPROVAL_TRANSITIONS``; terminal requests
      never change.
    - Decisions are recorded only on pending requests, once per user per
      level, never by the requester unless the workflow allows it.
    - Every decision saves the request under a version check, so two
      concurrent approvals cannot both read the same approval count.
    - The grant stage changes only when a transition becomes effective:
      unguarded, auto-approved, or fully approved.

Failure modes:
    - ConfigurationConflictError when several active workflows match.
    - ApprovalValidationError for unknown stages, stage mismatch, invalid
      decision values, or a rejection without a reason.
    - DuplicateApprovalRequestError when the grant already has a pending request.
    - ApprovalRequestNotFoundError / ApprovalAlreadyResolvedError.
    - InvalidApprovalTransitionError for a status change outside the table.
    - ForbiddenDecisionError / NotAnApproverError / DuplicateDecisionError.
    - ForbiddenError for cross-org access or unauthorized cancellation.
    - OptimisticLockError when a concurrent writer changed the request.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID, uuid4

from grantflow_engines.approval import (
    check_decision,
    compute_expiry,
    evaluate_decision,
    evaluate_initiation,
    is_pending_for_user,
    is_request_expired,
)
from grantflow_kernel.domain.approval import (
    APPROVAL_TRANSITIONS,
    GRANT_STAGES,
    Actor,
    ApprovalDecisionRecord,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStore,
    ApprovalWorkflow,
    DecisionResult,
    DecisionSource,
    DecisionTransition,
    DecisionType,
    DecisionViolation,
    GrantStageGateway,
    InitiationAction,
    InitiationResult,
    NotificationDispatcher,
    OutcomeKind,
    RequestFilters,
)
from grantflow_kernel.domain.clock import Clock, SystemClock
from grantflow_kernel.exceptions import (
    ApprovalAlreadyResolvedError,
    ApprovalRequestNotFoundError,
    ApprovalValidationError,
    ConfigurationConflictError,
    DuplicateApprovalRequestError,
    DuplicateDecisionError,
    ForbiddenDecisionError,
    ForbiddenError,
    InvalidApprovalTransitionError,
    NotAnApproverError,
    WorkflowNotFoundError,
)
from grantflow_kernel.logging_config import get_logger

logger = get_logger("services.approval")

DEFAULT_REQUEST_EXPIRY_DAYS = 7

_OUTCOME_FOR_TRANSITION = {
    DecisionTransition.ADVANCED: OutcomeKind.ADVANCED,
    DecisionTransition.APPROVED: OutcomeKind.APPROVED,
    DecisionTransition.REJECTED: OutcomeKind.REJECTED,
}


class ApprovalService:
    """Coordinates approval requests for grant stage transitions."""

    def __init__(
        self,
        store: ApprovalStore,
        stage_gateway: GrantStageGateway,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        request_expiry_days: int = DEFAULT_REQUEST_EXPIRY_DAYS,
    ) -> None:
        self._store = store
        self._stage_gateway = stage_gateway
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._request_expiry_days = request_expiry_days

    # -- workflow resolution -------------------------------------------------

    def resolve_workflow(
        self,
        org_id: UUID,
        from_stage: str,
        to_stage: str,
    ) -> ApprovalWorkflow | None:
        """Return the active workflow guarding ``from_stage -> to_stage``.

        Returns None when the transition is unguarded.

        Raises:
            ConfigurationConflictError: More than one active workflow matches.
        """
        workflows = self._store.find_active_workflows(org_id, from_stage, to_stage)
        if not workflows:
            return None

        if len(workflows) > 1:
            workflow_ids = tuple(str(w.workflow_id) for w in workflows)
            logger.error(
                "approval_workflow_configuration_conflict",
                extra={
                    "org_id": str(org_id),
                    "from_stage": from_stage,
                    "to_stage": to_stage,
                    "workflow_ids": workflow_ids,
                },
            )
            raise ConfigurationConflictError(
                str(org_id), from_stage, to_stage, workflow_ids,
            )

        return workflows[0]

    # -- initiation ----------------------------------------------------------

    def create_request(
        self,
        requester: Actor,
        grant_id: UUID,
        from_stage: str,
        to_stage: str,
        notes: str | None = None,
    ) -> InitiationResult:
        """Ask to move a grant from ``from_stage`` to ``to_stage``.

        Unguarded transitions are applied immediately.  Admins are
        auto-approved where the workflow allows it.  Otherwise a pending
        request is created at level 1.
        """
        self._validate_stages(from_stage, to_stage)

        current = self._stage_gateway.current_stage(grant_id)
        if current is not None and current != from_stage:
            raise ApprovalValidationError(
                "from_stage",
                f"grant is in stage '{current}', not '{from_stage}'",
            )

        workflow = self.resolve_workflow(requester.org_id, from_stage, to_stage)
        evaluation = evaluate_initiation(workflow, requester.role)

        if evaluation.action == InitiationAction.APPLY_IMMEDIATELY:
            self._stage_gateway.apply_stage(
                requester.org_id, grant_id, from_stage, to_stage,
            )
            logger.info(
                "stage_transition_applied",
                extra={
                    "grant_id": str(grant_id),
                    "from_stage": from_stage,
                    "to_stage": to_stage,
                    "reason": evaluation.reason,
                },
            )
            return InitiationResult(applied=True)

        existing = self._store.find_pending_request_for_grant(grant_id)
        if existing is not None:
            raise DuplicateApprovalRequestError(
                str(grant_id), str(existing.request_id),
            )

        if evaluation.action == InitiationAction.AUTO_APPROVE:
            return self._auto_approve(requester, workflow, grant_id, from_stage, to_stage, notes)

        now = self._clock.now()
        request = self._store.add_request(ApprovalRequest(
            request_id=uuid4(),
            org_id=requester.org_id,
            grant_id=grant_id,
            workflow_id=workflow.workflow_id,
            requested_by=requester.user_id,
            from_stage=from_stage,
            to_stage=to_stage,
            status=ApprovalStatus.PENDING,
            current_level=1,
            request_notes=notes,
            requested_at=now,
            expires_at=compute_expiry(now, self._request_expiry_days),
        ))

        logger.info(
            "approval_request_created",
            extra={
                "request_id": str(request.request_id),
                "workflow_id": str(workflow.workflow_id),
                "grant_id": str(grant_id),
                "from_stage": from_stage,
                "to_stage": to_stage,
            },
        )

        self._dispatch(self._outcome(
            OutcomeKind.REQUESTED, request, requester.user_id, level=1,
            workflow=workflow, notify_level=1,
            reason=evaluation.reason,
        ))

        return InitiationResult(applied=False, request=request)

    def _auto_approve(
        self,
        requester: Actor,
        workflow: ApprovalWorkflow,
        grant_id: UUID,
        from_stage: str,
        to_stage: str,
        notes: str | None,
    ) -> InitiationResult:
        now = self._clock.now()
        request_id = uuid4()
        policy_decision = ApprovalDecisionRecord(
            decision_id=uuid4(),
            request_id=request_id,
            approver_id=None,
            decision=DecisionType.APPROVED,
            level=1,
            comments="Auto-approved: requester is an organization admin",
            source=DecisionSource.POLICY,
            decided_at=now,
        )
        request = self._store.add_request(ApprovalRequest(
            request_id=request_id,
            org_id=requester.org_id,
            grant_id=grant_id,
            workflow_id=workflow.workflow_id,
            requested_by=requester.user_id,
            from_stage=from_stage,
            to_stage=to_stage,
            status=ApprovalStatus.APPROVED,
            current_level=1,
            request_notes=notes,
            requested_at=now,
            completed_at=now,
            decisions=(policy_decision,),
        ))

        self._stage_gateway.apply_stage(
            requester.org_id, grant_id, from_stage, to_stage,
        )

        logger.info(
            "approval_request_auto_approved",
            extra={
                "request_id": str(request_id),
                "workflow_id": str(workflow.workflow_id),
                "grant_id": str(grant_id),
            },
        )

        self._dispatch(self._outcome(
            OutcomeKind.AUTO_APPROVED, request, requester.user_id, level=1,
            reason=policy_decision.comments,
        ))

        return InitiationResult(applied=True, auto_approved=True, request=request)

    # -- decisions -----------------------------------------------------------

    def record_decision(
        self,
        request_id: UUID,
        actor: Actor,
        decision: DecisionType | str,
        comments: str | None = None,
    ) -> DecisionResult:
        """Record an approver's decision and move the request forward.

        Returns:
            DecisionResult with the saved request and the transition
            (``advanced``, ``approved``, ``rejected`` or ``unchanged``).
        """
        decision = self._parse_decision(decision)

        request = self._load_request(request_id, actor, for_update=True)
        self._check_transition(request)

        workflow = self._workflow_for(request)

        check = check_decision(
            workflow, request, actor.user_id, actor.role, decision, comments,
        )
        if not check.allowed:
            self._raise_violation(check.violation, request, actor, check.level)

        now = self._clock.now()
        record = ApprovalDecisionRecord(
            decision_id=uuid4(),
            request_id=request.request_id,
            approver_id=actor.user_id,
            decision=decision,
            level=check.level,
            comments=(comments or "").strip(),
            source=DecisionSource.HUMAN,
            decided_at=now,
        )
        evaluation = evaluate_decision(workflow, request, record)
        self._check_transition(request, evaluation.status)

        self._store.add_decision(record)

        terminal = evaluation.status != ApprovalStatus.PENDING
        saved = self._store.save_request(
            replace(
                request,
                status=evaluation.status,
                current_level=evaluation.current_level,
                rejection_reason=(
                    record.comments
                    if evaluation.transition == DecisionTransition.REJECTED
                    else request.rejection_reason
                ),
                completed_at=now if terminal else None,
            ),
            expected_version=request.version,
        )

        logger.info(
            "approval_decision_recorded",
            extra={
                "request_id": str(request_id),
                "actor_id": str(actor.user_id),
                "decision": decision.value,
                "approval_level": record.level,
                "transition": evaluation.transition.value,
                "approvals_at_level": evaluation.approvals_at_level,
                "required_approvers": evaluation.required_approvers,
            },
        )

        if evaluation.transition == DecisionTransition.APPROVED:
            self._stage_gateway.apply_stage(
                saved.org_id, saved.grant_id, saved.from_stage, saved.to_stage,
            )

        kind = _OUTCOME_FOR_TRANSITION.get(evaluation.transition)
        if kind is not None:
            advanced = evaluation.transition == DecisionTransition.ADVANCED
            self._dispatch(self._outcome(
                kind, saved, actor.user_id, level=record.level,
                workflow=workflow,
                notify_level=evaluation.current_level if advanced else None,
                next_level=evaluation.current_level if advanced else None,
                reason=record.comments or evaluation.reason,
            ))

        return DecisionResult(
            request=saved,
            transition=evaluation.transition,
            level=record.level,
            approvals_at_level=evaluation.approvals_at_level,
            required_approvers=evaluation.required_approvers,
        )

    def _raise_violation(
        self,
        violation: DecisionViolation,
        request: ApprovalRequest,
        actor: Actor,
        level: int | None,
    ) -> None:
        request_id = str(request.request_id)
        user_id = str(actor.user_id)

        logger.warning(
            "approval_decision_refused",
            extra={
                "request_id": request_id,
                "actor_id": user_id,
                "violation": violation.value,
            },
        )

        if violation == DecisionViolation.SELF_APPROVAL:
            raise ForbiddenDecisionError(request_id, user_id)
        if violation == DecisionViolation.NOT_AN_APPROVER:
            raise NotAnApproverError(request_id, user_id, request.current_level)
        if violation == DecisionViolation.DUPLICATE_DECISION:
            raise DuplicateDecisionError(request_id, user_id, level)
        raise ApprovalValidationError(
            "comments", "a reason is required when rejecting",
        )

    # -- cancellation --------------------------------------------------------

    def cancel_request(self, request_id: UUID, actor: Actor) -> ApprovalRequest:
        """Withdraw a pending request.  Requester or org admin only."""
        request = self._load_request(request_id, actor, for_update=True)

        if actor.user_id != request.requested_by and not actor.is_admin:
            raise ForbiddenError(
                "Only the requester or an organization admin can cancel a request"
            )
        self._check_transition(request, ApprovalStatus.CANCELLED)

        saved = self._store.save_request(
            replace(
                request,
                status=ApprovalStatus.CANCELLED,
                completed_at=self._clock.now(),
            ),
            expected_version=request.version,
        )

        logger.info(
            "approval_request_cancelled",
            extra={
                "request_id": str(request_id),
                "actor_id": str(actor.user_id),
            },
        )

        self._dispatch(self._outcome(
            OutcomeKind.CANCELLED, saved, actor.user_id, level=saved.current_level,
        ))

        return saved

    # -- queries -------------------------------------------------------------

    def get_request(self, request_id: UUID, actor: Actor) -> ApprovalRequest:
        return self._load_request(request_id, actor)

    def list_requests(
        self,
        org_id: UUID,
        filters: RequestFilters | None = None,
        actor: Actor | None = None,
    ) -> list[ApprovalRequest]:
        """Requests in an org, newest first.

        ``filters.pending_for_user`` keeps only requests the actor could
        decide on right now and requires ``actor``.
        """
        filters = filters or RequestFilters()
        requests = self._store.list_requests(
            org_id, status=filters.status, grant_id=filters.grant_id,
        )
        if not filters.pending_for_user:
            return requests

        if actor is None:
            raise ApprovalValidationError(
                "pending_for_user", "requires an authenticated actor",
            )

        workflows: dict[UUID, ApprovalWorkflow | None] = {}
        result = []
        for request in requests:
            if request.workflow_id is None:
                continue
            if request.workflow_id not in workflows:
                workflows[request.workflow_id] = self._store.get_workflow(request.workflow_id)
            workflow = workflows[request.workflow_id]
            if workflow is not None and is_pending_for_user(
                workflow, request, actor.user_id, actor.role,
            ):
                result.append(request)
        return result

    def is_expired(self, request: ApprovalRequest) -> bool:
        """Whether a pending request has aged past its expiry (display only)."""
        return is_request_expired(request, self._clock.now())

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _validate_stages(from_stage: str, to_stage: str) -> None:
        if from_stage not in GRANT_STAGES:
            raise ApprovalValidationError("from_stage", f"unknown stage '{from_stage}'")
        if to_stage not in GRANT_STAGES:
            raise ApprovalValidationError("to_stage", f"unknown stage '{to_stage}'")
        if from_stage == to_stage:
            raise ApprovalValidationError("to_stage", "must differ from from_stage")

    @staticmethod
    def _parse_decision(decision: DecisionType | str) -> DecisionType:
        try:
            return DecisionType(decision)
        except ValueError:
            raise ApprovalValidationError(
                "decision", f"must be 'approved' or 'rejected', got '{decision}'",
            ) from None

    def _load_request(
        self,
        request_id: UUID,
        actor: Actor,
        for_update: bool = False,
    ) -> ApprovalRequest:
        request = self._store.get_request(request_id, for_update=for_update)
        if request is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        if request.org_id != actor.org_id:
            raise ForbiddenError("Approval request belongs to another organization")
        return request

    @staticmethod
    def _check_transition(
        request: ApprovalRequest,
        new_status: ApprovalStatus | None = None,
    ) -> None:
        """Refuse status changes the lifecycle table does not allow.

        Without ``new_status`` only checks that the request can still change.
        Keeping the current status (a level advance) is always allowed on an
        open request.
        """
        allowed = APPROVAL_TRANSITIONS.get(request.status, frozenset())
        if not allowed:
            raise ApprovalAlreadyResolvedError(
                str(request.request_id), request.status.value,
            )
        if new_status is None or new_status == request.status:
            return
        if new_status not in allowed:
            raise InvalidApprovalTransitionError(
                request.status.value, new_status.value,
            )

    def _workflow_for(self, request: ApprovalRequest) -> ApprovalWorkflow:
        workflow = (
            self._store.get_workflow(request.workflow_id)
            if request.workflow_id is not None
            else None
        )
        if workflow is None:
            raise WorkflowNotFoundError(str(request.workflow_id))
        return workflow

    def _outcome(
        self,
        kind: OutcomeKind,
        request: ApprovalRequest,
        actor_id: UUID | None,
        level: int,
        workflow: ApprovalWorkflow | None = None,
        notify_level: int | None = None,
        next_level: int | None = None,
        reason: str = "",
    ) -> ApprovalOutcome:
        """Build an outcome addressed to the approvers of ``notify_level``,
        or to the requester when no level is given."""
        notify_users: tuple[UUID, ...] = (request.requested_by,)
        notify_role: str | None = None

        if notify_level is not None and workflow is not None:
            approvers = workflow.get_level(notify_level)
            notify_users = ()
            if approvers is not None:
                notify_role = approvers.role
                notify_users = tuple(
                    u for u in approvers.specific_users
                    if u != request.requested_by
                )

        return ApprovalOutcome(
            kind=kind,
            request_id=request.request_id,
            org_id=request.org_id,
            grant_id=request.grant_id,
            workflow_id=request.workflow_id,
            from_stage=request.from_stage,
            to_stage=request.to_stage,
            actor_id=actor_id,
            level=level,
            occurred_at=self._clock.now(),
            reason=reason,
            next_level=next_level,
            notify_users=notify_users,
            notify_role=notify_role,
        )

    def _dispatch(self, outcome: ApprovalOutcome) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher.dispatch(outcome)
        except Exception:
            # Notification delivery never undoes a recorded decision.
            logger.exception(
                "approval_notification_failed",
                extra={
                    "request_id": str(outcome.request_id),
                    "outcome": outcome.kind.value,
                },
            )
