"""
Tests for ApprovalService.

Covers the request lifecycle end to end against a real (SQLite) store:
initiation (immediate, auto-approved, pending), decision recording and
level advancement, rejection, cancellation, listing, derived expiry, and
the outcomes handed to the notification dispatcher.
"""

from uuid import uuid4

import pytest

from grantflow_kernel.domain.approval import (
    Actor,
    ApprovalLevel,
    ApprovalStatus,
    DecisionSource,
    DecisionTransition,
    DecisionType,
    OrgRole,
    OutcomeKind,
    RequestFilters,
    WorkflowPatch,
)
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
    WorkflowValidationError,
)
from grantflow_services.approval_service import ApprovalService

DRAFTING = "drafting"
SUBMITTED = "submitted"


@pytest.fixture
def reviewer(org_id):
    """A contributor named as a specific-user approver."""
    return Actor(user_id=uuid4(), org_id=org_id, role=OrgRole.CONTRIBUTOR)


@pytest.fixture
def two_level_workflow(create_workflow, reviewer):
    """Level 1: any admin.  Level 2: the named reviewer."""
    return create_workflow(
        ApprovalLevel(level=1, role="admin"),
        ApprovalLevel(level=2, specific_users=(reviewer.user_id,)),
    )


def _submit(approval_service, requester, grant_id, notes=None):
    result = approval_service.create_request(
        requester, grant_id, DRAFTING, SUBMITTED, notes=notes,
    )
    return result.request


# =============================================================================
# Workflow resolution
# =============================================================================


class TestResolveWorkflow:

    def test_unguarded_transition_resolves_to_none(self, approval_service, org_id):
        assert approval_service.resolve_workflow(org_id, DRAFTING, SUBMITTED) is None

    def test_active_workflow_is_returned(self, approval_service, create_workflow, org_id):
        workflow = create_workflow()

        resolved = approval_service.resolve_workflow(org_id, DRAFTING, SUBMITTED)

        assert resolved.workflow_id == workflow.workflow_id

    def test_inactive_workflow_is_ignored(self, approval_service, create_workflow, org_id):
        create_workflow(is_active=False)

        assert approval_service.resolve_workflow(org_id, DRAFTING, SUBMITTED) is None

    def test_other_org_workflow_is_ignored(self, approval_service, create_workflow):
        create_workflow()

        assert approval_service.resolve_workflow(uuid4(), DRAFTING, SUBMITTED) is None

    def test_multiple_active_workflows_is_a_configuration_conflict(
        self, stage_gateway, workflow_service, org_id, make_definition, captured_logs,
    ):
        first = workflow_service.create_workflow(org_id, make_definition())
        second = workflow_service.create_workflow(
            org_id, make_definition(name="Duplicate", is_active=False),
        )

        class DoubleMatchStore:
            def find_active_workflows(self, *args, **kwargs):
                return [first, second]

        service = ApprovalService(DoubleMatchStore(), stage_gateway)

        with pytest.raises(ConfigurationConflictError) as exc_info:
            service.resolve_workflow(org_id, DRAFTING, SUBMITTED)

        assert set(exc_info.value.workflow_ids) == {
            str(first.workflow_id), str(second.workflow_id),
        }
        assert exc_info.value.http_status == 500
        errors = [r for r in captured_logs() if r["level"] == "ERROR"]
        assert errors[0]["message"] == "approval_workflow_configuration_conflict"


# =============================================================================
# Initiation
# =============================================================================


class TestCreateRequest:

    def test_unguarded_transition_applies_immediately(
        self, approval_service, requester, grant_id, stage_gateway, dispatcher,
    ):
        result = approval_service.create_request(requester, grant_id, DRAFTING, SUBMITTED)

        assert result.applied is True
        assert result.request is None
        assert stage_gateway.stages[grant_id] == SUBMITTED
        assert dispatcher.outcomes == []

    def test_guarded_transition_creates_pending_request(
        self, approval_service, create_workflow, requester, grant_id, stage_gateway, clock,
    ):
        workflow = create_workflow()

        result = approval_service.create_request(
            requester, grant_id, DRAFTING, SUBMITTED, notes="Budget attached",
        )

        request = result.request
        assert result.applied is False
        assert request.status == ApprovalStatus.PENDING
        assert request.current_level == 1
        assert request.workflow_id == workflow.workflow_id
        assert request.requested_by == requester.user_id
        assert request.request_notes == "Budget attached"
        assert request.requested_at == clock.now()
        assert (request.expires_at - request.requested_at).days == 7
        assert stage_gateway.stages[grant_id] == DRAFTING

    def test_expiry_window_is_configurable(
        self, store, stage_gateway, clock, create_workflow, requester, grant_id,
    ):
        create_workflow()
        service = ApprovalService(store, stage_gateway, clock=clock, request_expiry_days=3)

        request = service.create_request(requester, grant_id, DRAFTING, SUBMITTED).request

        assert (request.expires_at - request.requested_at).days == 3

    def test_requested_outcome_addresses_level_one(
        self, approval_service, create_workflow, requester, grant_id, dispatcher,
    ):
        create_workflow()

        request = _submit(approval_service, requester, grant_id)

        [outcome] = dispatcher.outcomes
        assert outcome.kind == OutcomeKind.REQUESTED
        assert outcome.request_id == request.request_id
        assert outcome.level == 1
        assert outcome.notify_role == "admin"
        assert outcome.notify_users == ()

    def test_requester_is_not_notified_as_approver(
        self, approval_service, create_workflow, requester, reviewer, grant_id, dispatcher,
    ):
        create_workflow(
            ApprovalLevel(
                level=1,
                specific_users=(requester.user_id, reviewer.user_id),
            ),
            allow_self_approval=True,
        )

        _submit(approval_service, requester, grant_id)

        assert dispatcher.outcomes[0].notify_users == (reviewer.user_id,)

    def test_second_pending_request_for_grant_rejected(
        self, approval_service, create_workflow, requester, grant_id,
    ):
        create_workflow()
        first = _submit(approval_service, requester, grant_id)

        with pytest.raises(DuplicateApprovalRequestError) as exc_info:
            _submit(approval_service, requester, grant_id)

        assert exc_info.value.existing_request_id == str(first.request_id)

    def test_stage_mismatch_rejected(
        self, approval_service, create_workflow, requester, grant_id, stage_gateway,
    ):
        create_workflow()
        stage_gateway.stages[grant_id] = "researching"

        with pytest.raises(ApprovalValidationError) as exc_info:
            _submit(approval_service, requester, grant_id)

        assert exc_info.value.field == "from_stage"

    def test_unknown_grant_stage_is_not_checked(
        self, approval_service, create_workflow, requester,
    ):
        create_workflow()

        request = _submit(approval_service, requester, uuid4())

        assert request.status == ApprovalStatus.PENDING

    @pytest.mark.parametrize(
        "from_stage,to_stage,field",
        [
            ("ideation", SUBMITTED, "from_stage"),
            (DRAFTING, "funded", "to_stage"),
            (DRAFTING, DRAFTING, "to_stage"),
        ],
    )
    def test_invalid_stages_rejected(
        self, approval_service, requester, grant_id, from_stage, to_stage, field,
    ):
        with pytest.raises(ApprovalValidationError) as exc_info:
            approval_service.create_request(requester, grant_id, from_stage, to_stage)

        assert exc_info.value.field == field


class TestAutoApproval:

    def test_admin_is_auto_approved(
        self, approval_service, create_workflow, admin, grant_id, stage_gateway, dispatcher,
    ):
        create_workflow(auto_approve_admin=True)

        result = approval_service.create_request(admin, grant_id, DRAFTING, SUBMITTED)

        assert result.applied is True
        assert result.auto_approved is True
        request = result.request
        assert request.status == ApprovalStatus.APPROVED
        assert request.completed_at is not None
        [decision] = request.decisions
        assert decision.source == DecisionSource.POLICY
        assert decision.approver_id is None
        assert decision.decision == DecisionType.APPROVED
        assert stage_gateway.stages[grant_id] == SUBMITTED
        assert dispatcher.kinds() == [OutcomeKind.AUTO_APPROVED]

    def test_contributor_still_needs_approval(
        self, approval_service, create_workflow, requester, grant_id,
    ):
        create_workflow(auto_approve_admin=True)

        result = approval_service.create_request(requester, grant_id, DRAFTING, SUBMITTED)

        assert result.applied is False
        assert result.request.status == ApprovalStatus.PENDING

    def test_admin_not_auto_approved_while_a_request_is_pending(
        self, approval_service, create_workflow, requester, admin, grant_id,
        stage_gateway, dispatcher,
    ):
        create_workflow(auto_approve_admin=True)
        pending = _submit(approval_service, requester, grant_id)
        dispatcher.drain()

        with pytest.raises(DuplicateApprovalRequestError) as exc_info:
            approval_service.create_request(admin, grant_id, DRAFTING, SUBMITTED)

        assert exc_info.value.existing_request_id == str(pending.request_id)
        assert stage_gateway.stages[grant_id] == DRAFTING
        assert dispatcher.outcomes == []

    def test_admin_without_flag_needs_approval(
        self, approval_service, create_workflow, admin, grant_id,
    ):
        create_workflow()

        result = approval_service.create_request(admin, grant_id, DRAFTING, SUBMITTED)

        assert result.request.status == ApprovalStatus.PENDING


# =============================================================================
# Decisions
# =============================================================================


class TestRecordDecision:

    def test_single_level_approval_applies_stage(
        self, approval_service, create_workflow, requester, admin, grant_id,
        stage_gateway, dispatcher, clock,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        dispatcher.drain()
        clock.advance(60)

        result = approval_service.record_decision(
            request.request_id, admin, "approved", comments="Go",
        )

        assert result.transition == DecisionTransition.APPROVED
        assert result.level == 1
        assert result.request.status == ApprovalStatus.APPROVED
        assert result.request.completed_at == clock.now()
        assert result.request.version == request.version + 1
        assert stage_gateway.applied == [
            (requester.org_id, grant_id, DRAFTING, SUBMITTED),
        ]
        [outcome] = dispatcher.outcomes
        assert outcome.kind == OutcomeKind.APPROVED
        assert outcome.notify_users == (requester.user_id,)

    def test_multi_level_chain_advances_then_approves(
        self, approval_service, two_level_workflow, requester, admin, reviewer,
        grant_id, stage_gateway, dispatcher,
    ):
        request = _submit(approval_service, requester, grant_id)
        dispatcher.drain()

        first = approval_service.record_decision(request.request_id, admin, DecisionType.APPROVED)

        assert first.transition == DecisionTransition.ADVANCED
        assert first.request.status == ApprovalStatus.PENDING
        assert first.request.current_level == 2
        assert stage_gateway.applied == []
        [advanced] = dispatcher.drain()
        assert advanced.kind == OutcomeKind.ADVANCED
        assert advanced.next_level == 2
        assert advanced.notify_users == (reviewer.user_id,)

        second = approval_service.record_decision(request.request_id, reviewer, "approved")

        assert second.transition == DecisionTransition.APPROVED
        assert second.level == 2
        assert second.request.status == ApprovalStatus.APPROVED
        assert len(second.request.decisions) == 2
        assert stage_gateway.stages[grant_id] == SUBMITTED

    def test_two_approvals_then_one(
        self, approval_service, create_workflow, requester, admin, second_admin, reviewer,
        grant_id,
    ):
        create_workflow(
            ApprovalLevel(level=1, role="admin", required_approvers=2),
            ApprovalLevel(level=2, specific_users=(reviewer.user_id,)),
        )
        request = _submit(approval_service, requester, grant_id)

        approval_service.record_decision(request.request_id, admin, "approved")
        advanced = approval_service.record_decision(request.request_id, second_admin, "approved")

        assert advanced.transition == DecisionTransition.ADVANCED
        assert advanced.request.status == ApprovalStatus.PENDING
        assert advanced.request.current_level == 2

        final = approval_service.record_decision(request.request_id, reviewer, "approved")

        assert final.request.status == ApprovalStatus.APPROVED
        assert final.request.version == request.version + 3

    def test_later_level_approver_waits_for_current_level(
        self, approval_service, two_level_workflow, requester, reviewer, grant_id,
    ):
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(NotAnApproverError) as exc_info:
            approval_service.record_decision(request.request_id, reviewer, "approved")

        assert exc_info.value.level == 1

    def test_required_approvers_counted_as_distinct_users(
        self, approval_service, create_workflow, requester, admin, second_admin, grant_id,
        dispatcher,
    ):
        create_workflow(ApprovalLevel(level=1, role="admin", required_approvers=2))
        request = _submit(approval_service, requester, grant_id)
        dispatcher.drain()

        first = approval_service.record_decision(request.request_id, admin, "approved")

        assert first.transition == DecisionTransition.UNCHANGED
        assert first.approvals_at_level == 1
        assert first.required_approvers == 2
        assert first.request.status == ApprovalStatus.PENDING
        assert first.request.version == request.version + 1
        assert dispatcher.outcomes == []

        second = approval_service.record_decision(request.request_id, second_admin, "approved")

        assert second.transition == DecisionTransition.APPROVED
        assert second.approvals_at_level == 2

    def test_same_user_cannot_decide_twice_at_a_level(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow(ApprovalLevel(level=1, role="admin", required_approvers=2))
        request = _submit(approval_service, requester, grant_id)
        approval_service.record_decision(request.request_id, admin, "approved")

        with pytest.raises(DuplicateDecisionError):
            approval_service.record_decision(request.request_id, admin, "approved")

    def test_same_user_may_approve_at_each_level(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow(
            ApprovalLevel(level=1, role="admin"),
            ApprovalLevel(level=2, specific_users=(admin.user_id,)),
        )
        request = _submit(approval_service, requester, grant_id)

        approval_service.record_decision(request.request_id, admin, "approved")
        result = approval_service.record_decision(request.request_id, admin, "approved")

        assert result.transition == DecisionTransition.APPROVED

    def test_current_level_approves_when_all_levels_not_required(
        self, approval_service, create_workflow, requester, admin, reviewer, grant_id,
        stage_gateway,
    ):
        create_workflow(
            ApprovalLevel(level=1, role="admin"),
            ApprovalLevel(level=2, specific_users=(reviewer.user_id,)),
            require_all_levels=False,
        )
        request = _submit(approval_service, requester, grant_id)

        result = approval_service.record_decision(request.request_id, admin, "approved")

        assert result.transition == DecisionTransition.APPROVED
        assert result.level == 1
        assert result.request.current_level == 1
        assert stage_gateway.stages[grant_id] == SUBMITTED

    def test_later_level_approver_refused_when_all_levels_not_required(
        self, approval_service, create_workflow, requester, admin, grant_id, stage_gateway,
    ):
        level_one = Actor(user_id=uuid4(), org_id=admin.org_id, role=OrgRole.CONTRIBUTOR)
        create_workflow(
            ApprovalLevel(level=1, specific_users=(level_one.user_id,)),
            ApprovalLevel(level=2, role="admin"),
            require_all_levels=False,
        )
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(NotAnApproverError) as exc_info:
            approval_service.record_decision(request.request_id, admin, "approved")

        assert exc_info.value.level == 1
        stored = approval_service.get_request(request.request_id, requester)
        assert stored.status == ApprovalStatus.PENDING
        assert stored.current_level == 1
        assert stored.decisions == ()
        assert stage_gateway.stages[grant_id] == DRAFTING

    def test_self_approval_refused(
        self, approval_service, create_workflow, admin, grant_id, captured_logs,
    ):
        create_workflow()
        request = _submit(approval_service, admin, grant_id)

        with pytest.raises(ForbiddenDecisionError):
            approval_service.record_decision(request.request_id, admin, "approved")

        refused = [r for r in captured_logs() if r["message"] == "approval_decision_refused"]
        assert refused[0]["violation"] == "self_approval"

    def test_self_approval_allowed_by_workflow(
        self, approval_service, create_workflow, admin, grant_id,
    ):
        create_workflow(allow_self_approval=True)
        request = _submit(approval_service, admin, grant_id)

        result = approval_service.record_decision(request.request_id, admin, "approved")

        assert result.request.status == ApprovalStatus.APPROVED

    def test_non_approver_refused(
        self, approval_service, create_workflow, requester, contributor, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(NotAnApproverError):
            approval_service.record_decision(request.request_id, contributor, "approved")

    def test_decision_on_resolved_request_refused(
        self, approval_service, create_workflow, requester, admin, second_admin, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        approval_service.record_decision(request.request_id, admin, "approved")

        with pytest.raises(ApprovalAlreadyResolvedError) as exc_info:
            approval_service.record_decision(request.request_id, second_admin, "approved")

        assert exc_info.value.status == "approved"

    def test_invalid_decision_value_refused(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(ApprovalValidationError) as exc_info:
            approval_service.record_decision(request.request_id, admin, "maybe")

        assert exc_info.value.field == "decision"

    def test_unknown_request(self, approval_service, admin):
        with pytest.raises(ApprovalRequestNotFoundError):
            approval_service.record_decision(uuid4(), admin, "approved")

    def test_other_org_cannot_decide(
        self, approval_service, create_workflow, requester, outsider, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(ForbiddenError):
            approval_service.record_decision(request.request_id, outsider, "approved")

    def test_pending_request_uses_current_chain(
        self, approval_service, workflow_service, create_workflow, requester, admin,
        reviewer, grant_id,
    ):
        workflow = create_workflow()
        request = _submit(approval_service, requester, grant_id)
        workflow_service.update_workflow(
            workflow.workflow_id,
            WorkflowPatch(approval_chain=(
                ApprovalLevel(level=1, specific_users=(reviewer.user_id,)),
            )),
        )

        with pytest.raises(NotAnApproverError):
            approval_service.record_decision(request.request_id, admin, "approved")

        result = approval_service.record_decision(request.request_id, reviewer, "approved")
        assert result.transition == DecisionTransition.APPROVED

    def test_chain_cannot_drop_the_level_a_request_waits_at(
        self, approval_service, workflow_service, create_workflow, requester, admin,
        second_admin, grant_id,
    ):
        workflow = create_workflow(
            ApprovalLevel(level=1, role="admin"),
            ApprovalLevel(level=2, role="admin"),
        )
        request = _submit(approval_service, requester, grant_id)
        approval_service.record_decision(request.request_id, admin, "approved")

        with pytest.raises(WorkflowValidationError) as exc_info:
            workflow_service.update_workflow(
                workflow.workflow_id,
                WorkflowPatch(approval_chain=(ApprovalLevel(level=1, role="admin"),)),
            )

        assert any("level 2" in e for e in exc_info.value.errors)
        assert len(workflow_service.get_workflow(workflow.workflow_id).approval_chain) == 2
        result = approval_service.record_decision(
            request.request_id, second_admin, "approved",
        )
        assert result.transition == DecisionTransition.APPROVED
        assert result.request.current_level == 2

    def test_chain_may_shrink_to_the_pending_level(
        self, approval_service, workflow_service, create_workflow, requester, admin,
        second_admin, grant_id,
    ):
        workflow = create_workflow(
            ApprovalLevel(level=1, role="admin"),
            ApprovalLevel(level=2, role="admin"),
            ApprovalLevel(level=3, role="admin"),
        )
        request = _submit(approval_service, requester, grant_id)
        approval_service.record_decision(request.request_id, admin, "approved")

        updated = workflow_service.update_workflow(
            workflow.workflow_id,
            WorkflowPatch(approval_chain=(
                ApprovalLevel(level=1, role="admin"),
                ApprovalLevel(level=2, role="admin"),
            )),
        )

        assert updated.last_level == 2
        result = approval_service.record_decision(
            request.request_id, second_admin, "approved",
        )
        assert result.transition == DecisionTransition.APPROVED

    def test_status_changes_follow_the_lifecycle_table(
        self, approval_service, create_workflow, requester, admin, grant_id,
        stage_gateway, monkeypatch,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        monkeypatch.setattr(
            "grantflow_services.approval_service.APPROVAL_TRANSITIONS",
            {
                ApprovalStatus.PENDING: frozenset({ApprovalStatus.CANCELLED}),
                ApprovalStatus.CANCELLED: frozenset(),
            },
        )

        with pytest.raises(InvalidApprovalTransitionError) as exc_info:
            approval_service.record_decision(request.request_id, admin, "approved")

        assert exc_info.value.from_status == "pending"
        assert exc_info.value.to_status == "approved"
        stored = approval_service.get_request(request.request_id, requester)
        assert stored.status == ApprovalStatus.PENDING
        assert stored.decisions == ()
        assert stage_gateway.stages[grant_id] == DRAFTING

        cancelled = approval_service.cancel_request(request.request_id, requester)
        assert cancelled.status == ApprovalStatus.CANCELLED


class TestRejection:

    def test_rejection_requires_reason(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(ApprovalValidationError) as exc_info:
            approval_service.record_decision(request.request_id, admin, "rejected", comments="  ")

        assert exc_info.value.field == "comments"

    def test_rejection_is_terminal_and_keeps_stage(
        self, approval_service, two_level_workflow, requester, admin, grant_id,
        stage_gateway, dispatcher,
    ):
        request = _submit(approval_service, requester, grant_id)
        dispatcher.drain()

        result = approval_service.record_decision(
            request.request_id, admin, "rejected", comments="Budget incomplete",
        )

        assert result.transition == DecisionTransition.REJECTED
        assert result.request.status == ApprovalStatus.REJECTED
        assert result.request.rejection_reason == "Budget incomplete"
        assert result.request.completed_at is not None
        assert stage_gateway.stages[grant_id] == DRAFTING
        [outcome] = dispatcher.outcomes
        assert outcome.kind == OutcomeKind.REJECTED
        assert outcome.reason == "Budget incomplete"
        assert outcome.notify_users == (requester.user_id,)

    def test_rejected_grant_can_be_resubmitted(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        approval_service.record_decision(request.request_id, admin, "rejected", comments="No")

        again = _submit(approval_service, requester, grant_id)

        assert again.request_id != request.request_id
        assert again.status == ApprovalStatus.PENDING


# =============================================================================
# Cancellation
# =============================================================================


class TestCancelRequest:

    def test_requester_cancels(
        self, approval_service, create_workflow, requester, grant_id, dispatcher,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        dispatcher.drain()

        cancelled = approval_service.cancel_request(request.request_id, requester)

        assert cancelled.status == ApprovalStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert dispatcher.kinds() == [OutcomeKind.CANCELLED]

    def test_admin_cancels(self, approval_service, create_workflow, requester, admin, grant_id):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        cancelled = approval_service.cancel_request(request.request_id, admin)

        assert cancelled.status == ApprovalStatus.CANCELLED

    def test_other_contributor_cannot_cancel(
        self, approval_service, create_workflow, requester, contributor, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        with pytest.raises(ForbiddenError):
            approval_service.cancel_request(request.request_id, contributor)

    def test_resolved_request_cannot_be_cancelled(
        self, approval_service, create_workflow, requester, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        approval_service.cancel_request(request.request_id, requester)

        with pytest.raises(ApprovalAlreadyResolvedError):
            approval_service.cancel_request(request.request_id, requester)

    def test_cancelled_request_accepts_no_decisions(
        self, approval_service, create_workflow, requester, admin, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        approval_service.cancel_request(request.request_id, requester)

        with pytest.raises(ApprovalAlreadyResolvedError):
            approval_service.record_decision(request.request_id, admin, "approved")

    def test_cancelling_frees_the_grant(
        self, approval_service, create_workflow, requester, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        approval_service.cancel_request(request.request_id, requester)

        assert _submit(approval_service, requester, grant_id).status == ApprovalStatus.PENDING


# =============================================================================
# Queries
# =============================================================================


class TestListRequests:

    def test_filters_by_status_and_grant(
        self, approval_service, create_workflow, requester, stage_gateway, clock,
    ):
        create_workflow()
        grants = [uuid4(), uuid4()]
        requests = []
        for grant in grants:
            stage_gateway.stages[grant] = DRAFTING
            requests.append(_submit(approval_service, requester, grant))
            clock.advance(1)
        approval_service.cancel_request(requests[0].request_id, requester)

        org_id = requester.org_id
        everything = approval_service.list_requests(org_id)
        pending = approval_service.list_requests(
            org_id, RequestFilters(status=ApprovalStatus.PENDING),
        )
        by_grant = approval_service.list_requests(org_id, RequestFilters(grant_id=grants[0]))

        assert [r.request_id for r in everything] == [
            requests[1].request_id, requests[0].request_id,
        ]
        assert [r.request_id for r in pending] == [requests[1].request_id]
        assert [r.request_id for r in by_grant] == [requests[0].request_id]

    def test_other_org_requests_not_listed(
        self, approval_service, create_workflow, requester, grant_id,
    ):
        create_workflow()
        _submit(approval_service, requester, grant_id)

        assert approval_service.list_requests(uuid4()) == []

    def test_pending_for_user_follows_the_live_level(
        self, approval_service, two_level_workflow, requester, admin, reviewer, grant_id,
    ):
        request = _submit(approval_service, requester, grant_id)
        mine = RequestFilters(pending_for_user=True)
        org_id = requester.org_id

        assert len(approval_service.list_requests(org_id, mine, actor=admin)) == 1
        assert approval_service.list_requests(org_id, mine, actor=reviewer) == []
        assert approval_service.list_requests(org_id, mine, actor=requester) == []

        approval_service.record_decision(request.request_id, admin, "approved")

        assert approval_service.list_requests(org_id, mine, actor=admin) == []
        assert len(approval_service.list_requests(org_id, mine, actor=reviewer)) == 1

    def test_pending_for_user_requires_actor(self, approval_service, org_id):
        with pytest.raises(ApprovalValidationError):
            approval_service.list_requests(org_id, RequestFilters(pending_for_user=True))

    def test_get_request_checks_org(
        self, approval_service, create_workflow, requester, outsider, grant_id,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)

        assert approval_service.get_request(request.request_id, requester) == request
        with pytest.raises(ForbiddenError):
            approval_service.get_request(request.request_id, outsider)


class TestExpiry:

    def test_expired_is_derived_not_stored(
        self, approval_service, create_workflow, requester, admin, grant_id, clock,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        assert approval_service.is_expired(request) is False

        clock.advance(7 * 24 * 3600)

        stored = approval_service.get_request(request.request_id, requester)
        assert stored.status == ApprovalStatus.PENDING
        assert approval_service.is_expired(stored) is True

    def test_expired_request_still_accepts_decisions(
        self, approval_service, create_workflow, requester, admin, grant_id, clock,
    ):
        create_workflow()
        request = _submit(approval_service, requester, grant_id)
        clock.advance(30 * 24 * 3600)

        result = approval_service.record_decision(request.request_id, admin, "approved")

        assert result.request.status == ApprovalStatus.APPROVED
        assert approval_service.is_expired(result.request) is False


# =============================================================================
# Notifications
# =============================================================================


class TestNotificationFailures:

    def test_dispatcher_failure_does_not_undo_the_request(
        self, store, stage_gateway, clock, create_workflow, requester, grant_id, captured_logs,
    ):
        class BrokenDispatcher:
            def dispatch(self, outcome):
                raise RuntimeError("mail relay down")

        create_workflow()
        service = ApprovalService(store, stage_gateway, BrokenDispatcher(), clock)

        request = _submit(service, requester, grant_id)

        assert store.get_request(request.request_id).status == ApprovalStatus.PENDING
        failures = [
            r for r in captured_logs() if r["message"] == "approval_notification_failed"
        ]
        assert failures[0]["exc_message"] == "mail relay down"
        assert failures[0]["outcome"] == "requested"

    def test_no_dispatcher_is_allowed(
        self, store, stage_gateway, clock, create_workflow, requester, grant_id,
    ):
        create_workflow()
        service = ApprovalService(store, stage_gateway, clock=clock)

        assert _submit(service, requester, grant_id).status == ApprovalStatus.PENDING
