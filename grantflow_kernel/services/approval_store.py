"""
SqlApprovalStore -- SQLAlchemy implementation of ``ApprovalStore``.

Responsibility:
    Persists approval workflows, requests, and decisions and answers the
    lookups the approval services need.  Reads delegate to
    ``ApprovalSelector``; writes flush into the caller's transaction.

Architecture position:
    Kernel > Services.  May import from domain/, models/, selectors/, db/.

Invariants enforced:
    - Request updates are version-checked: ``UPDATE ... WHERE version =
      :expected``.  Zero affected rows means another writer got there first.
    - ``get_request(for_update=True)`` takes a row lock (``SELECT ... FOR
      UPDATE``) on backends that support it.
    - Unique-index races surface as typed conflicts, not IntegrityError.

Failure modes:
    - OptimisticLockError when the expected version no longer matches.
    - DuplicateDecisionError on a second decision by the same user at the
      same level.
    - DuplicateApprovalRequestError on a second pending request for a grant.
    - ConflictingWorkflowError on a second active workflow for a transition.
    - WorkflowNotFoundError / ApprovalRequestNotFoundError on unknown ids
      passed to write operations.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from grantflow_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
)
from grantflow_kernel.exceptions import (
    ApprovalRequestNotFoundError,
    ConflictingWorkflowError,
    DuplicateApprovalRequestError,
    DuplicateDecisionError,
    OptimisticLockError,
    WorkflowNotFoundError,
)
from grantflow_kernel.logging_config import get_logger
from grantflow_kernel.models.approval import (
    ApprovalDecisionModel,
    ApprovalRequestModel,
    ApprovalWorkflowModel,
)
from grantflow_kernel.selectors.approval_selector import ApprovalSelector
from grantflow_kernel.services.base import BaseService

logger = get_logger("kernel.approval_store")


class SqlApprovalStore(BaseService[ApprovalRequestModel]):
    """Session-bound approval persistence."""

    def __init__(self, session):
        super().__init__(session)
        self._selector = ApprovalSelector(session)

    # -- workflows ---------------------------------------------------------

    def find_active_workflows(
        self,
        org_id: UUID,
        from_stage: str,
        to_stage: str,
        exclude_workflow_id: UUID | None = None,
    ) -> list[ApprovalWorkflow]:
        return self._selector.find_active_workflows(
            org_id, from_stage, to_stage, exclude_workflow_id,
        )

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow | None:
        return self._selector.get_workflow(workflow_id)

    def list_workflows(
        self, org_id: UUID, active_only: bool = False,
    ) -> list[ApprovalWorkflow]:
        return self._selector.list_workflows(org_id, active_only)

    def add_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        model = ApprovalWorkflowModel.from_dto(workflow)
        self.session.add(model)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictingWorkflowError(
                str(workflow.org_id), workflow.from_stage, workflow.to_stage,
            ) from exc
        return model.to_dto()

    def update_workflow(self, workflow: ApprovalWorkflow) -> ApprovalWorkflow:
        model = self._load_workflow_model(workflow.workflow_id)
        model.apply_dto(workflow)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictingWorkflowError(
                str(workflow.org_id), workflow.from_stage, workflow.to_stage,
            ) from exc
        return model.to_dto()

    def delete_workflow(self, workflow_id: UUID) -> None:
        model = self._load_workflow_model(workflow_id)
        self.session.delete(model)
        self.session.flush()

    def has_pending_requests(self, workflow_id: UUID) -> bool:
        return self._selector.has_pending_requests(workflow_id)

    def max_pending_level(self, workflow_id: UUID) -> int | None:
        return self._selector.max_pending_level(workflow_id)

    # -- requests ----------------------------------------------------------

    def find_pending_request_for_grant(
        self, grant_id: UUID,
    ) -> ApprovalRequest | None:
        return self._selector.find_pending_request_for_grant(grant_id)

    def add_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """Insert a request together with any decisions it already carries."""
        self.session.add(ApprovalRequestModel.from_dto(request))
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateApprovalRequestError(str(request.grant_id)) from exc

        for decision in request.decisions:
            self.add_decision(decision)

        return self._reload(request.request_id)

    def get_request(
        self, request_id: UUID, for_update: bool = False,
    ) -> ApprovalRequest | None:
        if not for_update:
            return self._selector.get_request(request_id)

        model = self.session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.request_id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def add_decision(self, decision: ApprovalDecisionRecord) -> None:
        self.session.add(ApprovalDecisionModel.from_dto(decision))
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateDecisionError(
                str(decision.request_id), str(decision.approver_id), decision.level,
            ) from exc

    def save_request(
        self, request: ApprovalRequest, expected_version: int,
    ) -> ApprovalRequest:
        """Write status/level fields if the stored version is still ``expected_version``.

        Returns the reloaded request with ``version = expected_version + 1``.
        """
        self.session.flush()
        result = self.session.execute(
            update(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.request_id == request.request_id,
                ApprovalRequestModel.version == expected_version,
            )
            .values(
                status=ApprovalStatus(request.status).value,
                current_level=request.current_level,
                rejection_reason=request.rejection_reason,
                completed_at=request.completed_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            logger.warning(
                "approval_request_version_conflict",
                extra={
                    "request_id": str(request.request_id),
                    "expected_version": expected_version,
                },
            )
            raise OptimisticLockError("ApprovalRequest", str(request.request_id))

        return self._reload(request.request_id)

    def list_requests(
        self,
        org_id: UUID,
        status: ApprovalStatus | None = None,
        grant_id: UUID | None = None,
    ) -> list[ApprovalRequest]:
        return self._selector.list_requests(org_id, status, grant_id)

    # -- helpers -----------------------------------------------------------

    def _load_workflow_model(self, workflow_id: UUID) -> ApprovalWorkflowModel:
        model = self.session.execute(
            select(ApprovalWorkflowModel).where(
                ApprovalWorkflowModel.workflow_id == workflow_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return model

    def _reload(self, request_id: UUID) -> ApprovalRequest:
        # Bulk UPDATE bypasses the identity map; drop stale state first.
        self.session.expire_all()
        request = self._selector.get_request(request_id)
        if request is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        return request
