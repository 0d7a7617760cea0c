"""
Module: grantflow_kernel.selectors.approval_selector
Responsibility: Read-only queries over approval workflows and requests.
    Converts ORM models to frozen domain DTOs.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.

Invariants enforced:
    - Read-only: No mutations performed on any queried data.
    - Workflows list newest first (created_at DESC); requests list newest
      first (requested_at DESC).

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from uuid import UUID

from sqlalchemy import exists, func, select

from grantflow_kernel.domain.approval import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
)
from grantflow_kernel.models.approval import (
    ApprovalRequestModel,
    ApprovalWorkflowModel,
)
from grantflow_kernel.selectors.base import BaseSelector


class ApprovalSelector(BaseSelector[ApprovalRequestModel]):
    """Read access to approval workflows and requests."""

    def find_active_workflows(
        self,
        org_id: UUID,
        from_stage: str,
        to_stage: str,
        exclude_workflow_id: UUID | None = None,
    ) -> list[ApprovalWorkflow]:
        """All active workflows guarding a transition (normally zero or one)."""
        stmt = select(ApprovalWorkflowModel).where(
            ApprovalWorkflowModel.org_id == org_id,
            ApprovalWorkflowModel.from_stage == from_stage,
            ApprovalWorkflowModel.to_stage == to_stage,
            ApprovalWorkflowModel.is_active.is_(True),
        )
        if exclude_workflow_id is not None:
            stmt = stmt.where(ApprovalWorkflowModel.workflow_id != exclude_workflow_id)

        models = self.session.execute(
            stmt.order_by(ApprovalWorkflowModel.created_at)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow | None:
        model = self.session.execute(
            select(ApprovalWorkflowModel).where(
                ApprovalWorkflowModel.workflow_id == workflow_id,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_workflows(
        self,
        org_id: UUID,
        active_only: bool = False,
    ) -> list[ApprovalWorkflow]:
        stmt = select(ApprovalWorkflowModel).where(
            ApprovalWorkflowModel.org_id == org_id,
        )
        if active_only:
            stmt = stmt.where(ApprovalWorkflowModel.is_active.is_(True))

        models = self.session.execute(
            stmt.order_by(ApprovalWorkflowModel.created_at.desc())
        ).scalars().all()
        return [m.to_dto() for m in models]

    def has_pending_requests(self, workflow_id: UUID) -> bool:
        return bool(self.session.execute(
            select(exists().where(
                ApprovalRequestModel.workflow_id == workflow_id,
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
            ))
        ).scalar())

    def max_pending_level(self, workflow_id: UUID) -> int | None:
        """Highest ``current_level`` among the workflow's pending requests."""
        return self.session.execute(
            select(func.max(ApprovalRequestModel.current_level)).where(
                ApprovalRequestModel.workflow_id == workflow_id,
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
            )
        ).scalar()

    def find_pending_request_for_grant(
        self,
        grant_id: UUID,
    ) -> ApprovalRequest | None:
        model = self.session.execute(
            select(ApprovalRequestModel).where(
                ApprovalRequestModel.grant_id == grant_id,
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
            )
        ).scalars().first()
        return model.to_dto() if model is not None else None

    def get_request(self, request_id: UUID) -> ApprovalRequest | None:
        model = self.session.execute(
            select(ApprovalRequestModel).where(
                ApprovalRequestModel.request_id == request_id,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_requests(
        self,
        org_id: UUID,
        status: ApprovalStatus | None = None,
        grant_id: UUID | None = None,
    ) -> list[ApprovalRequest]:
        """Requests in an org, newest first, optionally filtered."""
        stmt = select(ApprovalRequestModel).where(
            ApprovalRequestModel.org_id == org_id,
        )
        if status is not None:
            stmt = stmt.where(ApprovalRequestModel.status == ApprovalStatus(status).value)
        if grant_id is not None:
            stmt = stmt.where(ApprovalRequestModel.grant_id == grant_id)

        models = self.session.execute(
            stmt.order_by(ApprovalRequestModel.requested_at.desc())
        ).scalars().all()
        return [m.to_dto() for m in models]
