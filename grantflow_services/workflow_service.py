"""
grantflow_services.workflow_service -- Approval workflow configuration.

Responsibility:
    Creates, updates, deletes, and lists the approval workflows that guard
    grant stage transitions.  Structural validation is delegated to the
    pure approval engine; persistence to an ``ApprovalStore``.

Architecture position:
    Services layer.  May import from grantflow_engines/ and grantflow_kernel/.

Invariants enforced:
    - Only structurally valid workflows are stored.
    - At most one active workflow per (org, from_stage, to_stage).
    - A workflow with pending requests is never deleted; deactivate it.
    - A chain update never drops the level a pending request is waiting at.

Failure modes:
    - WorkflowValidationError with every structural problem found, including
      a new chain shorter than the level a pending request is at.
    - ConflictingWorkflowError when activation would duplicate a transition.
    - WorkflowNotFoundError for unknown ids.
    - WorkflowInUseError when deleting a workflow with pending requests.
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID, uuid4

from grantflow_engines.approval import validate_workflow_definition
from grantflow_kernel.domain.approval import (
    ApprovalStore,
    ApprovalWorkflow,
    WorkflowDefinition,
    WorkflowPatch,
)
from grantflow_kernel.domain.clock import Clock, SystemClock
from grantflow_kernel.exceptions import (
    ConflictingWorkflowError,
    WorkflowInUseError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from grantflow_kernel.logging_config import get_logger

logger = get_logger("services.workflow")


class WorkflowService:
    """Manages approval workflow configuration for organizations."""

    def __init__(self, store: ApprovalStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def create_workflow(
        self,
        org_id: UUID,
        definition: WorkflowDefinition,
        created_by: UUID | None = None,
    ) -> ApprovalWorkflow:
        """Validate and store a new workflow."""
        now = self._clock.now()
        workflow = ApprovalWorkflow(
            workflow_id=uuid4(),
            org_id=org_id,
            name=definition.name,
            description=definition.description,
            from_stage=definition.from_stage,
            to_stage=definition.to_stage,
            approval_chain=tuple(definition.approval_chain),
            is_active=definition.is_active,
            require_all_levels=definition.require_all_levels,
            allow_self_approval=definition.allow_self_approval,
            auto_approve_admin=definition.auto_approve_admin,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

        self._validate(workflow)
        if workflow.is_active:
            self._check_unique_active(workflow)

        stored = self._store.add_workflow(workflow)

        logger.info(
            "approval_workflow_created",
            extra={
                "workflow_id": str(stored.workflow_id),
                "org_id": str(org_id),
                "from_stage": stored.from_stage,
                "to_stage": stored.to_stage,
                "levels": len(stored.approval_chain),
                "is_active": stored.is_active,
            },
        )
        return stored

    def update_workflow(
        self,
        workflow_id: UUID,
        patch: WorkflowPatch,
    ) -> ApprovalWorkflow:
        """Apply a partial update.  The merged result is validated as a whole."""
        current = self.get_workflow(workflow_id)
        updated = replace(patch.apply_to(current), updated_at=self._clock.now())

        errors = self._validation_errors(updated)
        if patch.approval_chain is not None:
            errors.extend(self._pending_level_errors(updated))
        if errors:
            raise WorkflowValidationError(tuple(errors))
        if updated.is_active:
            self._check_unique_active(updated)

        stored = self._store.update_workflow(updated)

        logger.info(
            "approval_workflow_updated",
            extra={
                "workflow_id": str(workflow_id),
                "fields": sorted(
                    name for name, value in vars(patch).items() if value is not None
                ),
                "is_active": stored.is_active,
            },
        )
        return stored

    def delete_workflow(self, workflow_id: UUID) -> None:
        """Delete a workflow that no pending request references."""
        self.get_workflow(workflow_id)

        if self._store.has_pending_requests(workflow_id):
            logger.warning(
                "approval_workflow_delete_blocked",
                extra={"workflow_id": str(workflow_id)},
            )
            raise WorkflowInUseError(str(workflow_id))

        self._store.delete_workflow(workflow_id)
        logger.info(
            "approval_workflow_deleted",
            extra={"workflow_id": str(workflow_id)},
        )

    def get_workflow(self, workflow_id: UUID) -> ApprovalWorkflow:
        workflow = self._store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return workflow

    def list_workflows(
        self,
        org_id: UUID,
        active_only: bool = False,
    ) -> list[ApprovalWorkflow]:
        return self._store.list_workflows(org_id, active_only=active_only)

    @staticmethod
    def _validation_errors(workflow: ApprovalWorkflow) -> list[str]:
        errors = list(validate_workflow_definition(
            workflow.from_stage, workflow.to_stage, workflow.approval_chain,
        ))
        if not (workflow.name or "").strip():
            errors.insert(0, "name is required")
        return errors

    def _validate(self, workflow: ApprovalWorkflow) -> None:
        errors = self._validation_errors(workflow)
        if errors:
            raise WorkflowValidationError(tuple(errors))

    def _pending_level_errors(self, workflow: ApprovalWorkflow) -> list[str]:
        """A new chain must still contain every level a pending request sits at."""
        highest = self._store.max_pending_level(workflow.workflow_id)
        if highest is None or highest <= len(workflow.approval_chain):
            return []
        logger.warning(
            "approval_workflow_chain_shrink_blocked",
            extra={
                "workflow_id": str(workflow.workflow_id),
                "pending_level": highest,
                "levels": len(workflow.approval_chain),
            },
        )
        return [
            f"approval_chain: a pending request is at level {highest}; "
            f"the chain needs at least {highest} levels"
        ]

    def _check_unique_active(self, workflow: ApprovalWorkflow) -> None:
        existing = self._store.find_active_workflows(
            workflow.org_id,
            workflow.from_stage,
            workflow.to_stage,
            exclude_workflow_id=workflow.workflow_id,
        )
        if existing:
            raise ConflictingWorkflowError(
                str(workflow.org_id),
                workflow.from_stage,
                workflow.to_stage,
                str(existing[0].workflow_id),
            )
