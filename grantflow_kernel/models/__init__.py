"""ORM models for the approval engine."""

from grantflow_kernel.models.approval import (
    ApprovalDecisionModel,
    ApprovalRequestModel,
    ApprovalWorkflowModel,
)

__all__ = [
    "ApprovalDecisionModel",
    "ApprovalRequestModel",
    "ApprovalWorkflowModel",
]
