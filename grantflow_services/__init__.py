"""
Grantflow services -- approval orchestration and the caller-facing API.

``ApprovalService`` and ``WorkflowService`` coordinate the pure engine with
persistence; ``ApprovalApi`` adds authorization, transactions, and error
mapping for transports.
"""

from grantflow_services.approval_api import (
    ApprovalApi,
    ErrorResponse,
    definition_from_mapping,
    error_response,
    patch_from_mapping,
)
from grantflow_services.approval_service import ApprovalService
from grantflow_services.notifications import (
    CollectingNotificationDispatcher,
    LoggingNotificationDispatcher,
)
from grantflow_services.workflow_service import WorkflowService

__all__ = [
    "ApprovalApi",
    "ApprovalService",
    "CollectingNotificationDispatcher",
    "ErrorResponse",
    "LoggingNotificationDispatcher",
    "WorkflowService",
    "definition_from_mapping",
    "error_response",
    "patch_from_mapping",
]
