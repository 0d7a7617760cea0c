"""
Grantflow engines -- pure evaluation functions, zero I/O.

The approval engine decides initiation branches, decision eligibility,
level advancement, workflow validity, and derived expiry.
"""

from grantflow_engines.approval import (
    check_decision,
    compute_expiry,
    evaluate_decision,
    evaluate_initiation,
    is_pending_for_user,
    is_qualified_approver,
    is_request_expired,
    live_levels,
    select_decision_level,
    validate_workflow_definition,
)

__all__ = [
    "check_decision",
    "compute_expiry",
    "evaluate_decision",
    "evaluate_initiation",
    "is_pending_for_user",
    "is_qualified_approver",
    "is_request_expired",
    "live_levels",
    "select_decision_level",
    "validate_workflow_definition",
]
