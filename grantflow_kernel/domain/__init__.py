"""
Grantflow domain layer -- pure value objects, zero I/O.

Import approval types from ``grantflow_kernel.domain.approval`` and the
time abstraction from ``grantflow_kernel.domain.clock``.
"""

from grantflow_kernel.domain.approval import (
    Actor,
    ApprovalDecisionRecord,
    ApprovalLevel,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
    DecisionTransition,
    DecisionType,
    GrantStage,
    OrgRole,
)
from grantflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Actor",
    "ApprovalDecisionRecord",
    "ApprovalLevel",
    "ApprovalOutcome",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalWorkflow",
    "Clock",
    "DecisionTransition",
    "DecisionType",
    "DeterministicClock",
    "GrantStage",
    "OrgRole",
    "SystemClock",
]
