"""
Notification dispatchers for approval outcomes.

The approval services never send email or in-app messages themselves.  They
hand every status change to a ``NotificationDispatcher``; delivery lives
behind that interface.

Two dispatchers ship here:

- ``LoggingNotificationDispatcher`` emits one structured log event per
  outcome, with a stable ``notification_event`` field so a log pipeline
  (or a downstream mailer tailing it) can route on it.
- ``CollectingNotificationDispatcher`` keeps outcomes in memory for tests
  and for callers that deliver after their transaction commits.

Usage:
    from grantflow_services.notifications import LoggingNotificationDispatcher
    service = ApprovalService(store, gateway, LoggingNotificationDispatcher())
"""

from __future__ import annotations

from typing import Any

from grantflow_kernel.domain.approval import ApprovalOutcome, OutcomeKind
from grantflow_kernel.logging_config import get_logger

logger = get_logger("services.notifications")

# Stable event names for filtering in log pipelines
EVENT_APPROVAL_NOTIFICATION = "approval_notification"


class LoggingNotificationDispatcher:
    """Write each outcome as a structured ``approval_notification`` log event."""

    def dispatch(self, outcome: ApprovalOutcome) -> None:
        payload: dict[str, Any] = {
            "notification_event": EVENT_APPROVAL_NOTIFICATION,
            "outcome": outcome.kind.value,
            "request_id": str(outcome.request_id),
            "org_id": str(outcome.org_id),
            "grant_id": str(outcome.grant_id),
            "from_stage": outcome.from_stage,
            "to_stage": outcome.to_stage,
            "approval_level": outcome.level,
            "notify_users": [str(u) for u in outcome.notify_users],
        }
        if outcome.workflow_id is not None:
            payload["workflow_id"] = str(outcome.workflow_id)
        if outcome.actor_id is not None:
            payload["actor_id"] = str(outcome.actor_id)
        if outcome.next_level is not None:
            payload["next_level"] = outcome.next_level
        if outcome.notify_role is not None:
            payload["notify_role"] = outcome.notify_role
        if outcome.reason:
            payload["reason"] = outcome.reason

        logger.info("approval_notification_dispatched", extra=payload)


class CollectingNotificationDispatcher:
    """Keep dispatched outcomes in order, in memory."""

    def __init__(self) -> None:
        self.outcomes: list[ApprovalOutcome] = []

    def dispatch(self, outcome: ApprovalOutcome) -> None:
        self.outcomes.append(outcome)

    def kinds(self) -> list[OutcomeKind]:
        return [o.kind for o in self.outcomes]

    def drain(self) -> list[ApprovalOutcome]:
        """Return and forget everything collected so far."""
        outcomes, self.outcomes = self.outcomes, []
        return outcomes
