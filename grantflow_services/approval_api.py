"""
grantflow_services.approval_api -- Caller-facing approval boundary.

Responsibility:
    The surface an HTTP layer (or any other transport) calls.  Each call
    authenticates and authorizes the actor, opens one transaction, runs
    the approval or workflow service, commits, and only then delivers
    notifications.  ``error_response`` maps any raised error to an
    HTTP-equivalent status, stable code, and public message.

Architecture position:
    Services layer -- outermost boundary.  Imports grantflow_kernel,
    grantflow_config, and the sibling services.

Invariants enforced:
    - No anonymous calls: ``actor is None`` -> UnauthorizedError.
    - Org isolation: an actor only reads or changes its own org's data.
    - Workflow configuration changes are admin-only.
    - One transaction per call; a failed call leaves nothing behind.
    - Notifications are delivered after commit, never for rolled-back work.
    - Integrity faults are logged with full context and reported to the
      caller generically.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, Mapping
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from grantflow_config import GrantflowSettings
from grantflow_kernel.db.engine import (
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from grantflow_kernel.domain.approval import (
    Actor,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalWorkflow,
    DecisionResult,
    DecisionType,
    GrantStageGateway,
    InitiationResult,
    NotificationDispatcher,
    RequestFilters,
    WorkflowDefinition,
    WorkflowPatch,
    chain_from_mappings,
)
from grantflow_kernel.domain.clock import Clock, SystemClock
from grantflow_kernel.exceptions import (
    ApprovalValidationError,
    ForbiddenError,
    GrantflowError,
    IntegrityFault,
    UnauthorizedError,
    WorkflowValidationError,
)
from grantflow_kernel.logging_config import LogContext, configure_logging, get_logger
from grantflow_kernel.services.approval_store import SqlApprovalStore
from grantflow_services.approval_service import (
    DEFAULT_REQUEST_EXPIRY_DAYS,
    ApprovalService,
)
from grantflow_services.notifications import CollectingNotificationDispatcher
from grantflow_services.workflow_service import WorkflowService

logger = get_logger("services.approval_api")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorResponse:
    """Transport-neutral error body."""

    status_code: int
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


def error_response(exc: BaseException) -> ErrorResponse:
    """Map an exception to the status, code, and message shown to callers."""
    if isinstance(exc, GrantflowError):
        return ErrorResponse(
            status_code=exc.http_status,
            code=exc.code,
            message=exc.public_message,
            details=_jsonable(exc.details()),
        )
    return ErrorResponse(
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )


def _jsonable(details: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, (tuple, list, frozenset, set)):
            result[key] = [str(v) if isinstance(v, UUID) else v for v in value]
        elif isinstance(value, UUID):
            result[key] = str(value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Request body parsing
# ---------------------------------------------------------------------------


_WORKFLOW_FLAGS = (
    "is_active",
    "require_all_levels",
    "allow_self_approval",
    "auto_approve_admin",
)


def _parse_chain(raw: Any):
    if not isinstance(raw, (list, tuple)):
        raise WorkflowValidationError(("approval_chain must be a list of levels",))
    try:
        return chain_from_mappings(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise WorkflowValidationError((f"approval_chain: invalid level ({exc})",)) from exc


def definition_from_mapping(data: Mapping[str, Any]) -> WorkflowDefinition:
    """Build a ``WorkflowDefinition`` from a JSON-style body."""
    missing = [k for k in ("name", "from_stage", "to_stage", "approval_chain") if k not in data]
    if missing:
        raise WorkflowValidationError(tuple(f"{k} is required" for k in missing))

    flags = {k: bool(data[k]) for k in _WORKFLOW_FLAGS if data.get(k) is not None}
    return WorkflowDefinition(
        name=str(data["name"]),
        description=data.get("description"),
        from_stage=str(data["from_stage"]),
        to_stage=str(data["to_stage"]),
        approval_chain=_parse_chain(data["approval_chain"]),
        **flags,
    )


def patch_from_mapping(data: Mapping[str, Any]) -> WorkflowPatch:
    """Build a ``WorkflowPatch`` from a JSON-style body; absent keys stay unchanged.

    An explicit ``"description": null`` clears the description.
    """
    values: dict[str, Any] = {}
    for key in ("name", "from_stage", "to_stage"):
        if data.get(key) is not None:
            values[key] = str(data[key])
    if "description" in data:
        description = data["description"]
        values["description"] = "" if description is None else str(description)
    for key in _WORKFLOW_FLAGS:
        if data.get(key) is not None:
            values[key] = bool(data[key])
    if data.get("approval_chain") is not None:
        values["approval_chain"] = _parse_chain(data["approval_chain"])
    return WorkflowPatch(**values)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class ApprovalApi:
    """Session-per-call approval operations for authenticated actors."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        stage_gateway: GrantStageGateway,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        request_expiry_days: int = DEFAULT_REQUEST_EXPIRY_DAYS,
    ) -> None:
        self._session_factory = session_factory
        self._stage_gateway = stage_gateway
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._request_expiry_days = request_expiry_days

    @classmethod
    def from_settings(
        cls,
        settings: GrantflowSettings,
        stage_gateway: GrantStageGateway,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
    ) -> ApprovalApi:
        """Configure logging and the database engine, then build the API."""
        configure_logging(level=settings.log_level)
        init_engine_from_url(
            settings.database_url,
            echo=settings.echo_sql,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
        )
        return cls(
            get_session_factory(),
            stage_gateway,
            dispatcher=dispatcher,
            clock=clock,
            request_expiry_days=settings.request_expiry_days,
        )

    # -- approvals ------------------------------------------------------------

    def resolve_workflow(
        self,
        actor: Actor | None,
        org_id: UUID,
        from_stage: str,
        to_stage: str,
    ) -> ApprovalWorkflow | None:
        actor = self._authenticate(actor)
        self._require_org(actor, org_id)
        with self._call("resolve_workflow", actor) as (session, outbox):
            return self._approvals(session, outbox).resolve_workflow(
                org_id, from_stage, to_stage,
            )

    def create_request(
        self,
        actor: Actor | None,
        grant_id: UUID,
        from_stage: str,
        to_stage: str,
        notes: str | None = None,
    ) -> InitiationResult:
        actor = self._authenticate(actor)
        with self._call("create_request", actor) as (session, outbox):
            return self._approvals(session, outbox).create_request(
                actor, grant_id, from_stage, to_stage, notes,
            )

    def record_decision(
        self,
        actor: Actor | None,
        request_id: UUID,
        decision: DecisionType | str,
        comments: str | None = None,
    ) -> DecisionResult:
        actor = self._authenticate(actor)
        with self._call("record_decision", actor, request_id=request_id) as (session, outbox):
            return self._approvals(session, outbox).record_decision(
                request_id, actor, decision, comments,
            )

    def cancel_request(
        self,
        actor: Actor | None,
        request_id: UUID,
    ) -> ApprovalRequest:
        actor = self._authenticate(actor)
        with self._call("cancel_request", actor, request_id=request_id) as (session, outbox):
            return self._approvals(session, outbox).cancel_request(request_id, actor)

    def get_request(
        self,
        actor: Actor | None,
        request_id: UUID,
    ) -> ApprovalRequest:
        actor = self._authenticate(actor)
        with self._call("get_request", actor, request_id=request_id) as (session, outbox):
            return self._approvals(session, outbox).get_request(request_id, actor)

    def list_requests(
        self,
        actor: Actor | None,
        org_id: UUID,
        status: ApprovalStatus | str | None = None,
        grant_id: UUID | None = None,
        pending_for_user: bool = False,
    ) -> list[ApprovalRequest]:
        actor = self._authenticate(actor)
        self._require_org(actor, org_id)
        filters = RequestFilters(
            status=self._parse_status(status),
            grant_id=grant_id,
            pending_for_user=pending_for_user,
        )
        with self._call("list_requests", actor) as (session, outbox):
            return self._approvals(session, outbox).list_requests(org_id, filters, actor)

    # -- workflows ------------------------------------------------------------

    def list_workflows(
        self,
        actor: Actor | None,
        org_id: UUID,
        active_only: bool = False,
    ) -> list[ApprovalWorkflow]:
        actor = self._authenticate(actor)
        self._require_org(actor, org_id)
        with self._call("list_workflows", actor) as (session, _):
            return self._workflows(session).list_workflows(org_id, active_only)

    def create_workflow(
        self,
        actor: Actor | None,
        config: WorkflowDefinition | Mapping[str, Any],
    ) -> ApprovalWorkflow:
        actor = self._authenticate(actor)
        self._require_admin(actor)
        definition = (
            config if isinstance(config, WorkflowDefinition)
            else definition_from_mapping(config)
        )
        with self._call("create_workflow", actor) as (session, _):
            return self._workflows(session).create_workflow(
                actor.org_id, definition, created_by=actor.user_id,
            )

    def update_workflow(
        self,
        actor: Actor | None,
        workflow_id: UUID,
        patch: WorkflowPatch | Mapping[str, Any],
    ) -> ApprovalWorkflow:
        actor = self._authenticate(actor)
        self._require_admin(actor)
        patch = patch if isinstance(patch, WorkflowPatch) else patch_from_mapping(patch)
        with self._call("update_workflow", actor, workflow_id=workflow_id) as (session, _):
            workflows = self._workflows(session)
            self._require_org(actor, workflows.get_workflow(workflow_id).org_id)
            return workflows.update_workflow(workflow_id, patch)

    def delete_workflow(
        self,
        actor: Actor | None,
        workflow_id: UUID,
    ) -> None:
        actor = self._authenticate(actor)
        self._require_admin(actor)
        with self._call("delete_workflow", actor, workflow_id=workflow_id) as (session, _):
            workflows = self._workflows(session)
            self._require_org(actor, workflows.get_workflow(workflow_id).org_id)
            workflows.delete_workflow(workflow_id)

    # -- plumbing -------------------------------------------------------------

    def _approvals(
        self,
        session: Session,
        outbox: CollectingNotificationDispatcher,
    ) -> ApprovalService:
        return ApprovalService(
            SqlApprovalStore(session),
            self._stage_gateway,
            dispatcher=outbox,
            clock=self._clock,
            request_expiry_days=self._request_expiry_days,
        )

    def _workflows(self, session: Session) -> WorkflowService:
        return WorkflowService(SqlApprovalStore(session), clock=self._clock)

    @contextmanager
    def _call(
        self,
        operation: str,
        actor: Actor,
        request_id: UUID | None = None,
        workflow_id: UUID | None = None,
    ) -> Generator[tuple[Session, CollectingNotificationDispatcher], None, None]:
        """One transaction, with log context bound and notifications deferred."""
        outbox = CollectingNotificationDispatcher()
        with LogContext.bind(
            correlation_id=str(uuid4()),
            org_id=actor.org_id,
            actor_id=actor.user_id,
            request_id=request_id,
            workflow_id=workflow_id,
        ):
            try:
                with session_scope(self._session_factory) as session:
                    yield session, outbox
            except IntegrityFault:
                logger.error(
                    "approval_api_integrity_fault",
                    extra={"operation": operation},
                    exc_info=True,
                )
                raise
            except GrantflowError as exc:
                logger.info(
                    "approval_api_call_refused",
                    extra={
                        "operation": operation,
                        "error_code": exc.code,
                        "status_code": exc.http_status,
                    },
                )
                raise

            self._deliver(outbox.drain())

    def _deliver(self, outcomes) -> None:
        if self._dispatcher is None:
            return
        for outcome in outcomes:
            try:
                self._dispatcher.dispatch(outcome)
            except Exception:
                logger.exception(
                    "approval_notification_failed",
                    extra={
                        "outcome": outcome.kind.value,
                        "notified_request_id": str(outcome.request_id),
                    },
                )

    @staticmethod
    def _authenticate(actor: Actor | None) -> Actor:
        if actor is None:
            raise UnauthorizedError()
        return actor

    @staticmethod
    def _require_org(actor: Actor, org_id: UUID) -> None:
        if actor.org_id != org_id:
            raise ForbiddenError("Not a member of this organization")

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise ForbiddenError("Organization admin role required")

    @staticmethod
    def _parse_status(status: ApprovalStatus | str | None) -> ApprovalStatus | None:
        if status is None:
            return None
        try:
            return ApprovalStatus(status)
        except ValueError:
            raise ApprovalValidationError(
                "status", f"unknown status '{status}'",
            ) from None
