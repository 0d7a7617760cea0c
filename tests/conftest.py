"""
Pytest fixtures for the grantflow test suite.

Provides:
- In-memory SQLite database sessions (no PostgreSQL required)
- A deterministic clock, an in-memory grant stage gateway, and a
  collecting notification dispatcher
- Actors for one organization (admins, contributors) and an outsider
- Wired ApprovalService / WorkflowService / ApprovalApi instances
- captured_logs: grantflow logs parsed back from JSON
"""

import json
import logging
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from grantflow_kernel.db.base import Base
from grantflow_kernel.domain.approval import (
    Actor,
    ApprovalLevel,
    GrantStage,
    OrgRole,
    WorkflowDefinition,
)
from grantflow_kernel.domain.clock import DeterministicClock
from grantflow_kernel.logging_config import LogContext, StructuredFormatter
from grantflow_kernel.services.approval_store import SqlApprovalStore
from grantflow_services.approval_api import ApprovalApi
from grantflow_services.approval_service import ApprovalService
from grantflow_services.notifications import CollectingNotificationDispatcher
from grantflow_services.workflow_service import WorkflowService

import grantflow_kernel.models  # noqa: F401  (registers tables on Base.metadata)


# =============================================================================
# Collaborator fakes
# =============================================================================


class InMemoryStageGateway:
    """Grant stages held in a dict; records every applied transition."""

    def __init__(self) -> None:
        self.stages: dict[UUID, str] = {}
        self.applied: list[tuple[UUID, UUID, str, str]] = []

    def current_stage(self, grant_id: UUID) -> str | None:
        return self.stages.get(grant_id)

    def apply_stage(
        self,
        org_id: UUID,
        grant_id: UUID,
        from_stage: str,
        to_stage: str,
    ) -> None:
        self.applied.append((org_id, grant_id, from_stage, to_stage))
        self.stages[grant_id] = to_stage


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def stage_gateway():
    return InMemoryStageGateway()


@pytest.fixture
def dispatcher():
    return CollectingNotificationDispatcher()


@pytest.fixture
def store(db_session):
    return SqlApprovalStore(db_session)


@pytest.fixture
def approval_service(store, stage_gateway, dispatcher, clock):
    return ApprovalService(store, stage_gateway, dispatcher, clock)


@pytest.fixture
def workflow_service(store, clock):
    return WorkflowService(store, clock)


@pytest.fixture
def api(session_factory, stage_gateway, dispatcher, clock):
    return ApprovalApi(session_factory, stage_gateway, dispatcher, clock)


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def admin(org_id):
    return Actor(user_id=uuid4(), org_id=org_id, role=OrgRole.ADMIN)


@pytest.fixture
def second_admin(org_id):
    return Actor(user_id=uuid4(), org_id=org_id, role=OrgRole.ADMIN)


@pytest.fixture
def requester(org_id):
    return Actor(user_id=uuid4(), org_id=org_id, role=OrgRole.CONTRIBUTOR)


@pytest.fixture
def contributor(org_id):
    return Actor(user_id=uuid4(), org_id=org_id, role=OrgRole.CONTRIBUTOR)


@pytest.fixture
def outsider():
    return Actor(user_id=uuid4(), org_id=uuid4(), role=OrgRole.ADMIN)


@pytest.fixture
def grant_id(stage_gateway):
    """A grant sitting in the drafting stage."""
    grant_id = uuid4()
    stage_gateway.stages[grant_id] = GrantStage.DRAFTING.value
    return grant_id


# =============================================================================
# Workflows
# =============================================================================


@pytest.fixture
def make_definition():
    """Factory for a drafting -> submitted workflow definition.

    Defaults to a single level approved by one admin.
    """

    def _make(
        *levels: ApprovalLevel,
        name: str = "Submission review",
        from_stage: str = GrantStage.DRAFTING.value,
        to_stage: str = GrantStage.SUBMITTED.value,
        **flags,
    ) -> WorkflowDefinition:
        chain = levels or (ApprovalLevel(level=1, role=OrgRole.ADMIN.value),)
        return WorkflowDefinition(
            name=name,
            from_stage=from_stage,
            to_stage=to_stage,
            approval_chain=tuple(chain),
            **flags,
        )

    return _make


@pytest.fixture
def create_workflow(workflow_service, org_id, admin, make_definition):
    """Factory fixture: store a workflow for the test org and return it."""

    def _create(*levels: ApprovalLevel, **kwargs):
        return workflow_service.create_workflow(
            org_id, make_definition(*levels, **kwargs), created_by=admin.user_id,
        )

    return _create


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture
def captured_logs():
    """
    Capture grantflow logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, approval_service):
            approval_service.create_request(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_request_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("grantflow")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)
    LogContext.clear()
