"""
Module: grantflow_kernel.models.approval
Responsibility: ORM persistence for approval workflows, requests, and decisions.

Architecture position: Kernel > Models.  May import from db/base.py and
    exceptions only (domain DTOs are imported lazily inside converters).

Invariants enforced:
    - At most one active workflow per (org, from_stage, to_stage): partial
      unique index over active rows.
    - At most one pending request per grant: partial unique index over
      pending rows.
    - A user decides at most once per level of a request:
      UNIQUE(request_id, approver_id, level).
    - Valid status values only: DB check constraint.
    - Decisions are append-only: ORM listeners reject UPDATE and DELETE.

Failure modes:
    - IntegrityError on a second active workflow for the same transition.
    - IntegrityError on a second pending request for the same grant.
    - IntegrityError on a duplicate per-level decision.
    - ImmutabilityViolationError on decision UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from grantflow_kernel.db.base import Base, UUIDString
from grantflow_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from grantflow_kernel.domain.approval import (
        ApprovalDecisionRecord,
        ApprovalRequest,
        ApprovalWorkflow,
    )


def _utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on round trip)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApprovalWorkflowModel(Base):
    """Persistent approval workflow for one stage transition in one org.

    The approval chain is stored as a JSON list of level mappings.
    """

    __tablename__ = "approval_workflows"

    __table_args__ = (
        CheckConstraint(
            "from_stage <> to_stage",
            name="ck_approval_workflows_distinct_stages",
        ),
        Index(
            "ix_approval_workflows_active_transition",
            "org_id", "from_stage", "to_stage",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_approval_workflows_org", "org_id", "created_at"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    approval_chain: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_all_levels: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True,
    )
    allow_self_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    auto_approve_admin: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalWorkflow {self.workflow_id} "
            f"{self.from_stage}->{self.to_stage} active={self.is_active}>"
        )

    def to_dto(self) -> ApprovalWorkflow:
        """Convert ORM model to frozen domain DTO."""
        from grantflow_kernel.domain.approval import (
            ApprovalWorkflow as ApprovalWorkflowDTO,
            chain_from_mappings,
        )

        return ApprovalWorkflowDTO(
            workflow_id=self.workflow_id,
            org_id=self.org_id,
            name=self.name,
            description=self.description,
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            approval_chain=chain_from_mappings(self.approval_chain),
            is_active=self.is_active,
            require_all_levels=self.require_all_levels,
            allow_self_approval=self.allow_self_approval,
            auto_approve_admin=self.auto_approve_admin,
            created_by=self.created_by,
            created_at=_utc(self.created_at),
            updated_at=_utc(self.updated_at),
        )

    @classmethod
    def from_dto(cls, dto: ApprovalWorkflow) -> ApprovalWorkflowModel:
        """Create ORM model from domain DTO."""
        model = cls(workflow_id=dto.workflow_id, org_id=dto.org_id)
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: ApprovalWorkflow) -> None:
        """Copy the mutable workflow fields from ``dto`` onto this row."""
        self.name = dto.name
        self.description = dto.description
        self.from_stage = dto.from_stage
        self.to_stage = dto.to_stage
        self.approval_chain = [level.to_mapping() for level in dto.approval_chain]
        self.is_active = dto.is_active
        self.require_all_levels = dto.require_all_levels
        self.allow_self_approval = dto.allow_self_approval
        self.auto_approve_admin = dto.auto_approve_admin
        self.created_by = dto.created_by
        self.created_at = dto.created_at
        self.updated_at = dto.updated_at


class ApprovalRequestModel(Base):
    """Persistent approval request.

    Contract:
        ``version`` increments on every status or level change.  Writers
        update with ``WHERE version = :expected`` so a concurrent change is
        detected instead of overwritten.

    Guarantees:
        - No two pending requests for the same grant.
        - Terminal statuses are never left (enforced by the service layer).
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_requests_valid_status",
        ),
        CheckConstraint(
            "current_level >= 1",
            name="ck_approval_requests_level_positive",
        ),
        Index(
            "ix_approval_requests_pending_grant",
            "grant_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "ix_approval_requests_org_status",
            "org_id", "status", "requested_at",
        ),
        Index("ix_approval_requests_workflow", "workflow_id", "status"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    org_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    grant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    workflow_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.workflow_id", ondelete="SET NULL"),
        nullable=True,
    )
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    from_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    decisions: Mapped[list["ApprovalDecisionModel"]] = relationship(
        "ApprovalDecisionModel",
        back_populates="request",
        primaryjoin="ApprovalRequestModel.request_id == ApprovalDecisionModel.request_id",
        order_by="ApprovalDecisionModel.decided_at",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.request_id} grant={self.grant_id} "
            f"{self.from_stage}->{self.to_stage} status={self.status} "
            f"level={self.current_level}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from grantflow_kernel.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            ApprovalStatus,
        )

        return ApprovalRequestDTO(
            request_id=self.request_id,
            org_id=self.org_id,
            grant_id=self.grant_id,
            workflow_id=self.workflow_id,
            requested_by=self.requested_by,
            from_stage=self.from_stage,
            to_stage=self.to_stage,
            status=ApprovalStatus(self.status),
            current_level=self.current_level,
            request_notes=self.request_notes,
            rejection_reason=self.rejection_reason,
            requested_at=_utc(self.requested_at),
            completed_at=_utc(self.completed_at),
            expires_at=_utc(self.expires_at),
            version=self.version,
            decisions=tuple(d.to_dto() for d in self.decisions),
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRequest) -> ApprovalRequestModel:
        """Create ORM model from domain DTO.  Decisions are stored separately."""
        return cls(
            request_id=dto.request_id,
            org_id=dto.org_id,
            grant_id=dto.grant_id,
            workflow_id=dto.workflow_id,
            requested_by=dto.requested_by,
            from_stage=dto.from_stage,
            to_stage=dto.to_stage,
            status=dto.status.value,
            current_level=dto.current_level,
            request_notes=dto.request_notes,
            rejection_reason=dto.rejection_reason,
            requested_at=dto.requested_at,
            completed_at=dto.completed_at,
            expires_at=dto.expires_at,
            version=dto.version,
        )


class ApprovalDecisionModel(Base):
    """Persistent approval decision record. Append-only.

    Contract:
        Decisions are immutable once created -- no UPDATE, no DELETE.
        ``approver_id`` is NULL only for policy (auto-approval) decisions.
    """

    __tablename__ = "approval_decisions"

    __table_args__ = (
        Index("ix_approval_decisions_request_id", "request_id"),
        UniqueConstraint(
            "request_id", "approver_id", "level",
            name="uq_approval_decisions_approver_level",
        ),
        CheckConstraint(
            "decision IN ('approved', 'rejected')",
            name="ck_approval_decisions_valid_decision",
        ),
    )

    decision_id: Mapped[UUID] = mapped_column(
        UUIDString(), nullable=False, unique=True,
    )
    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="", nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="human")
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel",
        back_populates="decisions",
        foreign_keys=[request_id],
        primaryjoin="ApprovalDecisionModel.request_id == ApprovalRequestModel.request_id",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision {self.decision_id} "
            f"request={self.request_id} level={self.level} "
            f"decision={self.decision}>"
        )

    def to_dto(self) -> ApprovalDecisionRecord:
        """Convert ORM model to frozen domain DTO."""
        from grantflow_kernel.domain.approval import (
            ApprovalDecisionRecord as DecisionDTO,
            DecisionSource,
            DecisionType,
        )

        return DecisionDTO(
            decision_id=self.decision_id,
            request_id=self.request_id,
            approver_id=self.approver_id,
            decision=DecisionType(self.decision),
            level=self.level,
            comments=self.comments,
            source=DecisionSource(self.source),
            decided_at=_utc(self.decided_at),
        )

    @classmethod
    def from_dto(cls, dto: ApprovalDecisionRecord) -> ApprovalDecisionModel:
        """Create ORM model from domain DTO."""
        return cls(
            decision_id=dto.decision_id,
            request_id=dto.request_id,
            approver_id=dto.approver_id,
            decision=dto.decision.value,
            level=dto.level,
            comments=dto.comments or "",
            source=dto.source.value,
            decided_at=dto.decided_at,
        )


# =============================================================================
# ORM-Level Immutability for Decisions (Append-Only)
# =============================================================================


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    """Prevent updates to approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.decision_id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    """Prevent deletion of approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.decision_id),
        reason="Approval decisions are immutable -- cannot delete",
    )
