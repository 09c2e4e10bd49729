"""Approval ORM models: ApprovalWorkflow, ApprovalStep, ApprovalInstance, ApprovalStepRecord."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrflow.common.constants import (
    ApproverType,
    EntityType,
    InstanceStatus,
    StepDecision,
    UserRole,
)
from hrflow.database import Base


# ═════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════


class ApprovalWorkflow(Base):
    """Workflow template, scoped by entity type / department / position / amount."""

    __tablename__ = "approval_workflows"
    __table_args__ = (
        sa.Index("ix_approval_workflows_entity_active", "entity_type", "is_active"),
        sa.CheckConstraint(
            "min_amount IS NULL OR max_amount IS NULL OR min_amount <= max_amount",
            name="ck_approval_workflows_amount_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    entity_type: Mapped[EntityType] = mapped_column(
        sa.Enum(EntityType, name="approval_entity_type", create_type=False),
        nullable=False,
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("departments.id", ondelete="SET NULL"),
    )
    position_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("positions.id", ondelete="SET NULL"),
    )
    min_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(15, 2))
    max_amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(15, 2))
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("TRUE"), default=True,
    )
    settings: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    # Relationships
    steps: Mapped[list[ApprovalStep]] = relationship(
        back_populates="workflow",
        order_by="ApprovalStep.step_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ApprovalWorkflow {self.name!r} ({self.entity_type})>"


class ApprovalStep(Base):
    """One ordered stage of a workflow."""

    __tablename__ = "approval_steps"
    __table_args__ = (
        sa.UniqueConstraint("workflow_id", "step_order", name="uq_approval_step_order"),
        sa.CheckConstraint(
            "auto_approve_after_hours IS NULL OR auto_approve_after_hours > 0",
            name="ck_approval_steps_auto_hours",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    approver_type: Mapped[ApproverType] = mapped_column(
        sa.Enum(ApproverType, name="approver_type", create_type=False),
        nullable=False,
    )
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id", ondelete="SET NULL"),
    )
    position_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("positions.id", ondelete="SET NULL"),
    )
    role: Mapped[Optional[UserRole]] = mapped_column(
        sa.Enum(UserRole, name="user_role", create_type=False),
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("departments.id", ondelete="SET NULL"),
    )
    is_required: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("TRUE"), default=True,
    )
    can_delegate: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("FALSE"), default=False,
    )
    can_skip: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("FALSE"), default=False,
    )
    auto_approve: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("FALSE"), default=False,
    )
    auto_approve_after_hours: Mapped[Optional[int]] = mapped_column(sa.Integer)
    settings: Mapped[dict] = mapped_column(JSONB, default=dict)

    # Relationships
    workflow: Mapped[ApprovalWorkflow] = relationship(back_populates="steps")

    def __repr__(self) -> str:
        return f"<ApprovalStep {self.step_order} {self.approver_type}>"


# ═════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════


class ApprovalInstance(Base):
    """Live execution of a workflow for one subject request.

    ``version`` is the optimistic-concurrency revision; every write is
    conditional on it (see ``SqlApprovalRepository.save_instance``).
    """

    __tablename__ = "approval_instances"
    __table_args__ = (
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_approval_instance_entity"),
        sa.Index("ix_approval_instances_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("approval_workflows.id", ondelete="RESTRICT"),
        nullable=False,
    )
    entity_type: Mapped[EntityType] = mapped_column(
        sa.Enum(EntityType, name="approval_entity_type", create_type=False),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Subject context captured at submission
    requester_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    position_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    amount: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(15, 2))

    current_step_order: Mapped[Optional[int]] = mapped_column(sa.Integer)
    status: Mapped[InstanceStatus] = mapped_column(
        sa.Enum(InstanceStatus, name="approval_instance_status", create_type=False),
        nullable=False,
        default=InstanceStatus.in_progress,
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    version: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0"), default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    # Relationships
    workflow: Mapped[ApprovalWorkflow] = relationship()
    records: Mapped[list[ApprovalStepRecord]] = relationship(
        back_populates="instance",
        order_by="ApprovalStepRecord.step_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.entity_type}/{self.entity_id} "
            f"{self.status} step={self.current_step_order} v{self.version}>"
        )


class ApprovalStepRecord(Base):
    """Decision trail for one step of one instance."""

    __tablename__ = "approval_step_records"
    __table_args__ = (
        sa.UniqueConstraint("instance_id", "step_order", name="uq_approval_record_step"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("approval_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    decision: Mapped[StepDecision] = mapped_column(
        sa.Enum(StepDecision, name="approval_step_decision", create_type=False),
        nullable=False,
        default=StepDecision.pending,
    )
    # Sorted list of approver UUID strings captured when the step became current
    resolved_approvers: Mapped[list] = mapped_column(JSONB, default=list)
    activated_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    # No FK: the auto-approval sweep records the nil-UUID system actor
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    decided_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    delegated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    comments: Mapped[Optional[str]] = mapped_column(sa.Text)

    # Relationships
    instance: Mapped[ApprovalInstance] = relationship(back_populates="records")
