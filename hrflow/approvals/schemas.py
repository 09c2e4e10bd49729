"""Approval Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Update / *Request  → request bodies (write)
  - *Out                          → response bodies (read)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hrflow.approvals.domain import ApprovalInstance, StepDefinition
from hrflow.common.constants import (
    ApproverType,
    DecisionAction,
    EntityType,
    InstanceStatus,
    StepDecision,
    UserRole,
)


# ═════════════════════════════════════════════════════════════════════
# Workflow definitions
# ═════════════════════════════════════════════════════════════════════


class ApprovalStepCreate(BaseModel):
    step_order: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    approver_type: ApproverType
    approver_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    role: Optional[UserRole] = None
    department_id: Optional[uuid.UUID] = None
    is_required: bool = True
    can_delegate: bool = False
    can_skip: bool = False
    auto_approve: bool = False
    auto_approve_after_hours: Optional[int] = Field(None, gt=0)
    settings: dict[str, Any] = Field(default_factory=dict)

    def to_definition(self) -> StepDefinition:
        return StepDefinition(
            **self.model_dump(exclude={"description"}),
        )


class ApprovalWorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    entity_type: EntityType
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    min_amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    max_amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    is_active: bool = True
    settings: dict[str, Any] = Field(default_factory=dict)
    steps: list[ApprovalStepCreate] = Field(..., min_length=1)


class ApprovalWorkflowUpdate(BaseModel):
    """Partial update. When ``steps`` is given it replaces the whole sequence."""

    name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = None
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    min_amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    max_amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    is_active: Optional[bool] = None
    settings: Optional[dict[str, Any]] = None
    steps: Optional[list[ApprovalStepCreate]] = Field(None, min_length=1)


class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    step_order: int
    name: str
    description: Optional[str] = None
    approver_type: ApproverType
    approver_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    role: Optional[UserRole] = None
    department_id: Optional[uuid.UUID] = None
    is_required: bool
    can_delegate: bool
    can_skip: bool
    auto_approve: bool
    auto_approve_after_hours: Optional[int] = None
    settings: dict[str, Any] = Field(default_factory=dict)


class ApprovalWorkflowOut(BaseModel):
    """Full workflow definition with its ordered steps."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    entity_type: EntityType
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool
    settings: dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime
    steps: list[ApprovalStepOut] = []


# ═════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════


class ApprovalRequestCreate(BaseModel):
    """Submit an entity for approval.

    Department and position default to the requester's own when omitted.
    ``requester_id`` may only differ from the caller for HR/system admins.
    """

    entity_type: EntityType
    entity_id: uuid.UUID
    requester_id: Optional[uuid.UUID] = None
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)


class DecisionRequest(BaseModel):
    step_order: int
    action: DecisionAction
    delegate_to: Optional[uuid.UUID] = None
    comments: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _delegate_target(self) -> "DecisionRequest":
        if self.action == DecisionAction.delegate and self.delegate_to is None:
            raise ValueError("delegate_to is required when action is 'delegate'")
        if self.action != DecisionAction.delegate and self.delegate_to is not None:
            raise ValueError("delegate_to is only allowed when action is 'delegate'")
        return self


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class StepRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_order: int
    decision: StepDecision
    resolved_approvers: list[uuid.UUID] = []
    activated_at: Optional[datetime] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    delegated_by: Optional[uuid.UUID] = None
    comments: Optional[str] = None


class ApprovalInstanceOut(BaseModel):
    id: uuid.UUID
    workflow_id: uuid.UUID
    entity_type: EntityType
    entity_id: uuid.UUID
    requester_id: Optional[uuid.UUID] = None
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    amount: Optional[Decimal] = None
    status: InstanceStatus
    current_step_order: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int
    steps: list[StepRecordOut] = []

    @classmethod
    def from_domain(cls, instance: ApprovalInstance) -> "ApprovalInstanceOut":
        subject = instance.subject
        return cls(
            id=instance.id,
            workflow_id=instance.workflow_id,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            requester_id=subject.requester_id,
            department_id=subject.department_id,
            position_id=subject.position_id,
            amount=subject.amount,
            status=instance.status,
            current_step_order=instance.current_step_order,
            created_at=instance.created_at,
            completed_at=instance.completed_at,
            cancel_reason=instance.cancel_reason,
            version=instance.version,
            steps=[
                StepRecordOut(
                    step_order=record.step_order,
                    decision=record.decision,
                    resolved_approvers=sorted(record.resolved_approvers),
                    activated_at=record.activated_at,
                    decided_by=record.decided_by,
                    decided_at=record.decided_at,
                    delegated_by=record.delegated_by,
                    comments=record.comments,
                )
                for record in instance.records
            ],
        )


class ApprovalStartOut(BaseModel):
    """Result of submitting an entity; ``instance`` is None when no approval applies."""

    approval_required: bool
    instance: Optional[ApprovalInstanceOut] = None


class SweepOut(BaseModel):
    advanced: list[uuid.UUID]
    count: int
