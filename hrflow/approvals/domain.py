"""Approval domain types: workflow definitions, live instances, events.

These are plain dataclasses so the engine can run against any persistence
backend. ``hrflow.approvals.repository`` maps them to and from the ORM
rows in ``hrflow.approvals.models``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from hrflow.common.constants import (
    ApprovalEventType,
    ApproverType,
    EntityType,
    InstanceStatus,
    StepDecision,
    UserRole,
)
from hrflow.common.exceptions import ValidationException

TERMINAL_STEP_DECISIONS = frozenset(
    {
        StepDecision.approved,
        StepDecision.rejected,
        StepDecision.skipped,
        StepDecision.delegated,
        StepDecision.auto_approved,
    }
)


# ═════════════════════════════════════════════════════════════════════
# Definitions (read-only from the engine's point of view)
# ═════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepDefinition:
    """One stage of a workflow: who approves it and under which policy."""

    step_order: int
    approver_type: ApproverType
    name: str = ""
    id: Optional[uuid.UUID] = None
    approver_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    role: Optional[UserRole] = None
    department_id: Optional[uuid.UUID] = None
    is_required: bool = True
    can_delegate: bool = False
    can_skip: bool = False
    auto_approve: bool = False
    auto_approve_after_hours: Optional[int] = None
    # Opaque; forwarded to notifications, never interpreted
    settings: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def has_auto_approve(self) -> bool:
        return self.auto_approve and (self.auto_approve_after_hours or 0) > 0


@dataclass(frozen=True)
class WorkflowDefinition:
    """Scoped template describing the ordered steps for one entity type."""

    id: uuid.UUID
    name: str
    entity_type: EntityType
    steps: tuple[StepDefinition, ...]
    description: Optional[str] = None
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool = True
    settings: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def specificity(self) -> int:
        """Number of non-null scope fields; higher wins during selection."""
        scope = (self.department_id, self.position_id, self.min_amount, self.max_amount)
        return sum(1 for value in scope if value is not None)

    def applies_to(self, subject: ApprovalSubject) -> bool:
        if self.department_id is not None and self.department_id != subject.department_id:
            return False
        if self.position_id is not None and self.position_id != subject.position_id:
            return False
        if self.min_amount is None and self.max_amount is None:
            return True
        # An amount-scoped definition never matches a context without an amount
        if subject.amount is None:
            return False
        if self.min_amount is not None and subject.amount < self.min_amount:
            return False
        if self.max_amount is not None and subject.amount > self.max_amount:
            return False
        return True

    def step(self, step_order: int) -> StepDefinition:
        for step in self.steps:
            if step.step_order == step_order:
                return step
        raise KeyError(step_order)

    def steps_after(self, step_order: Optional[int]) -> tuple[StepDefinition, ...]:
        """Steps strictly after *step_order* (all steps when None)."""
        if step_order is None:
            return self.steps
        return tuple(s for s in self.steps if s.step_order > step_order)


def validate_step_definition(step: StepDefinition) -> list[str]:
    """Return human-readable problems with a single step definition."""
    problems: list[str] = []
    if step.step_order < 1:
        problems.append(f"step {step.step_order}: step_order must be a positive integer.")

    required_field = {
        ApproverType.specific_user: ("approver_id", step.approver_id),
        ApproverType.position_based: ("position_id", step.position_id),
        ApproverType.role_based: ("role", step.role),
    }.get(step.approver_type)
    if required_field is not None and required_field[1] is None:
        problems.append(
            f"step {step.step_order}: {required_field[0]} is required "
            f"for approver_type '{step.approver_type.value}'."
        )

    if step.auto_approve:
        hours = step.auto_approve_after_hours
        if hours is None or hours <= 0:
            problems.append(
                f"step {step.step_order}: auto_approve_after_hours must be a "
                f"positive integer when auto_approve is enabled."
            )
    elif step.auto_approve_after_hours is not None:
        problems.append(
            f"step {step.step_order}: auto_approve_after_hours is only allowed "
            f"when auto_approve is enabled."
        )
    return problems


def validate_step_sequence(steps: Sequence[StepDefinition]) -> tuple[StepDefinition, ...]:
    """Validate a workflow's steps at save time and return them sorted.

    Raises ``ValidationException`` when the list is empty, contains
    duplicate ``step_order`` values, or any step is misconfigured.
    """
    errors: dict[str, list[str]] = {}
    if not steps:
        errors["steps"] = ["A workflow needs at least one step."]

    ordered = tuple(sorted(steps, key=lambda s: s.step_order))
    seen: set[int] = set()
    for step in ordered:
        if step.step_order in seen:
            errors.setdefault("steps", []).append(
                f"Duplicate step_order {step.step_order}; step orders must be strictly increasing."
            )
        seen.add(step.step_order)
        problems = validate_step_definition(step)
        if problems:
            errors.setdefault(f"steps.{step.step_order}", []).extend(problems)

    if errors:
        raise ValidationException(errors)
    return ordered


def validate_amount_range(
    min_amount: Optional[Decimal], max_amount: Optional[Decimal],
) -> None:
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise ValidationException(
            {"max_amount": ["max_amount must be greater than or equal to min_amount."]}
        )


# ═════════════════════════════════════════════════════════════════════
# Live instances
# ═════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ApprovalSubject:
    """The request under approval plus the attributes used for scoping."""

    entity_type: EntityType
    entity_id: uuid.UUID
    requester_id: Optional[uuid.UUID] = None
    department_id: Optional[uuid.UUID] = None
    position_id: Optional[uuid.UUID] = None
    amount: Optional[Decimal] = None

    def as_context(self) -> dict[str, Any]:
        return {
            "department_id": self.department_id,
            "position_id": self.position_id,
            "amount": self.amount,
        }


@dataclass
class StepRecord:
    step_order: int
    decision: StepDecision = StepDecision.pending
    resolved_approvers: frozenset[uuid.UUID] = frozenset()
    activated_at: Optional[datetime] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    delegated_by: Optional[uuid.UUID] = None
    comments: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.decision in TERMINAL_STEP_DECISIONS


@dataclass
class ApprovalInstance:
    id: uuid.UUID
    workflow_id: uuid.UUID
    subject: ApprovalSubject
    records: list[StepRecord]
    created_at: datetime
    status: InstanceStatus = InstanceStatus.in_progress
    current_step_order: Optional[int] = None
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status is not InstanceStatus.in_progress

    def record(self, step_order: int) -> StepRecord:
        for record in self.records:
            if record.step_order == step_order:
                return record
        raise KeyError(step_order)

    @property
    def current_record(self) -> Optional[StepRecord]:
        if self.is_terminal or self.current_step_order is None:
            return None
        return self.record(self.current_step_order)

    def unsettled_before(self, step_order: int) -> list[int]:
        """Orders of earlier steps that still lack a final decision."""
        return [
            record.step_order
            for record in self.records
            if record.step_order < step_order and not record.is_terminal
        ]


@dataclass(frozen=True)
class ApprovalEvent:
    """Side-effect request handed to the notification sink."""

    type: ApprovalEventType
    instance_id: uuid.UUID
    entity_type: EntityType
    entity_id: uuid.UUID
    step_order: Optional[int] = None
    actor_id: Optional[uuid.UUID] = None
    recipients: frozenset[uuid.UUID] = frozenset()
    comments: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
