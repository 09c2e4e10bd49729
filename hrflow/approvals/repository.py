"""SQLAlchemy-backed ApprovalRepository.

Maps ORM rows to the engine's domain dataclasses. Instance writes are
conditional ``UPDATE ... WHERE version = :expected`` statements; a
mismatch means another request advanced the instance first.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Text, cast, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hrflow.approvals import models
from hrflow.approvals.domain import (
    ApprovalInstance,
    ApprovalSubject,
    StepDefinition,
    StepRecord,
    WorkflowDefinition,
)
from hrflow.common.constants import EntityType, InstanceStatus, StepDecision
from hrflow.common.exceptions import (
    ConflictError,
    NotFoundException,
    VersionConflictException,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row → domain ────────────────────────────────────────────────────

def to_step_definition(row: models.ApprovalStep) -> StepDefinition:
    return StepDefinition(
        id=row.id,
        step_order=row.step_order,
        name=row.name,
        approver_type=row.approver_type,
        approver_id=row.approver_id,
        position_id=row.position_id,
        role=row.role,
        department_id=row.department_id,
        is_required=bool(row.is_required),
        can_delegate=bool(row.can_delegate),
        can_skip=bool(row.can_skip),
        auto_approve=bool(row.auto_approve),
        auto_approve_after_hours=row.auto_approve_after_hours,
        settings=dict(row.settings or {}),
    )


def to_workflow_definition(row: models.ApprovalWorkflow) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=row.id,
        name=row.name,
        description=row.description,
        entity_type=row.entity_type,
        department_id=row.department_id,
        position_id=row.position_id,
        min_amount=row.min_amount,
        max_amount=row.max_amount,
        is_active=bool(row.is_active),
        settings=dict(row.settings or {}),
        steps=tuple(
            to_step_definition(step)
            for step in sorted(row.steps, key=lambda s: s.step_order)
        ),
    )


def to_instance(row: models.ApprovalInstance) -> ApprovalInstance:
    return ApprovalInstance(
        id=row.id,
        workflow_id=row.workflow_id,
        subject=ApprovalSubject(
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            requester_id=row.requester_id,
            department_id=row.department_id,
            position_id=row.position_id,
            amount=row.amount,
        ),
        records=[
            StepRecord(
                step_order=record.step_order,
                decision=record.decision,
                resolved_approvers=frozenset(
                    uuid.UUID(str(value)) for value in (record.resolved_approvers or [])
                ),
                activated_at=_as_utc(record.activated_at),
                decided_by=record.decided_by,
                decided_at=_as_utc(record.decided_at),
                delegated_by=record.delegated_by,
                comments=record.comments,
            )
            for record in sorted(row.records, key=lambda r: r.step_order)
        ],
        created_at=_as_utc(row.created_at),
        status=row.status,
        current_step_order=row.current_step_order,
        completed_at=_as_utc(row.completed_at),
        cancel_reason=row.cancel_reason,
        version=row.version,
    )


def _record_values(record: StepRecord) -> dict:
    return dict(
        decision=record.decision,
        resolved_approvers=sorted(str(a) for a in record.resolved_approvers),
        activated_at=record.activated_at,
        decided_by=record.decided_by,
        decided_at=record.decided_at,
        delegated_by=record.delegated_by,
        comments=record.comments,
    )


# ── Repository ──────────────────────────────────────────────────────


class SqlApprovalRepository:
    """ApprovalRepository over the request-scoped AsyncSession."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ── Definitions ─────────────────────────────────────────────────

    async def load_active_workflow_definitions(
        self, entity_type: EntityType,
    ) -> list[WorkflowDefinition]:
        result = await self._db.execute(
            select(models.ApprovalWorkflow)
            .where(
                models.ApprovalWorkflow.entity_type == EntityType(entity_type),
                models.ApprovalWorkflow.is_active.is_(True),
            )
            .options(selectinload(models.ApprovalWorkflow.steps))
        )
        return [to_workflow_definition(row) for row in result.scalars().all()]

    async def load_workflow(self, workflow_id: uuid.UUID) -> WorkflowDefinition:
        result = await self._db.execute(
            select(models.ApprovalWorkflow)
            .where(models.ApprovalWorkflow.id == workflow_id)
            .options(selectinload(models.ApprovalWorkflow.steps))
        )
        row = result.scalars().first()
        if row is None:
            raise NotFoundException("ApprovalWorkflow", workflow_id)
        return to_workflow_definition(row)

    # ── Instances ───────────────────────────────────────────────────

    def _instance_query(self):
        return select(models.ApprovalInstance).options(
            selectinload(models.ApprovalInstance.records),
        )

    async def load_instance(self, instance_id: uuid.UUID) -> ApprovalInstance:
        result = await self._db.execute(
            self._instance_query()
            .where(models.ApprovalInstance.id == instance_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        if row is None:
            raise NotFoundException("ApprovalInstance", instance_id)
        return to_instance(row)

    async def find_by_entity(
        self, entity_type: EntityType, entity_id: uuid.UUID,
    ) -> Optional[ApprovalInstance]:
        result = await self._db.execute(
            self._instance_query().where(
                models.ApprovalInstance.entity_type == EntityType(entity_type),
                models.ApprovalInstance.entity_id == entity_id,
            ).execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return to_instance(row) if row is not None else None

    async def list_in_progress(
        self, *, approver_id: Optional[uuid.UUID] = None,
    ) -> list[ApprovalInstance]:
        query = (
            self._instance_query()
            .where(models.ApprovalInstance.status == InstanceStatus.in_progress)
            .order_by(models.ApprovalInstance.created_at, models.ApprovalInstance.id)
            .execution_options(populate_existing=True)
        )
        if approver_id is not None:
            record = models.ApprovalStepRecord
            # Text match on the stored id list; the engine re-checks exact membership
            query = query.where(
                select(record.id)
                .where(
                    record.instance_id == models.ApprovalInstance.id,
                    record.step_order == models.ApprovalInstance.current_step_order,
                    record.decision == StepDecision.pending,
                    cast(record.resolved_approvers, Text).contains(str(approver_id)),
                )
                .exists()
            )
        result = await self._db.execute(query)
        return [to_instance(row) for row in result.scalars().all()]

    async def _entity_taken(self, subject: ApprovalSubject) -> bool:
        existing = await self._db.execute(
            select(models.ApprovalInstance.id).where(
                models.ApprovalInstance.entity_type == subject.entity_type,
                models.ApprovalInstance.entity_id == subject.entity_id,
            )
        )
        return existing.scalar() is not None

    async def add_instance(self, instance: ApprovalInstance) -> None:
        subject = instance.subject
        if await self._entity_taken(subject):
            raise ConflictError("entity_id", subject.entity_id)

        row = models.ApprovalInstance(
            id=instance.id,
            workflow_id=instance.workflow_id,
            entity_type=subject.entity_type,
            entity_id=subject.entity_id,
            requester_id=subject.requester_id,
            department_id=subject.department_id,
            position_id=subject.position_id,
            amount=subject.amount,
            current_step_order=instance.current_step_order,
            status=instance.status,
            cancel_reason=instance.cancel_reason,
            version=instance.version,
            created_at=instance.created_at,
            completed_at=instance.completed_at,
            records=[
                models.ApprovalStepRecord(step_order=record.step_order, **_record_values(record))
                for record in instance.records
            ],
        )
        # A concurrent submission for the same entity loses on uq_approval_instance_entity
        try:
            async with self._db.begin_nested():
                self._db.add(row)
        except IntegrityError as exc:
            raise ConflictError("entity_id", subject.entity_id) from exc

    async def save_instance(self, instance: ApprovalInstance, expected_version: int) -> None:
        result = await self._db.execute(
            update(models.ApprovalInstance)
            .where(
                models.ApprovalInstance.id == instance.id,
                models.ApprovalInstance.version == expected_version,
            )
            .values(
                status=instance.status,
                current_step_order=instance.current_step_order,
                completed_at=instance.completed_at,
                cancel_reason=instance.cancel_reason,
                version=expected_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VersionConflictException("ApprovalInstance", instance.id, expected_version)

        for record in instance.records:
            await self._db.execute(
                update(models.ApprovalStepRecord)
                .where(
                    models.ApprovalStepRecord.instance_id == instance.id,
                    models.ApprovalStepRecord.step_order == record.step_order,
                )
                .values(**_record_values(record))
                .execution_options(synchronize_session=False)
            )
        instance.version = expected_version + 1

