"""Approval service layer — workflow definition CRUD and engine wiring.

Business logic:
  - Definition create/update/deactivate with save-time step validation
  - Submission of entities for approval (subject context from the requester)
  - Access rules for reading, deciding and cancelling instances
  - Auto-approval sweep entry point for the scheduler and the admin API
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hrflow.approvals.directory import SqlOrgDirectory
from hrflow.approvals.domain import (
    ApprovalInstance as ApprovalInstanceState,
    ApprovalSubject,
    validate_amount_range,
    validate_step_sequence,
)
from hrflow.approvals.engine import ApprovalEngine
from hrflow.approvals.interfaces import Clock
from hrflow.approvals.models import ApprovalInstance, ApprovalStep, ApprovalWorkflow
from hrflow.approvals.notifier import SqlNotificationSink
from hrflow.approvals.repository import SqlApprovalRepository
from hrflow.approvals.schemas import (
    ApprovalInstanceOut,
    ApprovalRequestCreate,
    ApprovalStartOut,
    ApprovalStepCreate,
    ApprovalWorkflowCreate,
    ApprovalWorkflowOut,
    ApprovalWorkflowUpdate,
    CancelRequest,
    DecisionRequest,
)
from hrflow.auth.dependencies import has_permission
from hrflow.common.audit import create_audit_entry
from hrflow.common.constants import EntityType, InstanceStatus, UserRole
from hrflow.common.exceptions import (
    ConflictError,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    ValidationException,
    WorkflowNotFoundException,
)
from hrflow.common.pagination import PaginatedResponse, PaginationParams, build_meta, paginate
from hrflow.config import settings
from hrflow.core_hr.models import Employee

logger = logging.getLogger(__name__)


def _step_rows(steps: list[ApprovalStepCreate]) -> list[ApprovalStep]:
    return [
        ApprovalStep(**step.model_dump())
        for step in sorted(steps, key=lambda s: s.step_order)
    ]


# ═════════════════════════════════════════════════════════════════════
# WorkflowDefinitionService
# ═════════════════════════════════════════════════════════════════════


class WorkflowDefinitionService:
    """Async CRUD for approval workflow templates."""

    @staticmethod
    async def _get_row(db: AsyncSession, workflow_id: uuid.UUID) -> ApprovalWorkflow:
        result = await db.execute(
            select(ApprovalWorkflow)
            .where(ApprovalWorkflow.id == workflow_id)
            .options(selectinload(ApprovalWorkflow.steps))
            .execution_options(populate_existing=True)
        )
        workflow = result.scalars().first()
        if workflow is None:
            raise NotFoundException("ApprovalWorkflow", str(workflow_id))
        return workflow

    @staticmethod
    async def _ensure_unique_name(
        db: AsyncSession, name: str, exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        query = select(ApprovalWorkflow.id).where(ApprovalWorkflow.name == name)
        if exclude_id is not None:
            query = query.where(ApprovalWorkflow.id != exclude_id)
        if (await db.execute(query)).scalar() is not None:
            raise ConflictError("name", name)

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    async def list_workflows(
        db: AsyncSession,
        pagination: PaginationParams,
        *,
        entity_type: Optional[EntityType] = None,
        is_active: Optional[bool] = None,
    ) -> PaginatedResponse[ApprovalWorkflowOut]:
        query = (
            select(ApprovalWorkflow)
            .options(selectinload(ApprovalWorkflow.steps))
            .order_by(ApprovalWorkflow.entity_type, ApprovalWorkflow.name)
        )
        if entity_type is not None:
            query = query.where(ApprovalWorkflow.entity_type == entity_type)
        if is_active is not None:
            query = query.where(ApprovalWorkflow.is_active.is_(is_active))

        rows, meta = await paginate(db, query, pagination, model=ApprovalWorkflow)
        return PaginatedResponse[ApprovalWorkflowOut](
            data=[ApprovalWorkflowOut.model_validate(row) for row in rows],
            meta=meta,
        )

    @staticmethod
    async def get_workflow(db: AsyncSession, workflow_id: uuid.UUID) -> ApprovalWorkflowOut:
        row = await WorkflowDefinitionService._get_row(db, workflow_id)
        return ApprovalWorkflowOut.model_validate(row)

    # ── Create ──────────────────────────────────────────────────────

    @staticmethod
    async def create_workflow(
        db: AsyncSession,
        data: ApprovalWorkflowCreate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ApprovalWorkflowOut:
        """Create a workflow and its steps after validating the sequence."""
        validate_step_sequence([step.to_definition() for step in data.steps])
        validate_amount_range(data.min_amount, data.max_amount)
        await WorkflowDefinitionService._ensure_unique_name(db, data.name)

        workflow = ApprovalWorkflow(
            **data.model_dump(exclude={"steps"}),
            created_by=actor_id,
            steps=_step_rows(data.steps),
        )
        db.add(workflow)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type="approval_workflow",
            entity_id=workflow.id,
            actor_id=actor_id,
            new_values=data.model_dump(mode="json"),
        )
        logger.info(
            "Approval workflow %r created for %s with %d step(s)",
            data.name, data.entity_type.value, len(data.steps),
        )
        return await WorkflowDefinitionService.get_workflow(db, workflow.id)

    # ── Update ──────────────────────────────────────────────────────

    @staticmethod
    async def update_workflow(
        db: AsyncSession,
        workflow_id: uuid.UUID,
        data: ApprovalWorkflowUpdate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ApprovalWorkflowOut:
        """Partial update; a supplied ``steps`` list replaces the sequence.

        Steps cannot be replaced while instances of the workflow are still
        in progress, since those instances point at the current step orders.
        """
        workflow = await WorkflowDefinitionService._get_row(db, workflow_id)
        changes = data.model_dump(exclude_unset=True, exclude={"steps"})
        for field in ("name", "is_active", "settings"):
            if changes.get(field, True) is None:
                del changes[field]

        if "name" in changes and changes["name"] != workflow.name:
            await WorkflowDefinitionService._ensure_unique_name(db, changes["name"], workflow.id)
        validate_amount_range(
            changes.get("min_amount", workflow.min_amount),
            changes.get("max_amount", workflow.max_amount),
        )

        old_values: dict[str, Any] = {}
        for field, value in changes.items():
            old_values[field] = getattr(workflow, field, None)
            setattr(workflow, field, value)

        if data.steps is not None:
            validate_step_sequence([step.to_definition() for step in data.steps])
            in_flight = await db.execute(
                select(ApprovalInstance.id).where(
                    ApprovalInstance.workflow_id == workflow.id,
                    ApprovalInstance.status == InstanceStatus.in_progress,
                ).limit(1)
            )
            if in_flight.scalar() is not None:
                raise InvalidStateException(
                    f"Workflow {workflow.name!r} has in-progress approvals; "
                    f"its steps cannot be replaced until they complete."
                )
            old_values["steps"] = len(workflow.steps)
            workflow.steps.clear()
            # Old rows must be gone before new ones reuse their step orders
            await db.flush()
            workflow.steps.extend(_step_rows(data.steps))

        workflow.updated_at = datetime.now(timezone.utc)
        await db.flush()

        await create_audit_entry(
            db,
            action="update",
            entity_type="approval_workflow",
            entity_id=workflow.id,
            actor_id=actor_id,
            old_values=_jsonable(old_values),
            new_values=data.model_dump(mode="json", exclude_unset=True),
        )
        return await WorkflowDefinitionService.get_workflow(db, workflow.id)

    # ── Deactivate ──────────────────────────────────────────────────

    @staticmethod
    async def deactivate_workflow(
        db: AsyncSession,
        workflow_id: uuid.UUID,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> ApprovalWorkflowOut:
        """Soft-disable; in-progress instances keep running on the definition."""
        workflow = await WorkflowDefinitionService._get_row(db, workflow_id)
        if workflow.is_active:
            workflow.is_active = False
            workflow.updated_at = datetime.now(timezone.utc)
            await db.flush()
            await create_audit_entry(
                db,
                action="deactivate",
                entity_type="approval_workflow",
                entity_id=workflow.id,
                actor_id=actor_id,
                old_values={"is_active": True},
                new_values={"is_active": False},
            )
            logger.info("Approval workflow %r deactivated", workflow.name)
        return await WorkflowDefinitionService.get_workflow(db, workflow.id)


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in values.items():
        if hasattr(value, "value"):
            value = value.value
        elif value is not None and not isinstance(value, (str, int, bool, dict, list)):
            value = str(value)
        out[key] = value
    return out


# ═════════════════════════════════════════════════════════════════════
# ApprovalService
# ═════════════════════════════════════════════════════════════════════


class ApprovalService:
    """Request-scoped entry points onto the approval engine."""

    @staticmethod
    def build_engine(db: AsyncSession, clock: Optional[Clock] = None) -> ApprovalEngine:
        return ApprovalEngine(
            repository=SqlApprovalRepository(db),
            directory=SqlOrgDirectory(db),
            notifier=SqlNotificationSink(db),
            clock=clock,
        )

    @staticmethod
    def _check_access(
        instance: ApprovalInstanceState, actor_id: uuid.UUID, role: UserRole,
    ) -> None:
        if instance.subject.requester_id == actor_id:
            return
        if has_permission(role, "approval:read_all"):
            return
        for record in instance.records:
            if actor_id in record.resolved_approvers or actor_id in (
                record.decided_by, record.delegated_by,
            ):
                return
        raise ForbiddenException(detail="You are not a participant in this approval.")

    @staticmethod
    async def _get_active_employee(db: AsyncSession, employee_id: uuid.UUID) -> Employee:
        result = await db.execute(
            select(Employee).where(Employee.id == employee_id, Employee.is_active.is_(True))
        )
        employee = result.scalars().first()
        if employee is None:
            raise NotFoundException("Employee", str(employee_id))
        return employee

    # ── Submit ──────────────────────────────────────────────────────

    @staticmethod
    async def start_approval(
        db: AsyncSession,
        data: ApprovalRequestCreate,
        *,
        actor_id: uuid.UUID,
        role: UserRole,
    ) -> ApprovalStartOut:
        """Open an approval instance for an entity.

        With ``APPROVAL_REQUIRE_WORKFLOW`` disabled an entity that matches
        no workflow needs no approval and ``approval_required`` is False.
        """
        requester_id = data.requester_id or actor_id
        if requester_id != actor_id and not has_permission(role, "approval:manage"):
            raise ForbiddenException(detail="Only HR can submit approvals on behalf of others.")
        requester = await ApprovalService._get_active_employee(db, requester_id)

        subject = ApprovalSubject(
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            requester_id=requester.id,
            department_id=data.department_id or requester.department_id,
            position_id=data.position_id or requester.position_id,
            amount=data.amount,
        )
        try:
            instance = await ApprovalService.build_engine(db).create_instance(subject)
        except WorkflowNotFoundException:
            if settings.APPROVAL_REQUIRE_WORKFLOW:
                raise
            logger.info(
                "No approval workflow for %s/%s; treating as pre-approved",
                data.entity_type.value, data.entity_id,
            )
            return ApprovalStartOut(approval_required=False)
        return ApprovalStartOut(
            approval_required=True,
            instance=ApprovalInstanceOut.from_domain(instance),
        )

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    async def get_instance(
        db: AsyncSession,
        instance_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        role: UserRole,
    ) -> ApprovalInstanceOut:
        instance = await ApprovalService.build_engine(db).get_instance(instance_id)
        ApprovalService._check_access(instance, actor_id, role)
        return ApprovalInstanceOut.from_domain(instance)

    @staticmethod
    async def get_instance_for_entity(
        db: AsyncSession,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        *,
        actor_id: uuid.UUID,
        role: UserRole,
    ) -> ApprovalInstanceOut:
        instance = await SqlApprovalRepository(db).find_by_entity(entity_type, entity_id)
        if instance is None:
            raise NotFoundException("ApprovalInstance", f"{entity_type.value}/{entity_id}")
        ApprovalService._check_access(instance, actor_id, role)
        return ApprovalInstanceOut.from_domain(instance)

    @staticmethod
    async def list_pending(
        db: AsyncSession,
        approver_id: uuid.UUID,
        pagination: PaginationParams,
    ) -> PaginatedResponse[ApprovalInstanceOut]:
        """Instances whose current step the approver may decide, oldest first."""
        pending = await ApprovalService.build_engine(db).list_pending_for_approver(approver_id)
        page = pending[pagination.offset:pagination.offset + pagination.page_size]
        return PaginatedResponse[ApprovalInstanceOut](
            data=[ApprovalInstanceOut.from_domain(instance) for instance in page],
            meta=build_meta(pagination, len(pending)),
        )

    # ── Decide / cancel ─────────────────────────────────────────────

    @staticmethod
    async def decide(
        db: AsyncSession,
        instance_id: uuid.UUID,
        data: DecisionRequest,
        *,
        actor_id: uuid.UUID,
    ) -> ApprovalInstanceOut:
        if data.delegate_to is not None:
            try:
                await ApprovalService._get_active_employee(db, data.delegate_to)
            except NotFoundException:
                raise ValidationException(
                    {"delegate_to": ["Delegate must be an active employee."]}
                )
        instance = await ApprovalService.build_engine(db).record_decision(
            instance_id,
            data.step_order,
            actor_id,
            data.action,
            delegate_to=data.delegate_to,
            comments=data.comments,
        )
        return ApprovalInstanceOut.from_domain(instance)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        instance_id: uuid.UUID,
        data: CancelRequest,
        *,
        actor_id: uuid.UUID,
        role: UserRole,
    ) -> ApprovalInstanceOut:
        """Withdraw an in-progress request (requester or HR/system admin)."""
        engine = ApprovalService.build_engine(db)
        current = await engine.get_instance(instance_id)
        is_requester = current.subject.requester_id == actor_id
        if not is_requester and not has_permission(role, "approval:manage"):
            raise ForbiddenException(detail="Only the requester or HR can cancel this approval.")
        instance = await engine.cancel(instance_id, actor_id, data.reason)
        return ApprovalInstanceOut.from_domain(instance)

    # ── Sweep ───────────────────────────────────────────────────────

    @staticmethod
    async def sweep(
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        return await ApprovalService.build_engine(db).sweep_auto_approvals(now)
