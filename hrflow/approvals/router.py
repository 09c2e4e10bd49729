"""Approvals router — workflow definitions, instances, decisions, sweep.

All endpoints require authentication. Definition management needs the
``approval:configure`` permission and instance reads ``approval:read_own``
(participants only, unless the role also holds ``approval:read_all``).
Deciding is open to any authenticated employee; the engine checks
eligibility per step.
"""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hrflow.approvals.schemas import (
    ApprovalInstanceOut,
    ApprovalRequestCreate,
    ApprovalStartOut,
    ApprovalWorkflowCreate,
    ApprovalWorkflowOut,
    ApprovalWorkflowUpdate,
    CancelRequest,
    DecisionRequest,
    SweepOut,
)
from hrflow.approvals.service import ApprovalService, WorkflowDefinitionService
from hrflow.auth.dependencies import get_current_user, require_permission
from hrflow.common.constants import EntityType
from hrflow.common.pagination import PaginatedResponse, PaginationParams
from hrflow.common.rate_limit import limiter
from hrflow.config import settings
from hrflow.core_hr.models import Employee
from hrflow.database import get_db

router = APIRouter(prefix="", tags=["approvals"])


# ═════════════════════════════════════════════════════════════════════
# Workflow definitions
# ═════════════════════════════════════════════════════════════════════


@router.get("/workflows", response_model=PaginatedResponse[ApprovalWorkflowOut])
async def list_workflows(
    entity_type: Optional[EntityType] = Query(None),
    is_active: Optional[bool] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(require_permission("approval:configure")),
    db: AsyncSession = Depends(get_db),
):
    """List workflow templates, optionally filtered by entity type and status."""
    return await WorkflowDefinitionService.list_workflows(
        db, pagination, entity_type=entity_type, is_active=is_active,
    )


@router.post("/workflows", response_model=ApprovalWorkflowOut, status_code=201)
async def create_workflow(
    body: ApprovalWorkflowCreate,
    employee: Employee = Depends(require_permission("approval:configure")),
    db: AsyncSession = Depends(get_db),
):
    """Create a workflow template with its ordered steps."""
    return await WorkflowDefinitionService.create_workflow(db, body, actor_id=employee.id)


@router.get("/workflows/{workflow_id}", response_model=ApprovalWorkflowOut)
async def get_workflow(
    workflow_id: uuid.UUID,
    employee: Employee = Depends(require_permission("approval:configure")),
    db: AsyncSession = Depends(get_db),
):
    return await WorkflowDefinitionService.get_workflow(db, workflow_id)


@router.put("/workflows/{workflow_id}", response_model=ApprovalWorkflowOut)
async def update_workflow(
    workflow_id: uuid.UUID,
    body: ApprovalWorkflowUpdate,
    employee: Employee = Depends(require_permission("approval:configure")),
    db: AsyncSession = Depends(get_db),
):
    """Partial update. A ``steps`` list replaces the whole sequence."""
    return await WorkflowDefinitionService.update_workflow(
        db, workflow_id, body, actor_id=employee.id,
    )


@router.delete("/workflows/{workflow_id}", response_model=ApprovalWorkflowOut)
async def deactivate_workflow(
    workflow_id: uuid.UUID,
    employee: Employee = Depends(require_permission("approval:configure")),
    db: AsyncSession = Depends(get_db),
):
    """Soft-disable a workflow; running instances are unaffected."""
    return await WorkflowDefinitionService.deactivate_workflow(
        db, workflow_id, actor_id=employee.id,
    )


# ═════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════


@router.post("/instances", response_model=ApprovalStartOut, status_code=201)
async def start_approval(
    request: Request,
    body: ApprovalRequestCreate,
    employee: Employee = Depends(require_permission("approval:request")),
    db: AsyncSession = Depends(get_db),
):
    """Submit an entity for approval using the best-matching workflow."""
    return await ApprovalService.start_approval(
        db, body, actor_id=employee.id, role=request.state.user_role,
    )


@router.get("/instances/{instance_id}", response_model=ApprovalInstanceOut)
async def get_instance(
    request: Request,
    instance_id: uuid.UUID,
    employee: Employee = Depends(require_permission("approval:read_own")),
    db: AsyncSession = Depends(get_db),
):
    """Instance with its full step trail (participants and HR only)."""
    return await ApprovalService.get_instance(
        db, instance_id, actor_id=employee.id, role=request.state.user_role,
    )


@router.get(
    "/instances/by-entity/{entity_type}/{entity_id}",
    response_model=ApprovalInstanceOut,
)
async def get_instance_for_entity(
    request: Request,
    entity_type: EntityType,
    entity_id: uuid.UUID,
    employee: Employee = Depends(require_permission("approval:read_own")),
    db: AsyncSession = Depends(get_db),
):
    return await ApprovalService.get_instance_for_entity(
        db, entity_type, entity_id, actor_id=employee.id, role=request.state.user_role,
    )


@router.get("/pending", response_model=PaginatedResponse[ApprovalInstanceOut])
async def pending_approvals(
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(require_permission("approval:read_own")),
    db: AsyncSession = Depends(get_db),
):
    """Requests currently waiting on the authenticated user's decision."""
    return await ApprovalService.list_pending(db, employee.id, pagination)


@router.post("/instances/{instance_id}/decisions", response_model=ApprovalInstanceOut)
@limiter.limit(settings.DECISION_RATE_LIMIT)
async def record_decision(
    request: Request,
    instance_id: uuid.UUID,
    body: DecisionRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approve, reject or delegate the current step."""
    return await ApprovalService.decide(db, instance_id, body, actor_id=employee.id)


@router.post("/instances/{instance_id}/cancel", response_model=ApprovalInstanceOut)
async def cancel_instance(
    request: Request,
    instance_id: uuid.UUID,
    body: CancelRequest,
    employee: Employee = Depends(require_permission("approval:read_own")),
    db: AsyncSession = Depends(get_db),
):
    return await ApprovalService.cancel(
        db, instance_id, body, actor_id=employee.id, role=request.state.user_role,
    )


# ── POST /sweep — manual trigger for the auto-approval job ──────────

@router.post("/sweep", response_model=SweepOut)
async def run_sweep(
    employee: Employee = Depends(require_permission("approval:sweep")),
    db: AsyncSession = Depends(get_db),
):
    advanced = await ApprovalService.sweep(db)
    return SweepOut(advanced=advanced, count=len(advanced))
