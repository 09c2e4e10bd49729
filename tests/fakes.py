"""In-memory collaborators for exercising the approval engine without a database."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from hrflow.approvals.domain import ApprovalEvent, ApprovalInstance, WorkflowDefinition
from hrflow.common.constants import EntityType, InstanceStatus, UserRole
from hrflow.common.exceptions import (
    ConflictError,
    NotFoundException,
    VersionConflictException,
)


class FakeDirectory:
    """Org structure held in plain dicts; mutate between calls to simulate org changes."""

    def __init__(
        self,
        *,
        heads: Optional[dict[uuid.UUID, uuid.UUID]] = None,
        positions: Optional[dict[uuid.UUID, list[tuple[uuid.UUID, Optional[uuid.UUID]]]]] = None,
        roles: Optional[dict[UserRole, set[uuid.UUID]]] = None,
    ) -> None:
        self.heads = heads or {}
        # position_id → [(employee_id, department_id), ...]
        self.positions = positions or {}
        self.roles = roles or {}
        self.calls: list[tuple] = []

    async def get_department_head(self, department_id):
        self.calls.append(("head", department_id))
        return self.heads.get(department_id)

    async def get_users_by_position(self, position_id, department_id=None):
        self.calls.append(("position", position_id, department_id))
        return {
            employee_id
            for employee_id, dept in self.positions.get(position_id, [])
            if department_id is None or dept == department_id
        }

    async def get_users_by_role(self, role):
        self.calls.append(("role", role))
        return set(self.roles.get(role, set()))


class InMemoryRepository:
    """Stores deep copies so callers cannot mutate persisted state by accident."""

    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()) -> None:
        self.workflows = {workflow.id: workflow for workflow in workflows}
        self.instances: dict[uuid.UUID, ApprovalInstance] = {}
        self.saves = 0

    async def load_active_workflow_definitions(self, entity_type: EntityType):
        return [
            workflow for workflow in self.workflows.values()
            if workflow.entity_type == entity_type and workflow.is_active
        ]

    async def load_workflow(self, workflow_id):
        try:
            return self.workflows[workflow_id]
        except KeyError:
            raise NotFoundException("ApprovalWorkflow", workflow_id)

    async def load_instance(self, instance_id):
        try:
            return copy.deepcopy(self.instances[instance_id])
        except KeyError:
            raise NotFoundException("ApprovalInstance", instance_id)

    async def add_instance(self, instance):
        for stored in self.instances.values():
            if (stored.subject.entity_type, stored.subject.entity_id) == (
                instance.subject.entity_type, instance.subject.entity_id,
            ):
                raise ConflictError("entity_id", instance.subject.entity_id)
        self.instances[instance.id] = copy.deepcopy(instance)

    async def save_instance(self, instance, expected_version):
        stored = self.instances[instance.id]
        if stored.version != expected_version:
            raise VersionConflictException("ApprovalInstance", instance.id, expected_version)
        instance.version = expected_version + 1
        self.instances[instance.id] = copy.deepcopy(instance)
        self.saves += 1

    async def list_in_progress(self, *, approver_id=None):
        return [
            copy.deepcopy(instance)
            for instance in sorted(self.instances.values(), key=lambda i: i.created_at)
            if instance.status is InstanceStatus.in_progress
        ]


class RecordingSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[ApprovalEvent] = []
        self.fail = fail

    async def notify(self, event: ApprovalEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("notification backend unavailable")

    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current
