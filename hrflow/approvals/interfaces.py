"""Collaborator interfaces consumed by the approval engine.

Implementations are passed to ``ApprovalEngine`` at construction time:
the SQL-backed ones live in ``repository``, ``directory`` and ``notifier``;
tests supply in-memory fakes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from hrflow.approvals.domain import ApprovalEvent, ApprovalInstance, WorkflowDefinition
from hrflow.common.constants import EntityType, UserRole


class OrgDirectory(Protocol):
    """Read access to the current org structure."""

    async def get_department_head(self, department_id: uuid.UUID) -> Optional[uuid.UUID]:
        ...

    async def get_users_by_position(
        self,
        position_id: uuid.UUID,
        department_id: Optional[uuid.UUID] = None,
    ) -> set[uuid.UUID]:
        ...

    async def get_users_by_role(self, role: UserRole) -> set[uuid.UUID]:
        ...


class ApprovalRepository(Protocol):
    """Persistence for definitions (read-only) and instances (versioned)."""

    async def load_active_workflow_definitions(
        self, entity_type: EntityType,
    ) -> Sequence[WorkflowDefinition]:
        ...

    async def load_workflow(self, workflow_id: uuid.UUID) -> WorkflowDefinition:
        """Raise ``NotFoundException`` when the workflow does not exist."""
        ...

    async def load_instance(self, instance_id: uuid.UUID) -> ApprovalInstance:
        """Raise ``NotFoundException`` when the instance does not exist."""
        ...

    async def add_instance(self, instance: ApprovalInstance) -> None:
        ...

    async def save_instance(self, instance: ApprovalInstance, expected_version: int) -> None:
        """Persist *instance* iff the stored version equals *expected_version*.

        Raises ``VersionConflictException`` otherwise. On success the
        instance's ``version`` is bumped in place.
        """
        ...

    async def list_in_progress(
        self, *, approver_id: Optional[uuid.UUID] = None,
    ) -> Sequence[ApprovalInstance]:
        """In-progress instances, oldest first.

        With *approver_id*, implementations may narrow the result to
        instances whose current step could name that approver. The narrowing
        may over-include but must never drop a match.
        """
        ...


class NotificationSink(Protocol):
    """Fire-and-forget delivery of approval events."""

    async def notify(self, event: ApprovalEvent) -> None:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
