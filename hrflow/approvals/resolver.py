"""Approver resolution: step definition + subject → eligible approver ids.

Resolution always reads the org directory at call time. The engine runs
it when a step becomes current and stores the result on the step record,
so later org changes affect upcoming steps but not the active one.
"""

from __future__ import annotations

import logging
import uuid
from typing import Awaitable, Callable

from hrflow.approvals.domain import ApprovalSubject, StepDefinition
from hrflow.approvals.interfaces import OrgDirectory
from hrflow.common.constants import ApproverType
from hrflow.common.exceptions import ApproverResolutionException

logger = logging.getLogger(__name__)

_Strategy = Callable[[StepDefinition, ApprovalSubject], Awaitable[set[uuid.UUID]]]


class ApproverResolver:
    """Dispatches on ``approver_type`` to the matching lookup strategy."""

    def __init__(self, directory: OrgDirectory) -> None:
        self._directory = directory
        self._strategies: dict[ApproverType, _Strategy] = {
            ApproverType.specific_user: self._specific_user,
            ApproverType.department_head: self._department_head,
            ApproverType.position_based: self._position_holders,
            ApproverType.role_based: self._role_holders,
        }

    async def resolve(
        self,
        step: StepDefinition,
        subject: ApprovalSubject,
    ) -> frozenset[uuid.UUID]:
        """Return the non-empty set of approvers for *step*.

        Raises ``ApproverResolutionException`` when nobody is eligible.
        """
        strategy = self._strategies[ApproverType(step.approver_type)]
        approvers = await strategy(step, subject)
        if not approvers:
            raise ApproverResolutionException(
                step.step_order,
                f"Step {step.step_order} ({step.approver_type.value}) "
                f"resolved to no eligible approver.",
            )
        logger.debug(
            "Resolved step %s of %s/%s to %d approver(s)",
            step.step_order, subject.entity_type.value, subject.entity_id, len(approvers),
        )
        return frozenset(approvers)

    # ── Strategies ──────────────────────────────────────────────────

    async def _specific_user(
        self, step: StepDefinition, subject: ApprovalSubject,
    ) -> set[uuid.UUID]:
        return {step.approver_id} if step.approver_id is not None else set()

    async def _department_head(
        self, step: StepDefinition, subject: ApprovalSubject,
    ) -> set[uuid.UUID]:
        # A fixed department on the step overrides the requester's own
        department_id = step.department_id or subject.department_id
        if department_id is None:
            return set()
        head = await self._directory.get_department_head(department_id)
        return {head} if head is not None else set()

    async def _position_holders(
        self, step: StepDefinition, subject: ApprovalSubject,
    ) -> set[uuid.UUID]:
        if step.position_id is None:
            return set()
        return set(
            await self._directory.get_users_by_position(
                step.position_id, step.department_id,
            )
        )

    async def _role_holders(
        self, step: StepDefinition, subject: ApprovalSubject,
    ) -> set[uuid.UUID]:
        if step.role is None:
            return set()
        return set(await self._directory.get_users_by_role(step.role))
