"""Workflow selection: pick the most specific active definition for a request."""

from __future__ import annotations

from typing import Iterable

from hrflow.approvals.domain import ApprovalSubject, WorkflowDefinition
from hrflow.approvals.interfaces import ApprovalRepository
from hrflow.common.constants import EntityType
from hrflow.common.exceptions import WorkflowNotFoundException


def pick_workflow(
    entity_type: EntityType,
    candidates: Iterable[WorkflowDefinition],
    subject: ApprovalSubject,
) -> WorkflowDefinition:
    """Return the best match among *candidates*.

    A candidate matches when it is active, has the same entity type and
    every non-null scope field accepts the subject. Among matches the one
    with the most non-null scope fields wins; ties go to the lowest id.
    """
    entity_type = EntityType(entity_type)
    matching = [
        workflow
        for workflow in candidates
        if workflow.is_active
        and workflow.entity_type == entity_type
        and workflow.applies_to(subject)
    ]
    if not matching:
        raise WorkflowNotFoundException(entity_type.value, subject.as_context())
    return min(matching, key=lambda w: (-w.specificity, w.id))


class WorkflowSelector:
    """Loads active definitions from the repository and ranks them."""

    def __init__(self, repository: ApprovalRepository) -> None:
        self._repository = repository

    async def select_workflow(
        self,
        entity_type: EntityType,
        subject: ApprovalSubject,
    ) -> WorkflowDefinition:
        candidates = await self._repository.load_active_workflow_definitions(
            EntityType(entity_type),
        )
        return pick_workflow(entity_type, candidates, subject)
