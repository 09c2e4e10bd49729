"""Approval instance engine — creates instances and advances them step by step.

State machine per instance::

    in_progress ──approve/delegate/auto-approve last step──▶ approved
        │  ──reject at a required step──────────────────────▶ rejected
        └──cancel───────────────────────────────────────────▶ cancelled

Per step record: ``pending`` → approved | rejected | skipped | delegated |
auto_approved. Steps are evaluated strictly in ascending ``step_order``.

Every mutating operation computes the complete transition in memory and
then persists it with a single conditional write
(``ApprovalRepository.save_instance``). Errors raised before that write
leave the stored state untouched. Notifications are emitted only after
the write succeeds, and their failures are logged, never raised.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from hrflow.approvals.domain import (
    ApprovalEvent,
    ApprovalInstance,
    ApprovalSubject,
    StepDefinition,
    StepRecord,
    WorkflowDefinition,
)
from hrflow.approvals.interfaces import (
    ApprovalRepository,
    Clock,
    NotificationSink,
    OrgDirectory,
    SystemClock,
)
from hrflow.approvals.resolver import ApproverResolver
from hrflow.approvals.selector import WorkflowSelector
from hrflow.common.constants import (
    SYSTEM_ACTOR_ID,
    ApprovalEventType,
    DecisionAction,
    InstanceStatus,
    StepDecision,
)
from hrflow.common.exceptions import (
    ApproverResolutionException,
    InvalidStateException,
    UnauthorizedApproverException,
    ValidationException,
    VersionConflictException,
)

logger = logging.getLogger(__name__)


class ApprovalEngine:
    """Stateful core of the approval workflow subsystem."""

    def __init__(
        self,
        repository: ApprovalRepository,
        directory: OrgDirectory,
        notifier: NotificationSink,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._selector = WorkflowSelector(repository)
        self._resolver = ApproverResolver(directory)
        self._notifier = notifier
        self._clock = clock or SystemClock()

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    async def get_instance(self, instance_id: uuid.UUID) -> ApprovalInstance:
        return await self._repository.load_instance(instance_id)

    async def list_pending_for_approver(
        self, approver_id: uuid.UUID,
    ) -> list[ApprovalInstance]:
        """In-progress instances whose current step ``approver_id`` may decide."""
        pending = []
        for instance in await self._repository.list_in_progress(approver_id=approver_id):
            record = instance.current_record
            if record is not None and approver_id in record.resolved_approvers:
                pending.append(instance)
        return pending

    # ─────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────

    async def create_instance(self, subject: ApprovalSubject) -> ApprovalInstance:
        """Select a workflow for *subject* and activate its first step.

        Raises ``WorkflowNotFoundException`` when no definition matches and
        ``ApproverResolutionException`` when a non-skippable step reached
        during activation has nobody to approve it.
        """
        workflow = await self._selector.select_workflow(subject.entity_type, subject)
        now = self._clock.now()

        instance = ApprovalInstance(
            id=uuid.uuid4(),
            workflow_id=workflow.id,
            subject=subject,
            records=[StepRecord(step_order=step.step_order) for step in workflow.steps],
            created_at=now,
        )
        events = [
            self._event(
                instance,
                ApprovalEventType.instance_created,
                actor_id=subject.requester_id,
                recipients=self._requester(instance),
                metadata={"workflow_name": workflow.name},
            )
        ]
        await self._activate_next(instance, workflow, None, now, events)
        await self._repository.add_instance(instance)

        logger.info(
            "Approval instance %s created for %s/%s using workflow %r (status=%s)",
            instance.id, subject.entity_type.value, subject.entity_id,
            workflow.name, instance.status.value,
        )
        await self._emit(events)
        return instance

    async def record_decision(
        self,
        instance_id: uuid.UUID,
        step_order: int,
        actor_id: uuid.UUID,
        action: DecisionAction,
        *,
        delegate_to: Optional[uuid.UUID] = None,
        comments: Optional[str] = None,
    ) -> ApprovalInstance:
        """Apply a human decision to the current step and advance."""
        action = DecisionAction(action)
        instance = await self._repository.load_instance(instance_id)
        expected_version = instance.version

        if instance.is_terminal:
            raise InvalidStateException(
                f"Approval instance {instance.id} is already {instance.status.value}."
            )
        if step_order != instance.current_step_order:
            raise InvalidStateException(
                f"Step {step_order} is not the current step "
                f"(current step is {instance.current_step_order})."
            )
        self._check_history(instance)

        workflow = await self._repository.load_workflow(instance.workflow_id)
        step = workflow.step(step_order)
        record = instance.record(step_order)

        if actor_id not in record.resolved_approvers:
            raise UnauthorizedApproverException(
                f"User {actor_id} is not an eligible approver for step {step_order}."
            )

        now = self._clock.now()
        events: list[ApprovalEvent] = []

        if action is DecisionAction.delegate:
            self._delegate(instance, step, record, actor_id, delegate_to, now, comments, events)
            await self._activate_next(instance, workflow, step_order, now, events)
        elif action is DecisionAction.reject:
            self._decide(record, StepDecision.rejected, actor_id, now, comments)
            if step.is_required:
                self._finish(instance, InstanceStatus.rejected, now, actor_id, events, comments)
            else:
                # Optional-step rejection never blocks; surface it to the requester
                logger.warning(
                    "Optional step %s of instance %s rejected by %s; continuing",
                    step_order, instance.id, actor_id,
                )
                events.append(
                    self._event(
                        instance,
                        ApprovalEventType.step_soft_rejected,
                        step=step,
                        actor_id=actor_id,
                        recipients=self._requester(instance),
                        comments=comments,
                    )
                )
                await self._activate_next(instance, workflow, step_order, now, events)
        else:
            self._decide(record, StepDecision.approved, actor_id, now, comments)
            events.append(
                self._event(
                    instance,
                    ApprovalEventType.step_approved,
                    step=step,
                    actor_id=actor_id,
                    recipients=self._requester(instance),
                    comments=comments,
                )
            )
            await self._activate_next(instance, workflow, step_order, now, events)

        await self._repository.save_instance(instance, expected_version)
        logger.info(
            "Instance %s step %s: %s by %s → status=%s current_step=%s",
            instance.id, step_order, action.value, actor_id,
            instance.status.value, instance.current_step_order,
        )
        await self._emit(events)
        return instance

    async def cancel(
        self,
        instance_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        reason: str,
    ) -> ApprovalInstance:
        instance = await self._repository.load_instance(instance_id)
        expected_version = instance.version
        if instance.is_terminal:
            raise InvalidStateException(
                f"Only in-progress instances can be cancelled; "
                f"instance {instance.id} is {instance.status.value}."
            )

        record = instance.current_record
        notify = set(self._requester(instance))
        if record is not None:
            notify |= record.resolved_approvers

        now = self._clock.now()
        instance.status = InstanceStatus.cancelled
        instance.completed_at = now
        instance.cancel_reason = reason
        events = [
            self._event(
                instance,
                ApprovalEventType.instance_cancelled,
                actor_id=actor_id,
                recipients=frozenset(notify - {actor_id}),
                comments=reason,
            )
        ]

        await self._repository.save_instance(instance, expected_version)
        logger.info("Instance %s cancelled by %s: %s", instance.id, actor_id, reason)
        await self._emit(events)
        return instance

    async def sweep_auto_approvals(
        self, now: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        """Auto-approve current steps whose time budget has elapsed.

        Meant to be called periodically by an external scheduler. Each
        instance is handled independently: a conflict, a resolution fault or
        an inconsistent stored trail on one is logged and the sweep moves on.
        Returns the ids of the instances that were advanced.
        """
        now = now or self._clock.now()
        workflows: dict[uuid.UUID, WorkflowDefinition] = {}
        advanced: list[uuid.UUID] = []

        for instance in await self._repository.list_in_progress():
            workflow = workflows.get(instance.workflow_id)
            if workflow is None:
                workflow = await self._repository.load_workflow(instance.workflow_id)
                workflows[workflow.id] = workflow
            try:
                if await self._auto_approve(instance, workflow, now):
                    advanced.append(instance.id)
            except (
                VersionConflictException,
                ApproverResolutionException,
                InvalidStateException,
            ) as exc:
                logger.warning(
                    "Auto-approval sweep skipped instance %s: %s", instance.id, exc.detail,
                )

        if advanced:
            logger.info("Auto-approval sweep advanced %d instance(s)", len(advanced))
        return advanced

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    async def _auto_approve(
        self,
        instance: ApprovalInstance,
        workflow: WorkflowDefinition,
        now: datetime,
    ) -> bool:
        record = instance.current_record
        if record is None or record.activated_at is None:
            return False
        step = workflow.step(record.step_order)
        if not step.has_auto_approve:
            return False
        if now - record.activated_at < timedelta(hours=step.auto_approve_after_hours):
            return False
        self._check_history(instance)

        expected_version = instance.version
        events: list[ApprovalEvent] = []
        self._decide(
            record,
            StepDecision.auto_approved,
            SYSTEM_ACTOR_ID,
            now,
            f"Auto-approved after {step.auto_approve_after_hours} hour(s) without a decision.",
        )
        events.append(
            self._event(
                instance,
                ApprovalEventType.step_auto_approved,
                step=step,
                actor_id=SYSTEM_ACTOR_ID,
                recipients=self._requester(instance) | record.resolved_approvers,
            )
        )
        await self._activate_next(instance, workflow, step.step_order, now, events)
        await self._repository.save_instance(instance, expected_version)
        logger.info(
            "Instance %s step %s auto-approved → status=%s",
            instance.id, step.step_order, instance.status.value,
        )
        await self._emit(events)
        return True

    def _delegate(
        self,
        instance: ApprovalInstance,
        step: StepDefinition,
        record: StepRecord,
        actor_id: uuid.UUID,
        delegate_to: Optional[uuid.UUID],
        now: datetime,
        comments: Optional[str],
        events: list[ApprovalEvent],
    ) -> None:
        if not step.can_delegate:
            raise UnauthorizedApproverException(
                f"Step {step.step_order} does not allow delegation."
            )
        if delegate_to is None or delegate_to == actor_id:
            raise ValidationException(
                {"delegate_to": ["A delegate other than the acting approver is required."]}
            )
        # Eligibility widens for this step of this instance only
        record.resolved_approvers = record.resolved_approvers | {delegate_to}
        self._decide(record, StepDecision.delegated, delegate_to, now, comments)
        record.delegated_by = actor_id
        events.append(
            self._event(
                instance,
                ApprovalEventType.step_delegated,
                step=step,
                actor_id=actor_id,
                recipients=frozenset({delegate_to}) | self._requester(instance),
                comments=comments,
                metadata={"delegate_to": str(delegate_to)},
            )
        )

    async def _activate_next(
        self,
        instance: ApprovalInstance,
        workflow: WorkflowDefinition,
        after_order: Optional[int],
        now: datetime,
        events: list[ApprovalEvent],
    ) -> None:
        """Make the first step after *after_order* current.

        Skippable steps with nobody to approve them are marked skipped and
        passed over. When no step remains the instance is approved.
        """
        for step in workflow.steps_after(after_order):
            record = instance.record(step.step_order)
            instance.current_step_order = step.step_order
            try:
                approvers = await self._resolver.resolve(step, instance.subject)
            except ApproverResolutionException:
                if not step.can_skip:
                    raise
                record.activated_at = now
                self._decide(record, StepDecision.skipped, None, now, "No eligible approver.")
                events.append(
                    self._event(instance, ApprovalEventType.step_skipped, step=step)
                )
                logger.info(
                    "Instance %s step %s skipped: no eligible approver",
                    instance.id, step.step_order,
                )
                continue

            record.resolved_approvers = approvers
            record.activated_at = now
            events.append(
                self._event(
                    instance,
                    ApprovalEventType.step_activated,
                    step=step,
                    recipients=approvers,
                )
            )
            return

        self._finish(instance, InstanceStatus.approved, now, None, events)

    def _finish(
        self,
        instance: ApprovalInstance,
        status: InstanceStatus,
        now: datetime,
        actor_id: Optional[uuid.UUID],
        events: list[ApprovalEvent],
        comments: Optional[str] = None,
    ) -> None:
        instance.status = status
        instance.completed_at = now
        event_type = {
            InstanceStatus.approved: ApprovalEventType.instance_approved,
            InstanceStatus.rejected: ApprovalEventType.instance_rejected,
        }[status]
        events.append(
            self._event(
                instance,
                event_type,
                actor_id=actor_id,
                recipients=self._requester(instance),
                comments=comments,
            )
        )

    @staticmethod
    def _check_history(instance: ApprovalInstance) -> None:
        """Every step before the current one must already be settled."""
        unsettled = instance.unsettled_before(instance.current_step_order)
        if unsettled:
            logger.error(
                "Instance %s is at step %s but steps %s are still undecided",
                instance.id, instance.current_step_order, unsettled,
            )
            raise InvalidStateException(
                f"Approval instance {instance.id} has undecided steps {unsettled} "
                f"before its current step {instance.current_step_order}."
            )

    @staticmethod
    def _decide(
        record: StepRecord,
        decision: StepDecision,
        decided_by: Optional[uuid.UUID],
        now: datetime,
        comments: Optional[str],
    ) -> None:
        record.decision = decision
        record.decided_by = decided_by
        record.decided_at = now
        record.comments = comments

    @staticmethod
    def _requester(instance: ApprovalInstance) -> frozenset[uuid.UUID]:
        requester = instance.subject.requester_id
        return frozenset({requester}) if requester is not None else frozenset()

    @staticmethod
    def _event(
        instance: ApprovalInstance,
        event_type: ApprovalEventType,
        *,
        step: Optional[StepDefinition] = None,
        actor_id: Optional[uuid.UUID] = None,
        recipients: frozenset[uuid.UUID] = frozenset(),
        comments: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ApprovalEvent:
        payload = dict(metadata or {})
        if step is not None:
            payload.setdefault("step_name", step.name)
            if step.settings:
                payload.setdefault("step_settings", step.settings)
        return ApprovalEvent(
            type=event_type,
            instance_id=instance.id,
            entity_type=instance.subject.entity_type,
            entity_id=instance.subject.entity_id,
            step_order=step.step_order if step is not None else None,
            actor_id=actor_id,
            recipients=frozenset(recipients),
            comments=comments,
            metadata=payload,
        )

    async def _emit(self, events: list[ApprovalEvent]) -> None:
        for event in events:
            try:
                await self._notifier.notify(event)
            except Exception:
                logger.exception(
                    "Notification sink failed for %s on instance %s",
                    event.type.value, event.instance_id,
                )
