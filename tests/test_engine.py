"""Approval engine test suite — creation, decisions, delegation, skipping,
auto-approval sweep, cancellation and optimistic concurrency.

Runs entirely against the in-memory collaborators in tests/fakes.py.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from hrflow.approvals.domain import ApprovalSubject, StepDefinition, WorkflowDefinition
from hrflow.approvals.engine import ApprovalEngine
from hrflow.common.constants import (
    SYSTEM_ACTOR_ID,
    ApproverType,
    DecisionAction,
    EntityType,
    InstanceStatus,
    StepDecision,
    UserRole,
)
from hrflow.common.exceptions import (
    ApproverResolutionException,
    ConflictError,
    InvalidStateException,
    NotFoundException,
    UnauthorizedApproverException,
    ValidationException,
    VersionConflictException,
    WorkflowNotFoundException,
)
from tests.fakes import FakeDirectory, FrozenClock, InMemoryRepository, RecordingSink

DEPT = uuid.uuid4()
REQUESTER = uuid.uuid4()
HEAD = uuid.uuid4()
HR_1 = uuid.uuid4()
HR_2 = uuid.uuid4()
OUTSIDER = uuid.uuid4()
DELEGATE = uuid.uuid4()


# ── Helpers ─────────────────────────────────────────────────────────


def head_step(**overrides) -> StepDefinition:
    return StepDefinition(
        **{
            "step_order": 1,
            "name": "Department head",
            "approver_type": ApproverType.department_head,
            **overrides,
        }
    )


def hr_step(**overrides) -> StepDefinition:
    return StepDefinition(
        **{
            "step_order": 2,
            "name": "HR review",
            "approver_type": ApproverType.role_based,
            "role": UserRole.hr_manager,
            "auto_approve": True,
            "auto_approve_after_hours": 72,
            **overrides,
        }
    )


def workflow(*steps: StepDefinition, name: str = "Standard Leave", **scope) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=uuid.uuid4(),
        name=name,
        entity_type=EntityType.leave,
        steps=tuple(steps),
        **scope,
    )


def leave_subject(**overrides) -> ApprovalSubject:
    return ApprovalSubject(
        **{
            "entity_type": EntityType.leave,
            "entity_id": uuid.uuid4(),
            "requester_id": REQUESTER,
            "department_id": DEPT,
            **overrides,
        }
    )


def default_directory() -> FakeDirectory:
    return FakeDirectory(
        heads={DEPT: HEAD},
        roles={UserRole.hr_manager: {HR_1, HR_2}},
    )


class Harness:
    def __init__(self, *workflows: WorkflowDefinition, directory=None, sink=None) -> None:
        self.repository = InMemoryRepository(workflows)
        self.directory = directory or default_directory()
        self.sink = sink or RecordingSink()
        self.clock = FrozenClock()
        self.engine = ApprovalEngine(self.repository, self.directory, self.sink, self.clock)

    def stored(self, instance_id):
        return self.repository.instances[instance_id]


@pytest.fixture
def standard():
    return Harness(workflow(head_step(), hr_step()))


# ═════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════


class TestCreateInstance:

    async def test_first_step_is_activated(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())

        assert instance.status is InstanceStatus.in_progress
        assert instance.current_step_order == 1
        assert [r.step_order for r in instance.records] == [1, 2]
        first, second = instance.records
        assert first.resolved_approvers == frozenset({HEAD})
        assert first.activated_at == standard.clock.now()
        assert second.decision is StepDecision.pending
        assert second.resolved_approvers == frozenset()
        assert second.activated_at is None
        assert standard.stored(instance.id).version == 0

    async def test_emits_created_then_activated(self, standard: Harness):
        await standard.engine.create_instance(leave_subject())
        assert standard.sink.types() == ["instance_created", "step_activated"]
        activated = standard.sink.events[1]
        assert activated.recipients == frozenset({HEAD})
        assert activated.step_order == 1
        assert activated.metadata["step_name"] == "Department head"

    async def test_no_matching_workflow(self):
        harness = Harness()
        with pytest.raises(WorkflowNotFoundException):
            await harness.engine.create_instance(leave_subject())
        assert harness.repository.instances == {}

    async def test_unresolvable_required_first_step_persists_nothing(self):
        harness = Harness(workflow(head_step(), hr_step()), directory=FakeDirectory())
        with pytest.raises(ApproverResolutionException):
            await harness.engine.create_instance(leave_subject())
        assert harness.repository.instances == {}
        assert harness.sink.events == []

    async def test_one_instance_per_entity(self, standard: Harness):
        subject = leave_subject()
        await standard.engine.create_instance(subject)
        with pytest.raises(ConflictError):
            await standard.engine.create_instance(subject)

    async def test_all_steps_skipped_completes_approved(self):
        harness = Harness(
            workflow(
                head_step(can_skip=True),
                hr_step(role=UserRole.finance_manager, can_skip=True),
            ),
            directory=FakeDirectory(),
        )
        instance = await harness.engine.create_instance(leave_subject())

        assert instance.status is InstanceStatus.approved
        assert instance.completed_at == harness.clock.now()
        assert [r.decision for r in instance.records] == [StepDecision.skipped] * 2
        assert harness.sink.types()[-1] == "instance_approved"

    async def test_step_settings_forwarded_as_metadata(self):
        harness = Harness(workflow(head_step(settings={"reminder": "daily"})))
        await harness.engine.create_instance(leave_subject())
        assert harness.sink.events[1].metadata["step_settings"] == {"reminder": "daily"}


# ═════════════════════════════════════════════════════════════════════
# Reference scenarios
# ═════════════════════════════════════════════════════════════════════


class TestReferenceScenarios:

    async def test_head_approves_then_hr_step_auto_approves(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())

        instance = await standard.engine.record_decision(
            instance.id, 1, HEAD, DecisionAction.approve, comments="Enjoy",
        )
        first, second = instance.records
        assert first.decision is StepDecision.approved
        assert first.decided_by == HEAD
        assert first.comments == "Enjoy"
        assert instance.current_step_order == 2
        assert second.resolved_approvers == frozenset({HR_1, HR_2})

        standard.clock.advance(hours=72)
        advanced = await standard.engine.sweep_auto_approvals()

        assert advanced == [instance.id]
        stored = standard.stored(instance.id)
        assert stored.status is InstanceStatus.approved
        assert stored.records[1].decision is StepDecision.auto_approved
        assert stored.records[1].decided_by == SYSTEM_ACTOR_ID
        assert stored.completed_at == standard.clock.now()

    async def test_head_rejects_and_hr_step_is_never_resolved(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())

        instance = await standard.engine.record_decision(
            instance.id, 1, HEAD, DecisionAction.reject, comments="Peak season",
        )

        assert instance.status is InstanceStatus.rejected
        assert instance.records[0].decision is StepDecision.rejected
        second = instance.records[1]
        assert second.decision is StepDecision.pending
        assert second.activated_at is None
        assert second.resolved_approvers == frozenset()
        assert not any(call[0] == "role" for call in standard.directory.calls)
        assert standard.sink.types()[-1] == "instance_rejected"
        assert standard.sink.events[-1].recipients == frozenset({REQUESTER})

    async def test_skippable_role_step_without_holders_is_skipped(self):
        approver = uuid.uuid4()
        harness = Harness(
            workflow(
                StepDefinition(
                    step_order=1,
                    name="Finance",
                    approver_type=ApproverType.role_based,
                    role=UserRole.finance_manager,
                    can_skip=True,
                ),
                StepDefinition(
                    step_order=2,
                    name="CFO",
                    approver_type=ApproverType.specific_user,
                    approver_id=approver,
                ),
            ),
        )
        instance = await harness.engine.create_instance(leave_subject())

        assert instance.records[0].decision is StepDecision.skipped
        assert instance.records[0].decided_by is None
        assert instance.current_step_order == 2
        assert instance.records[1].resolved_approvers == frozenset({approver})
        assert "step_skipped" in harness.sink.types()


# ═════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════


class TestRecordDecision:

    async def test_outsider_is_unauthorized(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        with pytest.raises(UnauthorizedApproverException) as exc_info:
            await standard.engine.record_decision(instance.id, 1, OUTSIDER, DecisionAction.approve)
        assert exc_info.value.status_code == 403
        assert standard.stored(instance.id).version == 0

    async def test_non_current_step_is_invalid_state(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        with pytest.raises(InvalidStateException):
            await standard.engine.record_decision(instance.id, 2, HR_1, DecisionAction.approve)

    async def test_terminal_instance_is_invalid_state(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.reject)
        with pytest.raises(InvalidStateException):
            await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)

    async def test_unknown_instance_is_not_found(self, standard: Harness):
        with pytest.raises(NotFoundException):
            await standard.engine.record_decision(uuid.uuid4(), 1, HEAD, DecisionAction.approve)

    async def test_last_approval_completes_instance(self):
        harness = Harness(workflow(head_step()))
        instance = await harness.engine.create_instance(leave_subject())
        instance = await harness.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)

        assert instance.status is InstanceStatus.approved
        assert instance.completed_at == harness.clock.now()
        assert harness.sink.types()[-2:] == ["step_approved", "instance_approved"]

    async def test_optional_step_rejection_continues(self):
        harness = Harness(workflow(head_step(is_required=False), hr_step()))
        instance = await harness.engine.create_instance(leave_subject())

        instance = await harness.engine.record_decision(
            instance.id, 1, HEAD, DecisionAction.reject, comments="Not my call",
        )

        assert instance.status is InstanceStatus.in_progress
        assert instance.records[0].decision is StepDecision.rejected
        assert instance.current_step_order == 2
        soft = [e for e in harness.sink.events if e.type.value == "step_soft_rejected"]
        assert len(soft) == 1
        assert soft[0].recipients == frozenset({REQUESTER})
        assert soft[0].comments == "Not my call"

    async def test_failed_advancement_leaves_state_untouched(self):
        harness = Harness(
            workflow(head_step(), hr_step(role=UserRole.finance_manager, auto_approve=False,
                                          auto_approve_after_hours=None)),
        )
        instance = await harness.engine.create_instance(leave_subject())

        with pytest.raises(ApproverResolutionException):
            await harness.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)

        stored = harness.stored(instance.id)
        assert stored.version == 0
        assert stored.current_step_order == 1
        assert stored.records[0].decision is StepDecision.pending

    async def test_current_step_order_never_decreases(self):
        steps = [
            StepDefinition(
                step_order=order,
                name=f"Step {order}",
                approver_type=ApproverType.specific_user,
                approver_id=HEAD,
            )
            for order in (10, 20, 30)
        ]
        harness = Harness(workflow(*steps))
        instance = await harness.engine.create_instance(leave_subject())
        seen = [instance.current_step_order]
        for order in (10, 20, 30):
            instance = await harness.engine.record_decision(
                instance.id, order, HEAD, DecisionAction.approve,
            )
            seen.append(instance.current_step_order)

        assert seen == sorted(seen)
        assert instance.status is InstanceStatus.approved

        frozen = copy.deepcopy(harness.stored(instance.id))
        with pytest.raises(InvalidStateException):
            await harness.engine.record_decision(instance.id, 30, HEAD, DecisionAction.approve)
        assert harness.stored(instance.id) == frozen

    async def test_undecided_earlier_step_blocks_decision(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        stored = standard.stored(instance.id)
        stored.current_step_order = 2
        stored.records[1].resolved_approvers = frozenset({HR_1})
        stored.records[1].activated_at = standard.clock.now()

        with pytest.raises(InvalidStateException, match=r"undecided steps \[1\]"):
            await standard.engine.record_decision(instance.id, 2, HR_1, DecisionAction.approve)
        assert standard.stored(instance.id).version == 0
        assert standard.stored(instance.id).records[1].decision is StepDecision.pending

    async def test_earlier_steps_settled_after_each_advance(self):
        harness = Harness(workflow(head_step(is_required=False), hr_step()))
        instance = await harness.engine.create_instance(leave_subject())
        instance = await harness.engine.record_decision(instance.id, 1, HEAD, DecisionAction.reject)

        assert instance.current_step_order == 2
        assert instance.records[0].is_terminal
        assert not instance.records[1].is_terminal
        assert instance.unsettled_before(2) == []


class TestDelegation:

    async def test_delegate_completes_step_and_advances(self):
        harness = Harness(workflow(head_step(can_delegate=True), hr_step()))
        instance = await harness.engine.create_instance(leave_subject())

        instance = await harness.engine.record_decision(
            instance.id, 1, HEAD, DecisionAction.delegate, delegate_to=DELEGATE,
        )

        record = instance.records[0]
        assert record.decision is StepDecision.delegated
        assert record.decided_by == DELEGATE
        assert record.delegated_by == HEAD
        assert DELEGATE in record.resolved_approvers
        assert instance.current_step_order == 2
        delegated = [e for e in harness.sink.events if e.type.value == "step_delegated"][0]
        assert DELEGATE in delegated.recipients
        assert delegated.metadata["delegate_to"] == str(DELEGATE)

    async def test_delegation_disallowed_on_step(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        with pytest.raises(UnauthorizedApproverException):
            await standard.engine.record_decision(
                instance.id, 1, HEAD, DecisionAction.delegate, delegate_to=DELEGATE,
            )
        assert standard.stored(instance.id).records[0].decision is StepDecision.pending

    async def test_delegate_to_self_rejected(self):
        harness = Harness(workflow(head_step(can_delegate=True)))
        instance = await harness.engine.create_instance(leave_subject())
        with pytest.raises(ValidationException):
            await harness.engine.record_decision(
                instance.id, 1, HEAD, DecisionAction.delegate, delegate_to=HEAD,
            )

    async def test_delegation_does_not_widen_later_steps(self):
        harness = Harness(workflow(head_step(can_delegate=True), hr_step()))
        instance = await harness.engine.create_instance(leave_subject())
        await harness.engine.record_decision(
            instance.id, 1, HEAD, DecisionAction.delegate, delegate_to=DELEGATE,
        )
        with pytest.raises(UnauthorizedApproverException):
            await harness.engine.record_decision(instance.id, 2, DELEGATE, DecisionAction.approve)


# ═════════════════════════════════════════════════════════════════════
# Auto-approval sweep
# ═════════════════════════════════════════════════════════════════════


class TestAutoApprovalSweep:

    async def test_not_due_at_47_hours_due_at_48(self):
        harness = Harness(workflow(head_step(auto_approve=True, auto_approve_after_hours=48)))
        instance = await harness.engine.create_instance(leave_subject())

        harness.clock.advance(hours=47)
        assert await harness.engine.sweep_auto_approvals() == []
        assert harness.stored(instance.id).status is InstanceStatus.in_progress

        harness.clock.advance(hours=1)
        assert await harness.engine.sweep_auto_approvals() == [instance.id]
        assert harness.stored(instance.id).status is InstanceStatus.approved

    async def test_explicit_now_overrides_clock(self):
        harness = Harness(workflow(head_step(auto_approve=True, auto_approve_after_hours=48)))
        instance = await harness.engine.create_instance(leave_subject())
        start = harness.clock.now()

        assert await harness.engine.sweep_auto_approvals(start + timedelta(hours=47)) == []
        assert await harness.engine.sweep_auto_approvals(start + timedelta(hours=48)) == [instance.id]

    async def test_step_without_auto_approve_is_never_swept(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        standard.clock.advance(days=365)
        assert await standard.engine.sweep_auto_approvals() == []
        assert standard.stored(instance.id).current_step_order == 1

    async def test_timer_starts_when_step_becomes_current(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        standard.clock.advance(hours=100)
        await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)

        standard.clock.advance(hours=71)
        assert await standard.engine.sweep_auto_approvals() == []
        standard.clock.advance(hours=1)
        assert await standard.engine.sweep_auto_approvals() == [instance.id]

    async def test_auto_approval_notifies_requester_and_approvers(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)
        standard.clock.advance(hours=72)
        await standard.engine.sweep_auto_approvals()

        auto = [e for e in standard.sink.events if e.type.value == "step_auto_approved"][0]
        assert auto.actor_id == SYSTEM_ACTOR_ID
        assert auto.recipients == frozenset({REQUESTER, HR_1, HR_2})

    async def test_sweep_continues_after_conflict(self):
        harness = Harness(workflow(head_step(auto_approve=True, auto_approve_after_hours=1)))
        first = await harness.engine.create_instance(leave_subject())
        harness.clock.advance(seconds=1)
        second = await harness.engine.create_instance(leave_subject())
        harness.clock.advance(hours=2)

        real_save = harness.repository.save_instance

        async def flaky_save(instance, expected_version):
            if instance.id == first.id:
                raise VersionConflictException("ApprovalInstance", instance.id, expected_version)
            await real_save(instance, expected_version)

        harness.repository.save_instance = flaky_save
        assert await harness.engine.sweep_auto_approvals() == [second.id]
        assert harness.stored(first.id).status is InstanceStatus.in_progress

    async def test_sweep_ignores_cancelled_instances(self):
        harness = Harness(workflow(head_step(auto_approve=True, auto_approve_after_hours=1)))
        instance = await harness.engine.create_instance(leave_subject())
        await harness.engine.cancel(instance.id, REQUESTER, "Plans changed")
        harness.clock.advance(hours=5)
        assert await harness.engine.sweep_auto_approvals() == []

    async def test_sweep_skips_instance_with_undecided_earlier_step(self):
        harness = Harness(workflow(head_step(), hr_step(auto_approve_after_hours=1)))
        broken = await harness.engine.create_instance(leave_subject())
        healthy = await harness.engine.create_instance(leave_subject())
        await harness.engine.record_decision(healthy.id, 1, HEAD, DecisionAction.approve)
        stored = harness.stored(broken.id)
        stored.current_step_order = 2
        stored.records[1].resolved_approvers = frozenset({HR_1})
        stored.records[1].activated_at = harness.clock.now()

        harness.clock.advance(hours=2)
        assert await harness.engine.sweep_auto_approvals() == [healthy.id]
        assert harness.stored(broken.id).records[1].decision is StepDecision.pending


# ═════════════════════════════════════════════════════════════════════
# Cancellation, queries, concurrency, notifier failures
# ═════════════════════════════════════════════════════════════════════


class TestCancel:

    async def test_cancel_in_progress(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        instance = await standard.engine.cancel(instance.id, REQUESTER, "Plans changed")

        assert instance.status is InstanceStatus.cancelled
        assert instance.cancel_reason == "Plans changed"
        assert instance.completed_at == standard.clock.now()
        cancelled = standard.sink.events[-1]
        assert cancelled.type.value == "instance_cancelled"
        assert cancelled.recipients == frozenset({HEAD})

    async def test_cancel_terminal_is_invalid_state(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        await standard.engine.cancel(instance.id, REQUESTER, "First")
        with pytest.raises(InvalidStateException):
            await standard.engine.cancel(instance.id, REQUESTER, "Second")


class TestPendingQueue:

    async def test_pending_follows_current_step(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        assert [i.id for i in await standard.engine.list_pending_for_approver(HEAD)] == [instance.id]
        assert await standard.engine.list_pending_for_approver(HR_1) == []

        await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)
        assert await standard.engine.list_pending_for_approver(HEAD) == []
        assert [i.id for i in await standard.engine.list_pending_for_approver(HR_1)] == [instance.id]


class TestConcurrency:

    async def test_stale_writer_gets_version_conflict(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())
        stale = await standard.repository.load_instance(instance.id)

        await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve)

        standard.repository.load_instance = AsyncMock(return_value=stale)
        with pytest.raises(VersionConflictException) as exc_info:
            await standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.reject)
        assert exc_info.value.status_code == 409
        assert standard.stored(instance.id).status is InstanceStatus.in_progress
        assert standard.stored(instance.id).version == 1

    async def test_concurrent_decisions_exactly_one_wins(self, standard: Harness):
        instance = await standard.engine.create_instance(leave_subject())

        results = await asyncio.gather(
            standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.approve),
            standard.engine.record_decision(instance.id, 1, HEAD, DecisionAction.reject),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], (VersionConflictException, InvalidStateException))
        assert standard.stored(instance.id).version == 1


class TestNotifierFailures:

    async def test_sink_errors_do_not_undo_transitions(self, caplog):
        harness = Harness(workflow(head_step(), hr_step()), sink=RecordingSink(fail=True))

        with caplog.at_level(logging.ERROR, logger="hrflow.approvals.engine"):
            instance = await harness.engine.create_instance(leave_subject())
            instance = await harness.engine.record_decision(
                instance.id, 1, HEAD, DecisionAction.approve,
            )

        assert instance.current_step_order == 2
        assert harness.stored(instance.id).version == 1
        assert "Notification sink failed" in caplog.text
