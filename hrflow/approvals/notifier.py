"""NotificationSink that writes in-app notifications and audit-trail rows.

Both writes share the request's session but each runs in its own
savepoint, so a failed notification never undoes the approval transition
that produced it (nor the audit entry written just before it).
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from hrflow.approvals.domain import ApprovalEvent
from hrflow.common.audit import create_audit_entry
from hrflow.common.constants import ApprovalEventType, NotificationType
from hrflow.database import best_effort
from hrflow.notifications.service import NotificationService

logger = logging.getLogger(__name__)


# (notification type, title, message template); ``None`` means audit only.
_TEMPLATES: dict[ApprovalEventType, tuple[NotificationType, str, str] | None] = {
    ApprovalEventType.instance_created: (
        NotificationType.info,
        "Approval Request Submitted",
        "Your {entity} request has been submitted for approval.",
    ),
    ApprovalEventType.step_activated: (
        NotificationType.action_required,
        "Approval Required",
        "A {entity} request is waiting for your decision ({step}).",
    ),
    ApprovalEventType.step_approved: (
        NotificationType.approval,
        "Approval Step Completed",
        "Your {entity} request was approved at {step}.",
    ),
    ApprovalEventType.step_delegated: (
        NotificationType.action_required,
        "Approval Delegated",
        "A {entity} approval ({step}) has been delegated.",
    ),
    ApprovalEventType.step_skipped: None,
    ApprovalEventType.step_auto_approved: (
        NotificationType.reminder,
        "Step Auto-Approved",
        "{step} of a {entity} request was auto-approved after its time limit.",
    ),
    ApprovalEventType.step_soft_rejected: (
        NotificationType.alert,
        "Optional Step Rejected",
        "{step} of your {entity} request was rejected; the request continues.",
    ),
    ApprovalEventType.instance_approved: (
        NotificationType.approval,
        "Request Approved",
        "Your {entity} request has been fully approved.",
    ),
    ApprovalEventType.instance_rejected: (
        NotificationType.alert,
        "Request Rejected",
        "Your {entity} request has been rejected.",
    ),
    ApprovalEventType.instance_cancelled: (
        NotificationType.info,
        "Request Cancelled",
        "A {entity} approval request has been cancelled.",
    ),
}


class SqlNotificationSink:
    """Persists one notification per recipient plus an audit entry per event."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def notify(self, event: ApprovalEvent) -> None:
        label = f"{event.type.value} side effects for instance {event.instance_id}"

        async with best_effort(self._db, f"audit entry for {label}"):
            await create_audit_entry(
                self._db,
                action=event.type.value,
                entity_type="approval_instance",
                entity_id=event.instance_id,
                actor_id=event.actor_id,
                new_values={
                    "entity_type": event.entity_type.value,
                    "entity_id": str(event.entity_id),
                    "step_order": event.step_order,
                    "comments": event.comments,
                },
            )

        template = _TEMPLATES.get(event.type)
        if template is None or not event.recipients:
            return

        notification_type, title, message = template
        step_name = event.metadata.get("step_name") or f"step {event.step_order}"
        message = message.format(entity=event.entity_type.value, step=step_name)
        if event.comments:
            message = f"{message} Comment: {event.comments}"

        async with best_effort(self._db, f"notifications for {label}"):
            await NotificationService.broadcast(
                self._db,
                event.recipients,
                type=notification_type,
                title=title,
                message=message,
                action_url=f"/approvals/instances/{event.instance_id}",
                entity_type="approval_instance",
                entity_id=event.instance_id,
                extra={"event": event.type.value, **event.metadata},
            )
            logger.debug(
                "Sent %s notification to %d recipient(s) for instance %s",
                event.type.value, len(event.recipients), event.instance_id,
            )
