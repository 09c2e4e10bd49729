"""Notification service — create, list and mark-read operations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hrflow.common.constants import NotificationType
from hrflow.common.exceptions import ForbiddenException, NotFoundException
from hrflow.common.pagination import PaginationParams, build_meta
from hrflow.notifications.models import Notification
from hrflow.notifications.schemas import (
    NotificationListMeta,
    NotificationListResponse,
    NotificationResponse,
)


class NotificationService:
    """Async notification operations."""

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        action_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Notification:
        """Create a new notification and flush to DB."""
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            entity_type=entity_type,
            entity_id=entity_id,
            extra=extra,
        )
        db.add(notification)
        await db.flush()
        return notification

    @staticmethod
    async def broadcast(
        db: AsyncSession,
        recipients: Iterable[uuid.UUID],
        **fields: Any,
    ) -> list[Notification]:
        """Create the same notification for every recipient (one flush)."""
        notifications = [
            Notification(recipient_id=recipient_id, **fields)
            for recipient_id in sorted(set(recipients))
        ]
        db.add_all(notifications)
        await db.flush()
        return notifications

    @staticmethod
    async def get_notifications(
        db: AsyncSession,
        employee_id: uuid.UUID,
        pagination: PaginationParams,
        *,
        is_read: Optional[bool] = None,
        instance_id: Optional[uuid.UUID] = None,
    ) -> NotificationListResponse:
        """Return paginated notifications for an employee, newest first."""
        query = (
            select(Notification)
            .where(Notification.recipient_id == employee_id)
            .order_by(Notification.created_at.desc())
        )
        if is_read is not None:
            query = query.where(Notification.is_read == is_read)
        if instance_id is not None:
            query = query.where(
                Notification.entity_type == "approval_instance",
                Notification.entity_id == instance_id,
            )

        count_q = query.with_only_columns(func.count()).order_by(None)
        total: int = (await db.execute(count_q)).scalar_one()

        rows = (
            await db.execute(
                query.offset(pagination.offset).limit(pagination.page_size)
            )
        ).scalars().all()

        unread = await NotificationService.get_unread_count(db, employee_id)
        meta = build_meta(pagination, total)

        return NotificationListResponse(
            data=[NotificationResponse.model_validate(n) for n in rows],
            meta=NotificationListMeta(**meta.model_dump(), unread=unread),
        )

    @staticmethod
    async def mark_read(
        db: AsyncSession,
        notification_id: uuid.UUID,
        employee_id: uuid.UUID,
    ) -> Notification:
        """Mark a single notification as read. Verifies ownership."""
        result = await db.execute(
            select(Notification).where(Notification.id == notification_id)
        )
        notification = result.scalars().first()

        if notification is None:
            raise NotFoundException("Notification", notification_id)

        if notification.recipient_id != employee_id:
            raise ForbiddenException("You can only mark your own notifications as read.")

        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.flush()
        return notification

    @staticmethod
    async def get_unread_count(
        db: AsyncSession,
        employee_id: uuid.UUID,
    ) -> int:
        """Return the number of unread notifications for an employee."""
        result = await db.execute(
            select(func.count())
            .select_from(Notification)
            .where(
                Notification.recipient_id == employee_id,
                Notification.is_read.is_(False),
            )
        )
        return result.scalar_one()
