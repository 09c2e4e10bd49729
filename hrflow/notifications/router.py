"""Notification endpoints: the caller's inbox of approval events."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hrflow.auth.dependencies import require_permission
from hrflow.common.pagination import PaginationParams
from hrflow.core_hr.models import Employee
from hrflow.database import get_db
from hrflow.notifications.schemas import (
    NotificationListResponse,
    NotificationResponse,
)
from hrflow.notifications.service import NotificationService

router = APIRouter(prefix="", tags=["notifications"])

_read_own = require_permission("notification:read_own")


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    is_read: Optional[bool] = Query(default=None, description="Filter by read status"),
    instance_id: Optional[uuid.UUID] = Query(
        default=None, description="Only events about this approval instance",
    ),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(_read_own),
    db: AsyncSession = Depends(get_db),
):
    """Newest-first notifications addressed to the authenticated employee."""
    return await NotificationService.get_notifications(
        db,
        employee_id=employee.id,
        pagination=pagination,
        is_read=is_read,
        instance_id=instance_id,
    )


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: uuid.UUID,
    employee: Employee = Depends(_read_own),
    db: AsyncSession = Depends(get_db),
):
    notification = await NotificationService.mark_read(db, notification_id, employee.id)
    return NotificationResponse.model_validate(notification)
