"""SQLAlchemy-backed OrgDirectory over the core HR and auth tables."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hrflow.auth.models import RoleAssignment
from hrflow.common.constants import UserRole
from hrflow.core_hr.models import Department, Employee


class SqlOrgDirectory:
    """Answers "who holds this seat right now" for the approver resolver.

    Only active employees are ever returned; a department whose head has
    left is treated as having no head.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_department_head(self, department_id: uuid.UUID) -> Optional[uuid.UUID]:
        result = await self._db.execute(
            select(Employee.id)
            .join(Department, Department.head_employee_id == Employee.id)
            .where(
                Department.id == department_id,
                Department.is_active.is_(True),
                Employee.is_active.is_(True),
            )
        )
        return result.scalar()

    async def get_users_by_position(
        self,
        position_id: uuid.UUID,
        department_id: Optional[uuid.UUID] = None,
    ) -> set[uuid.UUID]:
        query = select(Employee.id).where(
            Employee.position_id == position_id,
            Employee.is_active.is_(True),
        )
        if department_id is not None:
            query = query.where(Employee.department_id == department_id)
        result = await self._db.execute(query)
        return set(result.scalars().all())

    async def get_users_by_role(self, role: UserRole) -> set[uuid.UUID]:
        result = await self._db.execute(
            select(RoleAssignment.employee_id)
            .join(Employee, Employee.id == RoleAssignment.employee_id)
            .where(
                RoleAssignment.role == UserRole(role),
                RoleAssignment.is_active.is_(True),
                Employee.is_active.is_(True),
            )
            .distinct()
        )
        return set(result.scalars().all())
