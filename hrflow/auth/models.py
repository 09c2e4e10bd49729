"""Auth ORM models: RoleAssignment."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hrflow.common.constants import UserRole
from hrflow.database import Base

if TYPE_CHECKING:
    from hrflow.core_hr.models import Employee


class RoleAssignment(Base):
    """An employee's (possibly revoked) membership of a role.

    Role-based approval steps resolve to every active employee holding an
    active assignment for the step's role.
    """

    __tablename__ = "role_assignments"
    __table_args__ = (
        sa.Index("ix_role_assignments_role_active", "role", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        sa.Enum(UserRole, name="user_role", create_type=False), nullable=False
    )
    assigned_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    assigned_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, server_default=sa.text("TRUE")
    )

    # Relationships
    employee: Mapped["Employee"] = relationship(
        back_populates="role_assignments", foreign_keys=[employee_id]
    )
    assigner: Mapped[Optional["Employee"]] = relationship(
        foreign_keys=[assigned_by]
    )
