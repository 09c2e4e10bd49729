"""Enums and constants for HR Flow — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum
import uuid


# ── Employee / Core HR ──────────────────────────────────────────────

class EmploymentStatus(str, enum.Enum):
    active = "active"
    notice_period = "notice_period"
    relieved = "relieved"
    absconding = "absconding"


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_manager = "hr_manager"
    finance_manager = "finance_manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# ── Approvals ───────────────────────────────────────────────────────

class EntityType(str, enum.Enum):
    leave = "leave"
    loan = "loan"
    expense = "expense"
    purchase = "purchase"
    custom = "custom"


class ApproverType(str, enum.Enum):
    specific_user = "specific_user"
    department_head = "department_head"
    position_based = "position_based"
    role_based = "role_based"


class InstanceStatus(str, enum.Enum):
    in_progress = "in_progress"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


class StepDecision(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    skipped = "skipped"
    delegated = "delegated"
    auto_approved = "auto_approved"


class DecisionAction(str, enum.Enum):
    approve = "approve"
    reject = "reject"
    delegate = "delegate"


class ApprovalEventType(str, enum.Enum):
    instance_created = "instance_created"
    step_activated = "step_activated"
    step_approved = "step_approved"
    step_delegated = "step_delegated"
    step_skipped = "step_skipped"
    step_auto_approved = "step_auto_approved"
    step_soft_rejected = "step_soft_rejected"
    instance_approved = "instance_approved"
    instance_rejected = "instance_rejected"
    instance_cancelled = "instance_cancelled"


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    reminder = "reminder"
    alert = "alert"


# ── Role-based permissions ──────────────────────────────────────────

PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.employee: [
        "approval:request",
        "approval:read_own",
        "notification:read_own",
    ],
    UserRole.manager: [
        "approval:request",
        "approval:read_own",
        "notification:read_own",
    ],
    UserRole.hr_manager: [
        "approval:request",
        "approval:read_own",
        "notification:read_own",
    ],
    UserRole.finance_manager: [
        "approval:request",
        "approval:read_own",
        "notification:read_own",
    ],
    UserRole.hr_admin: [
        "approval:request",
        "approval:read_own",
        "approval:read_all",
        "approval:manage",
        "approval:configure",
        "notification:read_own",
    ],
    UserRole.system_admin: [
        "approval:request",
        "approval:read_own",
        "approval:read_all",
        "approval:manage",
        "approval:configure",
        "approval:sweep",
        "notification:read_own",
    ],
}

# ── Misc constants ──────────────────────────────────────────────────

# Synthetic actor recorded on auto-approved steps.
SYSTEM_ACTOR_ID = uuid.UUID(int=0)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
