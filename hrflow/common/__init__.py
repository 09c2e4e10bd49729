"""Common module — shared utilities for HR Flow."""

from hrflow.common.audit import AuditTrail, create_audit_entry
from hrflow.common.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PERMISSIONS,
    SYSTEM_ACTOR_ID,
    ApprovalEventType,
    ApproverType,
    DecisionAction,
    EmploymentStatus,
    EntityType,
    InstanceStatus,
    NotificationType,
    StepDecision,
    UserRole,
)
from hrflow.common.exceptions import (
    AppException,
    ApproverResolutionException,
    ConflictError,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    UnauthorizedApproverException,
    ValidationException,
    VersionConflictException,
    WorkflowNotFoundException,
    register_exception_handlers,
)
from hrflow.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "ApprovalEventType",
    "ApproverType",
    "DecisionAction",
    "EmploymentStatus",
    "EntityType",
    "InstanceStatus",
    "NotificationType",
    "StepDecision",
    "UserRole",
    "PERMISSIONS",
    "SYSTEM_ACTOR_ID",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "ApproverResolutionException",
    "ConflictError",
    "ForbiddenException",
    "InvalidStateException",
    "NotFoundException",
    "UnauthorizedApproverException",
    "ValidationException",
    "VersionConflictException",
    "WorkflowNotFoundException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
