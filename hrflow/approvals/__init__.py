"""Approvals module — workflow definitions, approver resolution and the instance engine."""

from hrflow.approvals.engine import ApprovalEngine
from hrflow.approvals.models import (
    ApprovalInstance,
    ApprovalStep,
    ApprovalStepRecord,
    ApprovalWorkflow,
)

__all__ = [
    "ApprovalEngine",
    "ApprovalWorkflow",
    "ApprovalStep",
    "ApprovalInstance",
    "ApprovalStepRecord",
]
