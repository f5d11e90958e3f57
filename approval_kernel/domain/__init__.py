"""
approval_kernel.domain -- Pure types and value objects for approval workflows.

ZERO I/O.  All types are frozen dataclasses or enums.
"""

from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.org import InMemoryOrgDirectory, OrgDirectory
from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ApprovalRequest,
    ApprovalRequestStep,
    ApproverKind,
    ApproverSpec,
    ManagerApprover,
    PendingApproval,
    PersonApprover,
    RequestStatus,
    ResolvedAssignee,
    RoleApprover,
    StepDefinition,
    StepStatus,
    WorkflowTemplate,
)

__all__ = [
    "ApprovableActivity",
    "ApprovalRequest",
    "ApprovalRequestStep",
    "ApproverKind",
    "ApproverSpec",
    "Clock",
    "DeterministicClock",
    "InMemoryOrgDirectory",
    "ManagerApprover",
    "OrgDirectory",
    "PendingApproval",
    "PersonApprover",
    "RequestStatus",
    "ResolvedAssignee",
    "RoleApprover",
    "StepDefinition",
    "StepStatus",
    "SystemClock",
    "WorkflowTemplate",
]
