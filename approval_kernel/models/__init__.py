"""ORM models for approval workflow persistence."""

from approval_kernel.models.request import ApprovalRequestModel, ApprovalRequestStepModel
from approval_kernel.models.template import WorkflowStepModel, WorkflowTemplateModel

__all__ = [
    "ApprovalRequestModel",
    "ApprovalRequestStepModel",
    "WorkflowStepModel",
    "WorkflowTemplateModel",
]
