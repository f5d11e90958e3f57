"""Approval workflow services: template store, resolver, registry, engine, sweeper."""

from approval_kernel.services.escalation_sweeper import EscalationSweeper
from approval_kernel.services.handler_registry import (
    ActivityApprovalHandler,
    HandlerRegistry,
    HandlerResult,
)
from approval_kernel.services.step_resolver import StepResolver
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.workflow_service import (
    SYSTEM_ACTOR_ID,
    ApprovalWorkflowService,
)

__all__ = [
    "SYSTEM_ACTOR_ID",
    "ActivityApprovalHandler",
    "ApprovalWorkflowService",
    "EscalationSweeper",
    "HandlerRegistry",
    "HandlerResult",
    "StepResolver",
    "TemplateService",
]
