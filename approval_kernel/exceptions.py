"""
Typed exception hierarchy for the approval workflow engine.

Every error carries a class-level ``code`` (machine-readable, API-safe) and
its context as attributes, so callers catch by type and report by code
instead of parsing messages.

    ApprovalWorkflowError (base)
    |
    +-- ConfigurationError          StartWorkflow fails before any state exists
    |   +-- NoActiveTemplateError
    |   +-- EmptyTemplateError
    |   +-- HandlerNotRegisteredError
    |   +-- HandlerAlreadyRegisteredError
    |   +-- ApproverResolutionError
    |   +-- InvalidConditionError
    |   +-- InvalidStepDefinitionError
    |
    +-- TemplateError               administrative template/step operations
    |   +-- TemplateNotFoundError
    |   +-- StepNotFoundError
    |   +-- StepOrderMismatchError
    |   +-- DefaultTemplateDeletionError
    |
    +-- StateError                  operation refused, state unchanged
    |   +-- RequestNotFoundError
    |   +-- RequestNotPendingError
    |   +-- DuplicatePendingRequestError
    |   +-- UnauthorizedApproverError
    |   +-- NotRequestorError
    |   +-- InvalidTransitionError
    |   +-- StepNotDueError
    |   +-- RejectionReasonRequiredError
    |
    +-- ConflictError               lost a compare-and-set race
    |   +-- StepAlreadyActionedError
    |
    +-- DownstreamError             terminal transition committed, handler failed
    |   +-- HandlerInvocationError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

Handling patterns:

    try:
        service.approve(request_id, approver_id, "ok")
    except StepAlreadyActionedError:
        refresh_and_show(service.get_request_status(request_id))
    except HandlerInvocationError as e:
        # e.request is the committed, authoritative workflow state
        alert_and_reconcile(e.activity_type, e.activity_id)
"""

from __future__ import annotations

from typing import Any


class ApprovalWorkflowError(Exception):
    """
    Base exception for all approval workflow errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_WORKFLOW_ERROR"


# Configuration errors


class ConfigurationError(ApprovalWorkflowError):
    """Base exception for workflow configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class NoActiveTemplateError(ConfigurationError):
    """No active default template exists for (company, activity type)."""

    code: str = "NO_ACTIVE_TEMPLATE"

    def __init__(self, company_id: str, activity_type: str):
        self.company_id = company_id
        self.activity_type = activity_type
        super().__init__(
            f"No active approval workflow template for activity type "
            f"'{activity_type}' in company {company_id}"
        )


class EmptyTemplateError(ConfigurationError):
    """Template has no steps configured."""

    code: str = "EMPTY_TEMPLATE"

    def __init__(self, template_id: str, template_name: str):
        self.template_id = template_id
        self.template_name = template_name
        super().__init__(
            f"Approval workflow template '{template_name}' has no steps configured"
        )


class HandlerNotRegisteredError(ConfigurationError):
    """No completion handler is registered for the activity type."""

    code: str = "HANDLER_NOT_REGISTERED"

    def __init__(self, activity_type: str):
        self.activity_type = activity_type
        super().__init__(
            f"No approval handler registered for activity type '{activity_type}'"
        )


class HandlerAlreadyRegisteredError(ConfigurationError):
    """A handler is already registered for the activity type."""

    code: str = "HANDLER_ALREADY_REGISTERED"

    def __init__(self, activity_type: str):
        self.activity_type = activity_type
        super().__init__(
            f"Approval handler for activity type '{activity_type}' is already registered"
        )


class ApproverResolutionError(ConfigurationError):
    """A non-skippable step has no resolvable approver."""

    code: str = "APPROVER_UNRESOLVED"

    def __init__(self, step_name: str, approver_kind: str, reason: str):
        self.step_name = step_name
        self.approver_kind = approver_kind
        self.reason = reason
        super().__init__(
            f"Cannot resolve approver for step '{step_name}' "
            f"({approver_kind}): {reason}"
        )


class InvalidConditionError(ConfigurationError):
    """Step condition expression is outside the allowed grammar."""

    code: str = "INVALID_CONDITION"

    def __init__(self, expression: str, errors: list[str]):
        self.expression = expression
        self.errors = errors
        super().__init__(
            f"Invalid condition expression {expression!r}: {'; '.join(errors)}"
        )


class InvalidStepDefinitionError(ConfigurationError):
    """Step definition fields are inconsistent or incomplete."""

    code: str = "INVALID_STEP_DEFINITION"

    def __init__(self, step_name: str, reason: str):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Invalid step definition '{step_name}': {reason}")


# Template administration errors


class TemplateError(ApprovalWorkflowError):
    """Base exception for template administration errors."""

    code: str = "TEMPLATE_ERROR"


class TemplateNotFoundError(TemplateError):
    """Template with given ID was not found."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Approval workflow template not found: {template_id}")


class StepNotFoundError(TemplateError):
    """Step definition with given ID was not found."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Approval workflow step not found: {step_id}")


class StepOrderMismatchError(TemplateError):
    """Reorder list does not match the template's current steps exactly."""

    code: str = "STEP_ORDER_MISMATCH"

    def __init__(
        self,
        template_id: str,
        missing: list[str],
        unexpected: list[str],
        duplicated: list[str],
    ):
        self.template_id = template_id
        self.missing = missing
        self.unexpected = unexpected
        self.duplicated = duplicated
        super().__init__(
            f"Step order for template {template_id} does not match its steps: "
            f"missing={missing}, unexpected={unexpected}, duplicated={duplicated}"
        )


class DefaultTemplateDeletionError(TemplateError):
    """The active default template cannot be deleted without a replacement."""

    code: str = "DEFAULT_TEMPLATE_DELETION"

    def __init__(self, template_id: str, activity_type: str):
        self.template_id = template_id
        self.activity_type = activity_type
        super().__init__(
            f"Template {template_id} is the active default for '{activity_type}'; "
            "set another default before deleting it"
        )


# State errors


class StateError(ApprovalWorkflowError):
    """Base exception for operations refused by the request state machine."""

    code: str = "STATE_ERROR"


class RequestNotFoundError(StateError):
    """Approval request with given ID was not found."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class RequestNotPendingError(StateError):
    """Approval request has already reached a terminal status."""

    code: str = "REQUEST_NOT_PENDING"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} is already {status}")


class DuplicatePendingRequestError(StateError):
    """A pending request already exists for the activity."""

    code: str = "DUPLICATE_PENDING_REQUEST"

    def __init__(self, activity_type: str, activity_id: str, existing_request_id: str | None = None):
        self.activity_type = activity_type
        self.activity_id = activity_id
        self.existing_request_id = existing_request_id
        super().__init__(
            f"A pending approval request already exists for "
            f"{activity_type} {activity_id}"
        )


class UnauthorizedApproverError(StateError):
    """Actor is not assigned to the current step."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, request_id: str, step_order: int, actor_id: str):
        self.request_id = request_id
        self.step_order = step_order
        self.actor_id = actor_id
        super().__init__(
            f"Actor {actor_id} is not authorized to act on step {step_order} "
            f"of request {request_id}"
        )


class NotRequestorError(StateError):
    """Only the original requestor may cancel a request."""

    code: str = "NOT_REQUESTOR"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(
            f"Only the requestor can cancel request {request_id}; "
            f"{actor_id} is not the requestor"
        )


class InvalidTransitionError(StateError):
    """Status change is not an edge of the state machine."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity_type} transition: {from_status} -> {to_status}"
        )


class StepNotDueError(StateError):
    """Auto-approval was requested for a step whose deadline has not passed."""

    code: str = "STEP_NOT_DUE"

    def __init__(self, request_id: str, step_id: str, deadline: str | None):
        self.request_id = request_id
        self.step_id = step_id
        self.deadline = deadline
        if deadline is None:
            detail = "has no auto-approval deadline"
        else:
            detail = f"is not due until {deadline}"
        super().__init__(f"Step {step_id} of request {request_id} {detail}")


class RejectionReasonRequiredError(StateError):
    """Reject was called without a reason."""

    code: str = "REJECTION_REASON_REQUIRED"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Rejection reason is required for request {request_id}")


# Conflict errors


class ConflictError(ApprovalWorkflowError):
    """Base exception for lost compare-and-set races."""

    code: str = "CONFLICT"


class StepAlreadyActionedError(ConflictError):
    """The step was actioned by a concurrent caller first."""

    code: str = "STEP_ALREADY_ACTIONED"

    def __init__(self, request_id: str, step_id: str):
        self.request_id = request_id
        self.step_id = step_id
        super().__init__(
            f"Step {step_id} of request {request_id} was already actioned; "
            "refresh and retry"
        )


# Downstream errors


class DownstreamError(ApprovalWorkflowError):
    """Base exception for failures after a committed transition."""

    code: str = "DOWNSTREAM_ERROR"


class HandlerInvocationError(DownstreamError):
    """
    The domain handler failed after a terminal transition was committed.

    The workflow state in ``request`` is authoritative and was not reverted.
    The owning domain module must reconcile.
    """

    code: str = "HANDLER_INVOCATION_FAILED"

    def __init__(
        self,
        activity_type: str,
        activity_id: str,
        callback: str,
        reason: str,
        request: Any = None,
    ):
        self.activity_type = activity_type
        self.activity_id = activity_id
        self.callback = callback
        self.reason = reason
        self.request = request
        super().__init__(
            f"Handler {callback} for {activity_type} {activity_id} failed: {reason}"
        )


# Immutability errors


class ImmutabilityError(ApprovalWorkflowError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
