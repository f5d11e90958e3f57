"""
approval_kernel.services.step_resolver -- Approver resolution at start time.

Responsibility:
    Turns a step definition's abstract approver specification into a
    concrete assignee, and materializes each template step into the
    request-step snapshot (pending with an assignee, or skipped).

Architecture position:
    Kernel > Services.  Pure apart from the injected ``OrgDirectory``
    lookups; performs no persistence.

Invariants enforced:
    - The approver variant is branched on here and nowhere else; the
      request engine only ever sees ``ResolvedAssignee``.
    - Conditions are evaluated once, against the attribute bag captured at
      start, and never re-evaluated.
    - A role held by exactly one person resolves to that person; a role
      held by several resolves to the role itself (any holder may act).

Failure modes:
    - ApproverResolutionError when a non-skippable step has no approver.
"""

from __future__ import annotations

from approval_kernel.domain.conditions import evaluate_condition
from approval_kernel.domain.org import OrgDirectory
from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ManagerApprover,
    MaterializedStep,
    PersonApprover,
    ResolvedAssignee,
    RoleApprover,
    StepDefinition,
    StepStatus,
)
from approval_kernel.exceptions import ApproverResolutionError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.step_resolver")


class StepResolver:
    """Resolves approver specifications against an org directory."""

    def __init__(self, org_directory: OrgDirectory):
        self._org = org_directory

    def resolve(
        self,
        step: StepDefinition,
        activity: ApprovableActivity,
    ) -> ResolvedAssignee | None:
        """Concrete assignee for ``step``, or None if nobody qualifies."""
        approver = step.approver

        if isinstance(approver, PersonApprover):
            return ResolvedAssignee(person_id=approver.person_id)

        if isinstance(approver, RoleApprover):
            holders = self._org.get_role_holders(activity.company_id, approver.role)
            if not holders:
                return None
            if len(holders) == 1:
                return ResolvedAssignee(person_id=holders[0], role=approver.role)
            return ResolvedAssignee(role=approver.role)

        if isinstance(approver, ManagerApprover):
            manager_id = self._org.get_manager(activity.company_id, activity.requestor_id)
            if manager_id is None:
                return None
            return ResolvedAssignee(person_id=manager_id)

        raise TypeError(f"Unsupported approver specification: {approver!r}")

    def materialize(
        self,
        step: StepDefinition,
        activity: ApprovableActivity,
    ) -> MaterializedStep:
        """Snapshot one template step for a new request.

        Raises:
            ApproverResolutionError: no approver and the step is not skippable.
        """
        common = dict(
            step_order=step.step_order,
            name=step.name,
            approver=step.approver,
            is_required=step.is_required,
            can_skip=step.can_skip,
            auto_approve_after_days=step.auto_approve_after_days,
            condition=step.condition,
        )

        if not evaluate_condition(step.condition, activity.attributes):
            logger.debug(
                "approval_step_condition_not_met",
                extra={"step_name": step.name, "condition": step.condition},
            )
            return MaterializedStep(
                status=StepStatus.SKIPPED,
                skip_reason=f"Condition not met: {step.condition}",
                **common,
            )

        assignee = self.resolve(step, activity)
        if assignee is not None:
            return MaterializedStep(status=StepStatus.PENDING, assignee=assignee, **common)

        reason = _unresolved_reason(step)
        if step.skippable:
            logger.info(
                "approval_step_unresolved_skipped",
                extra={
                    "step_name": step.name,
                    "approver_kind": step.approver.kind.value,
                    "reason": reason,
                },
            )
            return MaterializedStep(
                status=StepStatus.SKIPPED,
                skip_reason=f"Skipped: {reason}",
                **common,
            )

        raise ApproverResolutionError(step.name, step.approver.kind.value, reason)


def _unresolved_reason(step: StepDefinition) -> str:
    approver = step.approver
    if isinstance(approver, RoleApprover):
        return f"no one holds role '{approver.role}'"
    if isinstance(approver, ManagerApprover):
        return "requestor has no manager"
    return "approver could not be resolved"
