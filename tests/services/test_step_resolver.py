"""
Tests for StepResolver -- approver resolution and step materialization.
"""

from uuid import uuid4

import pytest

from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ManagerApprover,
    PersonApprover,
    ResolvedAssignee,
    RoleApprover,
    StepDefinition,
    StepStatus,
)
from approval_kernel.exceptions import ApproverResolutionError
from approval_kernel.services.step_resolver import StepResolver


def _step(approver, **kwargs):
    return StepDefinition(
        step_id=uuid4(),
        template_id=uuid4(),
        step_order=kwargs.pop("step_order", 1),
        name=kwargs.pop("name", "Step"),
        approver=approver,
        **kwargs,
    )


@pytest.fixture
def resolver(org):
    return StepResolver(org)


@pytest.fixture
def activity(people):
    return ApprovableActivity(
        company_id=people.company_id,
        activity_type="leave",
        activity_id=uuid4(),
        title="Annual leave",
        requestor_id=people.employee,
        attributes={"days": 4, "amount": 250},
    )


class TestResolve:
    def test_specific_person(self, resolver, activity, people):
        assert resolver.resolve(_step(PersonApprover(people.director)), activity) == ResolvedAssignee(
            person_id=people.director,
        )

    def test_requestor_manager(self, resolver, activity, people):
        assert resolver.resolve(_step(ManagerApprover()), activity).person_id == people.manager

    def test_manager_of_the_requestor_not_of_the_caller(self, resolver, activity, people):
        manager_request = ApprovableActivity(
            company_id=activity.company_id, activity_type="leave", activity_id=uuid4(),
            title="Leave", requestor_id=people.manager,
        )
        assert resolver.resolve(_step(ManagerApprover()), manager_request).person_id == people.director

    def test_manager_missing(self, resolver, activity, people):
        top = ApprovableActivity(
            company_id=activity.company_id, activity_type="leave", activity_id=uuid4(),
            title="Leave", requestor_id=people.director,
        )
        assert resolver.resolve(_step(ManagerApprover()), top) is None

    def test_single_role_holder_resolves_to_person(self, resolver, activity, people):
        assignee = resolver.resolve(_step(RoleApprover("FINANCE")), activity)
        assert assignee == ResolvedAssignee(person_id=people.finance, role="FINANCE")

    def test_multiple_role_holders_resolve_to_role(self, resolver, activity):
        assignee = resolver.resolve(_step(RoleApprover("HR")), activity)
        assert assignee == ResolvedAssignee(person_id=None, role="HR")

    def test_role_without_holders(self, resolver, activity):
        assert resolver.resolve(_step(RoleApprover("LEGAL")), activity) is None

    def test_role_holders_scoped_to_activity_company(self, resolver, org, people):
        foreign = ApprovableActivity(
            company_id=people.other_company_id, activity_type="leave", activity_id=uuid4(),
            title="Leave", requestor_id=people.employee,
        )
        assert resolver.resolve(_step(RoleApprover("HR")), foreign) is None


class TestMaterialize:
    def test_resolved_step_is_pending(self, resolver, activity, people):
        step = resolver.materialize(_step(ManagerApprover(), auto_approve_after_days=2), activity)

        assert step.status == StepStatus.PENDING
        assert step.assignee.person_id == people.manager
        assert step.auto_approve_after_days == 2

    def test_false_condition_skips(self, resolver, activity):
        step = resolver.materialize(
            _step(RoleApprover("FINANCE"), condition="activity.amount > 1000"), activity,
        )

        assert step.status == StepStatus.SKIPPED
        assert step.assignee is None
        assert "Condition not met" in step.skip_reason

    def test_false_condition_skips_even_when_required(self, resolver, activity):
        step = resolver.materialize(
            _step(RoleApprover("LEGAL"), is_required=True, condition="activity.days > 10"),
            activity,
        )
        assert step.status == StepStatus.SKIPPED

    def test_true_condition_resolves(self, resolver, activity):
        step = resolver.materialize(
            _step(RoleApprover("HR"), condition="activity.days >= 3"), activity,
        )
        assert step.status == StepStatus.PENDING
        assert step.assignee.role == "HR"

    def test_unresolved_skippable_step_is_skipped(self, resolver, activity):
        step = resolver.materialize(
            _step(RoleApprover("LEGAL"), is_required=False, can_skip=True), activity,
        )
        assert step.status == StepStatus.SKIPPED
        assert "LEGAL" in step.skip_reason

    def test_unresolved_required_step_fails(self, resolver, people):
        top = ApprovableActivity(
            company_id=people.company_id, activity_type="leave", activity_id=uuid4(),
            title="Leave", requestor_id=people.director,
        )
        with pytest.raises(ApproverResolutionError) as exc_info:
            resolver.materialize(_step(ManagerApprover(), name="Manager"), top)

        assert exc_info.value.step_name == "Manager"
        assert exc_info.value.approver_kind == "requestor_manager"
        assert exc_info.value.code == "APPROVER_UNRESOLVED"

    def test_optional_but_not_skippable_step_fails(self, resolver, activity):
        with pytest.raises(ApproverResolutionError):
            resolver.materialize(
                _step(RoleApprover("LEGAL"), is_required=False, can_skip=False), activity,
            )
