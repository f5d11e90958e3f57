"""
Concurrency tests for step compare-and-set.

The SQLite tests interleave deterministically: a rival operation is run
between the loser's read and its conditional UPDATE, by wrapping the
service's ``_load_request``.  The PostgreSQL test races real threads.

Run the PostgreSQL test with:
    DATABASE_URL=postgresql://... pytest tests/concurrency -m postgres
"""

import threading
from uuid import uuid4

import pytest

from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.org import InMemoryOrgDirectory
from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ManagerApprover,
    RequestStatus,
    RoleApprover,
    StepStatus,
)
from approval_kernel.exceptions import RequestNotPendingError, StepAlreadyActionedError
from approval_kernel.services.handler_registry import HandlerRegistry
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.workflow_service import ApprovalWorkflowService, SYSTEM_ACTOR_ID
from tests.conftest import RecordingHandler


@pytest.fixture
def rival(session_factory, registry, org, clock):
    """A second service instance on the same database."""
    return ApprovalWorkflowService(session_factory, registry, org, clock=clock)


def _interleave(monkeypatch, service, rival_action):
    """Run ``rival_action`` once, right after ``service`` reads the request."""
    original = service._load_request
    fired = []

    def load_then_yield(session, request_id):
        model = original(session, request_id)
        if not fired:
            fired.append(True)
            rival_action()
        return model

    monkeypatch.setattr(service, "_load_request", load_then_yield)


class TestInterleavedApprovals:
    def test_two_role_holders_one_winner(
        self, workflow_service, rival, make_template, make_activity, people, leave_handler, monkeypatch,
    ):
        make_template("leave", steps=(("HR", RoleApprover("HR"), {}),))
        activity = make_activity()
        request = workflow_service.start_workflow(activity)
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.approve(request.request_id, people.hr_two, "mine"),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.approve(request.request_id, people.hr_one, "no, mine")

        result = workflow_service.get_request_status(request.request_id)
        assert result.status == RequestStatus.APPROVED
        assert result.steps[0].acted_by == people.hr_two
        assert result.steps[0].comments == "mine"
        assert leave_handler.calls == [("approved", activity.activity_id, people.hr_two)]

    def test_approve_and_reject_race(
        self, workflow_service, rival, four_step_template, make_activity, people, leave_handler, monkeypatch,
    ):
        request = workflow_service.start_workflow(make_activity())
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.approve(request.request_id, people.manager),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.reject(request.request_id, people.manager, "changed my mind")

        result = workflow_service.get_request_status(request.request_id)
        assert result.status == RequestStatus.PENDING
        assert result.current_step_index == 1
        assert result.steps[0].status == StepStatus.APPROVED
        assert leave_handler.calls == []

    def test_cancel_beats_approval(
        self, workflow_service, rival, four_step_template, make_activity, people, leave_handler, monkeypatch,
    ):
        activity = make_activity()
        request = workflow_service.start_workflow(activity)
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.cancel(request.request_id, people.employee),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.approve(request.request_id, people.manager)

        result = workflow_service.get_request_status(request.request_id)
        assert result.status == RequestStatus.CANCELLED
        # The loser's step write was rolled back with its transaction.
        assert result.steps[0].status == StepStatus.PENDING
        assert result.steps[0].acted_by is None
        assert leave_handler.calls == [("cancelled", activity.activity_id, people.employee, None)]

    def test_approval_beats_cancel(
        self, workflow_service, rival, make_template, make_activity, people, leave_handler, monkeypatch,
    ):
        make_template("leave")
        activity = make_activity()
        request = workflow_service.start_workflow(activity)
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.approve(request.request_id, people.manager),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.cancel(request.request_id, people.employee)

        assert workflow_service.get_request_status(request.request_id).status == RequestStatus.APPROVED
        assert leave_handler.calls == [("approved", activity.activity_id, people.manager)]

    def test_human_beats_auto_approval(
        self, workflow_service, rival, make_template, make_activity, people, clock, monkeypatch,
    ):
        make_template("leave", steps=(
            ("Manager", ManagerApprover(), {"auto_approve_after_days": 1}),
            ("HR", RoleApprover("HR"), {}),
        ))
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(1)
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.approve(request.request_id, people.manager),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.auto_approve_step(request.request_id, request.steps[0].step_id)

        result = workflow_service.get_request_status(request.request_id)
        assert result.steps[0].acted_by == people.manager
        assert result.current_step_index == 1
        assert result.steps[1].status == StepStatus.PENDING

    def test_auto_approval_beats_human(
        self, workflow_service, rival, make_template, make_activity, people, clock, monkeypatch,
    ):
        make_template("leave", steps=(
            ("Manager", ManagerApprover(), {"auto_approve_after_days": 1}),
            ("HR", RoleApprover("HR"), {}),
        ))
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(1)
        _interleave(
            monkeypatch, workflow_service,
            lambda: rival.auto_approve_step(request.request_id, request.steps[0].step_id),
        )

        with pytest.raises(StepAlreadyActionedError):
            workflow_service.approve(request.request_id, people.manager)

        assert workflow_service.get_request_status(request.request_id).steps[0].acted_by == SYSTEM_ACTOR_ID


@pytest.mark.postgres
class TestThreadedApprovals:
    """Real concurrent approvals against PostgreSQL row locking."""

    def test_many_role_holders_exactly_one_wins(self, postgres_session_factory):
        company_id = uuid4()
        holders = [uuid4() for _ in range(8)]
        requestor = uuid4()
        org = InMemoryOrgDirectory()
        org.add_member(company_id, requestor)
        for holder in holders:
            org.add_member(company_id, holder, "HR")

        clock = DeterministicClock()
        handler = RecordingHandler()
        registry = HandlerRegistry()
        registry.register("leave", handler)
        service = ApprovalWorkflowService(postgres_session_factory, registry, org, clock=clock)

        s = postgres_session_factory()
        try:
            templates = TemplateService(s, clock)
            template = templates.create_template(company_id, "leave", "Leave", is_default=True)
            templates.add_step(template.template_id, "HR", RoleApprover("HR"))
            s.commit()
        finally:
            s.close()

        activity = ApprovableActivity(
            company_id=company_id,
            activity_type="leave",
            activity_id=uuid4(),
            title="Leave",
            requestor_id=requestor,
        )
        request = service.start_workflow(activity)

        barrier = threading.Barrier(len(holders))
        winners, losers, errors = [], [], []

        def approve(holder):
            barrier.wait()
            try:
                service.approve(request.request_id, holder)
                winners.append(holder)
            except (StepAlreadyActionedError, RequestNotPendingError):
                losers.append(holder)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=approve, args=(h,)) for h in holders]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert len(losers) == len(holders) - 1
        assert len(winners) == 1
        assert len(handler.calls) == 1
        result = service.get_request_status(request.request_id)
        assert result.status == RequestStatus.APPROVED
        assert result.steps[0].acted_by == winners[0]
