"""
Tests for EscalationSweeper -- time-based auto-approval.

Covers:
- Due steps are approved by the system actor once the deadline passes
- Steps not yet due, or without a timeout, are left alone
- A human action that wins the race is logged and skipped
- A handler failure on a completing request does not stop the sweep
- Background start/stop
"""

import time
from datetime import timedelta

import pytest

from approval_kernel.domain.workflow import (
    DueAutoApproval,
    ManagerApprover,
    RequestStatus,
    RoleApprover,
    StepStatus,
)
from approval_kernel.services.escalation_sweeper import EscalationSweeper
from approval_kernel.services.workflow_service import SYSTEM_ACTOR_ID


@pytest.fixture
def escalating_template(make_template):
    return make_template("leave", steps=(
        ("Manager Approval", ManagerApprover(), {"auto_approve_after_days": 3}),
        ("HR Approval", RoleApprover("HR"), {}),
    ))


@pytest.fixture
def sweeper(workflow_service):
    return EscalationSweeper(workflow_service, interval_seconds=0.05)


class TestTick:
    def test_due_step_auto_approved(
        self, sweeper, workflow_service, escalating_template, make_activity, clock,
    ):
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(3)

        approved = sweeper.tick()

        assert approved == [request.steps[0].step_id]
        result = workflow_service.get_request_status(request.request_id)
        step = result.steps[0]
        assert step.status == StepStatus.APPROVED
        assert step.acted_by == SYSTEM_ACTOR_ID
        assert step.acted_at == clock.now()
        assert step.comments == "Auto-approved after 3 day(s) without action"
        assert result.current_step_index == 1
        assert result.steps[1].activated_at == clock.now()

    def test_not_yet_due(self, sweeper, workflow_service, escalating_template, make_activity, clock):
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(2)
        clock.advance(86399)

        assert sweeper.tick() == []
        assert workflow_service.get_request_status(request.request_id).current_step_index == 0

    def test_deadline_counts_from_activation(
        self, sweeper, workflow_service, make_template, make_activity, people, clock,
    ):
        make_template("leave", steps=(
            ("Manager Approval", ManagerApprover(), {}),
            ("HR Approval", RoleApprover("HR"), {"auto_approve_after_days": 1}),
        ))
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(5)
        workflow_service.approve(request.request_id, people.manager)

        assert sweeper.tick() == []
        clock.advance_days(1)
        assert sweeper.tick() == [request.steps[1].step_id]

    def test_steps_without_timeout_never_escalate(
        self, sweeper, workflow_service, make_template, make_activity, clock,
    ):
        make_template("leave")
        workflow_service.start_workflow(make_activity())
        clock.advance_days(365)

        assert sweeper.tick() == []

    def test_final_step_completes_request(
        self, sweeper, workflow_service, make_template, make_activity, clock, leave_handler,
    ):
        make_template("leave", steps=(
            ("Manager Approval", ManagerApprover(), {"auto_approve_after_days": 2}),
        ))
        activity = make_activity()
        request = workflow_service.start_workflow(activity)
        clock.advance_days(2)

        sweeper.tick()

        assert workflow_service.get_request_status(request.request_id).status == RequestStatus.APPROVED
        assert leave_handler.calls == [("approved", activity.activity_id, SYSTEM_ACTOR_ID)]

    def test_human_wins_race(
        self, sweeper, workflow_service, escalating_template, make_activity, people, clock,
        monkeypatch, captured_logs,
    ):
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(3)
        stale_due = workflow_service.find_steps_due_for_auto_approval()
        assert [d.step_id for d in stale_due] == [request.steps[0].step_id]

        workflow_service.approve(request.request_id, people.manager, "on it")
        monkeypatch.setattr(workflow_service, "find_steps_due_for_auto_approval", lambda: stale_due)

        assert sweeper.tick() == []
        step = workflow_service.get_request_status(request.request_id).steps[0]
        assert step.acted_by == people.manager
        assert step.comments == "on it"
        skipped = [r for r in captured_logs() if r["message"] == "escalation_step_skipped"]
        assert skipped[0]["reason"] == "STEP_ALREADY_ACTIONED"

    def test_cancelled_request_skipped(
        self, sweeper, workflow_service, escalating_template, make_activity, people, clock,
        monkeypatch,
    ):
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(3)
        stale_due = workflow_service.find_steps_due_for_auto_approval()
        workflow_service.cancel(request.request_id, people.employee)
        monkeypatch.setattr(workflow_service, "find_steps_due_for_auto_approval", lambda: stale_due)

        assert sweeper.tick() == []
        assert workflow_service.get_request_status(request.request_id).status == RequestStatus.CANCELLED

    def test_handler_failure_does_not_stop_sweep(
        self, sweeper, workflow_service, make_template, make_activity, clock,
        leave_handler, asset_handler, captured_logs,
    ):
        for activity_type in ("leave", "asset_request"):
            make_template(activity_type, steps=(
                ("Manager Approval", ManagerApprover(), {"auto_approve_after_days": 1}),
            ))
        leave_handler.fail_with = RuntimeError("payroll unavailable")
        leave = workflow_service.start_workflow(make_activity("leave"))
        clock.advance(60)
        asset = workflow_service.start_workflow(make_activity("asset_request"))
        clock.advance_days(2)

        approved = sweeper.tick()

        assert approved == [leave.steps[0].step_id, asset.steps[0].step_id]
        assert workflow_service.get_request_status(leave.request_id).status == RequestStatus.APPROVED
        assert len(asset_handler.calls) == 1
        messages = [r["message"] for r in captured_logs()]
        assert "escalation_handler_failed" in messages

    def test_due_list_ordered_by_deadline(
        self, workflow_service, make_template, make_activity, clock,
    ):
        make_template("leave", steps=(
            ("Manager Approval", ManagerApprover(), {"auto_approve_after_days": 2}),
        ))
        make_template("asset_request", steps=(
            ("Manager Approval", ManagerApprover(), {"auto_approve_after_days": 1}),
        ))
        leave = workflow_service.start_workflow(make_activity("leave"))
        clock.advance(3600)
        asset = workflow_service.start_workflow(make_activity("asset_request"))
        clock.advance_days(3)

        due = workflow_service.find_steps_due_for_auto_approval()

        assert [d.request_id for d in due] == [asset.request_id, leave.request_id]
        assert all(isinstance(d, DueAutoApproval) for d in due)
        assert due[0].deadline == asset.steps[0].activated_at + timedelta(days=1)


class TestLifecycle:
    def test_invalid_interval(self, workflow_service):
        with pytest.raises(ValueError):
            EscalationSweeper(workflow_service, interval_seconds=0)

    def test_start_and_stop(
        self, sweeper, workflow_service, escalating_template, make_activity, clock,
    ):
        request = workflow_service.start_workflow(make_activity())
        clock.advance_days(3)

        sweeper.start()
        try:
            assert sweeper.is_running
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                status = workflow_service.get_request_status(request.request_id)
                if status.current_step_index == 1:
                    break
                time.sleep(0.02)
        finally:
            sweeper.stop(timeout=5)

        assert not sweeper.is_running
        assert workflow_service.get_request_status(request.request_id).steps[0].acted_by == SYSTEM_ACTOR_ID

    def test_start_is_idempotent(self, sweeper):
        sweeper.start()
        try:
            first = sweeper._thread
            sweeper.start()
            assert sweeper._thread is first
        finally:
            sweeper.stop(timeout=5)
