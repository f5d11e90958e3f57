"""
Pytest fixtures for the approval kernel test suite.

Provides:
- A file-backed SQLite database per test (separate sessions get separate
  connections, so compare-and-set races can be interleaved deterministically)
- A deterministic clock and an in-memory org directory
- Recording completion handlers
- Template and activity builders

Environment Variables:
- DATABASE_URL: PostgreSQL connection URL.  Only tests marked ``postgres``
  use it; they are skipped when it is not set.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import approval_kernel.models  # noqa: F401
from approval_kernel.db.base import Base
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.org import InMemoryOrgDirectory
from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ManagerApprover,
    PersonApprover,
    RoleApprover,
)
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.services.handler_registry import HandlerRegistry, HandlerResult
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.workflow_service import ApprovalWorkflowService


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL (DATABASE_URL)"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_service):
            workflow_service.start_workflow(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_request_started" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path}/approvals.db",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def postgres_session_factory():
    """Session factory on a real PostgreSQL database, or skip."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")
    eng = create_engine(url, isolation_level="READ COMMITTED")
    Base.metadata.drop_all(eng)
    Base.metadata.create_all(eng)
    yield sessionmaker(bind=eng, expire_on_commit=False)
    Base.metadata.drop_all(eng)
    eng.dispose()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@dataclass
class People:
    """Identities in the test organisation.

    employee -> manager -> director.  Two HR holders, one finance holder.
    """

    company_id: UUID = field(default_factory=uuid4)
    other_company_id: UUID = field(default_factory=uuid4)
    employee: UUID = field(default_factory=uuid4)
    manager: UUID = field(default_factory=uuid4)
    director: UUID = field(default_factory=uuid4)
    hr_one: UUID = field(default_factory=uuid4)
    hr_two: UUID = field(default_factory=uuid4)
    finance: UUID = field(default_factory=uuid4)
    outsider: UUID = field(default_factory=uuid4)


@pytest.fixture
def people():
    return People()


@pytest.fixture
def org(people):
    directory = InMemoryOrgDirectory()
    c = people.company_id
    directory.set_manager(c, people.employee, people.manager)
    directory.set_manager(c, people.manager, people.director)
    directory.add_member(c, people.hr_one, "HR")
    directory.add_member(c, people.hr_two, "HR")
    directory.add_member(c, people.finance, "FINANCE")
    directory.add_member(c, people.outsider)
    return directory


class RecordingHandler:
    """Completion handler that records every callback.

    Set ``fail_with`` to an exception to raise it, or ``result`` to a
    failing ``HandlerResult`` to report failure.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.result: HandlerResult = HandlerResult.ok()

    def _record(self, *call) -> HandlerResult:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with
        return self.result

    def on_approved(self, activity_id, approved_by):
        return self._record("approved", activity_id, approved_by)

    def on_rejected(self, activity_id, rejected_by, reason):
        return self._record("rejected", activity_id, rejected_by, reason)

    def on_cancelled(self, activity_id, cancelled_by, reason=None):
        return self._record("cancelled", activity_id, cancelled_by, reason)


@pytest.fixture
def leave_handler():
    return RecordingHandler()


@pytest.fixture
def asset_handler():
    return RecordingHandler()


@pytest.fixture
def registry(leave_handler, asset_handler):
    reg = HandlerRegistry()
    reg.register("leave", leave_handler)
    reg.register("asset_request", asset_handler)
    return reg


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def template_service(session, clock):
    return TemplateService(session, clock)


@pytest.fixture
def workflow_service(session_factory, registry, org, clock):
    return ApprovalWorkflowService(session_factory, registry, org, clock=clock)


@pytest.fixture
def make_template(session_factory, clock, people):
    """
    Create and commit a template with steps.

    Usage::

        template = make_template("leave", [
            ("Manager Approval", ManagerApprover(), {}),
            ("HR Approval", RoleApprover("HR"), {"auto_approve_after_days": 3}),
        ])
    """

    def _make(
        activity_type="leave",
        steps=(("Manager Approval", ManagerApprover(), {}),),
        name=None,
        is_default=True,
        company_id=None,
    ):
        s = session_factory()
        try:
            service = TemplateService(s, clock)
            template = service.create_template(
                company_id or people.company_id,
                activity_type,
                name or f"{activity_type} workflow",
                is_default=is_default,
            )
            for step_name, approver, kwargs in steps:
                service.add_step(template.template_id, step_name, approver, **kwargs)
            result = service.get_template(template.template_id)
            s.commit()
            return result
        finally:
            s.close()

    return _make


@pytest.fixture
def make_activity(people):
    """Build an ApprovableActivity with a fresh activity id."""

    def _make(activity_type="leave", requestor_id=None, attributes=None, activity_id=None, title=None):
        return ApprovableActivity(
            company_id=people.company_id,
            activity_type=activity_type,
            activity_id=activity_id or uuid4(),
            title=title or f"{activity_type} request",
            requestor_id=requestor_id or people.employee,
            attributes=attributes or {},
        )

    return _make


@pytest.fixture
def four_step_template(make_template, people):
    """manager -> director (person) -> HR (role) -> finance (role)."""
    return make_template("leave", [
        ("Manager Approval", ManagerApprover(), {}),
        ("Director Approval", PersonApprover(people.director), {}),
        ("HR Approval", RoleApprover("HR"), {}),
        ("Finance Approval", RoleApprover("FINANCE"), {}),
    ])
