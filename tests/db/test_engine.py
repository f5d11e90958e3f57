"""Tests for approval_kernel.db.engine -- engine lifecycle and session scope."""

import pytest
from sqlalchemy import inspect

from approval_kernel.db import engine as db_engine
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.models.template import WorkflowTemplateModel
from approval_kernel.services.template_service import TemplateService


@pytest.fixture
def sqlite_engine(tmp_path):
    db_engine.init_engine_from_url(f"sqlite:///{tmp_path}/engine.db")
    db_engine.create_tables()
    yield db_engine.get_engine()
    db_engine.reset_engine()


class TestEngineLifecycle:
    def test_uninitialized_access_raises(self):
        db_engine.reset_engine()
        with pytest.raises(RuntimeError):
            db_engine.get_engine()
        with pytest.raises(RuntimeError):
            db_engine.get_session_factory()

    def test_create_tables(self, sqlite_engine):
        tables = set(inspect(sqlite_engine).get_table_names())
        assert {
            "approval_workflow_templates",
            "approval_workflow_steps",
            "approval_requests",
            "approval_request_steps",
        } <= tables

    def test_drop_tables(self, sqlite_engine):
        db_engine.drop_tables()
        assert inspect(sqlite_engine).get_table_names() == []


class TestSessionScope:
    def test_commits_on_success(self, sqlite_engine, people):
        with db_engine.session_scope() as session:
            TemplateService(session, DeterministicClock()).create_template(
                people.company_id, "leave", "Leave",
            )

        with db_engine.session_scope() as session:
            assert session.query(WorkflowTemplateModel).count() == 1

    def test_rolls_back_on_error(self, sqlite_engine, people):
        with pytest.raises(ValueError):
            with db_engine.session_scope() as session:
                TemplateService(session, DeterministicClock()).create_template(
                    people.company_id, "leave", "Leave",
                )
                raise ValueError("abort")

        with db_engine.session_scope() as session:
            assert session.query(WorkflowTemplateModel).count() == 0
