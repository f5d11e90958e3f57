"""
Module: approval_kernel.models.template
Responsibility: ORM persistence for workflow templates and their ordered
    step definitions.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value objects only.

Invariants enforced:
    - At most one default template per (company, activity type): partial
      UNIQUE index on ``is_default``.
    - Step orders are unique within a template (UNIQUE(template_id,
      step_order)); the template service keeps them contiguous 1..N.
    - Approver kind is one of the three variant tags (CHECK constraint).

Failure modes:
    - IntegrityError on a second default template for the same scope.
    - IntegrityError on duplicate step order within a template.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import StepDefinition, WorkflowTemplate


class WorkflowTemplateModel(Base):
    """Persistent workflow template for one (company, activity type)."""

    __tablename__ = "approval_workflow_templates"

    __table_args__ = (
        Index(
            "ix_approval_templates_single_default",
            "company_id", "activity_type",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
        Index(
            "ix_approval_templates_company_activity",
            "company_id", "activity_type",
        ),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    steps: Mapped[list["WorkflowStepModel"]] = relationship(
        "WorkflowStepModel",
        back_populates="template",
        order_by="WorkflowStepModel.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowTemplate {self.id} {self.activity_type}/{self.name} "
            f"default={self.is_default} active={self.is_active}>"
        )

    def to_dto(self) -> WorkflowTemplate:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import WorkflowTemplate

        return WorkflowTemplate(
            template_id=self.id,
            company_id=self.company_id,
            activity_type=self.activity_type,
            name=self.name,
            description=self.description,
            is_active=self.is_active,
            is_default=self.is_default,
            steps=tuple(
                s.to_dto() for s in sorted(self.steps, key=lambda s: s.step_order)
            ),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class WorkflowStepModel(Base):
    """Persistent step definition belonging to exactly one template."""

    __tablename__ = "approval_workflow_steps"

    __table_args__ = (
        UniqueConstraint(
            "template_id", "step_order",
            name="uq_approval_workflow_steps_order",
        ),
        CheckConstraint(
            "approver_kind IN ('role', 'specific_person', 'requestor_manager')",
            name="ck_approval_workflow_steps_approver_kind",
        ),
        CheckConstraint(
            "auto_approve_after_days IS NULL OR auto_approve_after_days > 0",
            name="ck_approval_workflow_steps_auto_approve_positive",
        ),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approver_person_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_after_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)

    template: Mapped["WorkflowTemplateModel"] = relationship(
        "WorkflowTemplateModel",
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowStep {self.id} template={self.template_id} "
            f"order={self.step_order} {self.approver_kind}>"
        )

    def to_dto(self) -> StepDefinition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import StepDefinition, approver_from_fields

        return StepDefinition(
            step_id=self.id,
            template_id=self.template_id,
            step_order=self.step_order,
            name=self.name,
            approver=approver_from_fields(
                self.approver_kind,
                role=self.approver_role,
                person_id=self.approver_person_id,
                step_name=self.name,
            ),
            is_required=self.is_required,
            can_skip=self.can_skip,
            auto_approve_after_days=self.auto_approve_after_days,
            condition=self.condition,
        )
