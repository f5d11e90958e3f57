"""
Module: approval_kernel.models.request
Responsibility: ORM persistence for approval requests and their frozen step
    snapshots.

Architecture position: Kernel > Models.  May import from db/base.py, the
    exceptions module, and domain value objects only.

Invariants enforced:
    - One pending request per (activity type, activity id): partial UNIQUE
      index on ``status = 'pending'``.
    - Valid status values for requests and steps (CHECK constraints).
    - Step snapshots are frozen in shape: order, name, approver
      specification, resolved assignee and flags cannot be updated through
      the ORM (before_update listener).
    - Terminal requests are immutable through the ORM (before_update
      listener); status transitions themselves run as conditional UPDATEs
      in the workflow service.
    - Requests and steps are never deleted; they are the audit record.

Failure modes:
    - IntegrityError on a second pending request for the same activity.
    - ImmutabilityViolationError on forbidden ORM updates/deletes.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import get_history

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import ApprovalRequest, ApprovalRequestStep

_TERMINAL_REQUEST_STATUS_VALUES = frozenset({"approved", "rejected", "cancelled"})


class ApprovalRequestModel(Base):
    """Persistent approval request instance.

    Contract:
        Created once by the workflow service with its full step snapshot.
        ``current_step_index`` is a 0-based index into ``steps``.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_requests_valid_status",
        ),
        Index(
            "ix_approval_requests_pending_unique",
            "activity_type", "activity_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "ix_approval_requests_activity_created",
            "activity_type", "activity_id", "created_at",
        ),
        Index("ix_approval_requests_requestor_status", "requestor_id", "status"),
        Index("ix_approval_requests_company_status", "company_id", "status"),
    )

    company_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    # Soft reference: the snapshot in ``steps`` is what the request runs on.
    template_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    template_name: Mapped[str] = mapped_column(String(200), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    activity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    activity_title: Mapped[str] = mapped_column(String(500), nullable=False)
    activity_attributes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    requestor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    steps: Mapped[list["ApprovalRequestStepModel"]] = relationship(
        "ApprovalRequestStepModel",
        back_populates="request",
        order_by="ApprovalRequestStepModel.step_order",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} {self.activity_type}/{self.activity_id} "
            f"step={self.current_step_index}/{self.total_steps} status={self.status}>"
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import ApprovalRequest, RequestStatus

        return ApprovalRequest(
            request_id=self.id,
            company_id=self.company_id,
            template_id=self.template_id,
            template_name=self.template_name,
            activity_type=self.activity_type,
            activity_id=self.activity_id,
            activity_title=self.activity_title,
            requestor_id=self.requestor_id,
            current_step_index=self.current_step_index,
            total_steps=self.total_steps,
            status=RequestStatus(self.status),
            created_at=self.created_at,
            completed_at=self.completed_at,
            activity_attributes=dict(self.activity_attributes or {}),
            steps=tuple(
                s.to_dto() for s in sorted(self.steps, key=lambda s: s.step_order)
            ),
        )


class ApprovalRequestStepModel(Base):
    """Persistent step snapshot of one approval request.

    Contract:
        Shape columns are write-once.  Only ``status``, ``acted_by``,
        ``acted_at``, ``comments`` and ``activated_at`` change after insert.
    """

    __tablename__ = "approval_request_steps"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "step_order",
            name="uq_approval_request_steps_order",
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'skipped')",
            name="ck_approval_request_steps_valid_status",
        ),
        Index("ix_approval_request_steps_assignee", "assignee_id", "status"),
        Index("ix_approval_request_steps_role", "assignee_role", "status"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_requests.id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    approver_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approver_person_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    assignee_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    assignee_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_after_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    acted_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    acted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel",
        back_populates="steps",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequestStep {self.id} request={self.request_id} "
            f"order={self.step_order} status={self.status}>"
        )

    def to_dto(self) -> ApprovalRequestStep:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.workflow import (
            ApprovalRequestStep,
            StepStatus,
            approver_from_fields,
        )

        return ApprovalRequestStep(
            step_id=self.id,
            request_id=self.request_id,
            step_order=self.step_order,
            name=self.name,
            approver=approver_from_fields(
                self.approver_kind,
                role=self.approver_role,
                person_id=self.approver_person_id,
                step_name=self.name,
            ),
            assignee_id=self.assignee_id,
            assignee_role=self.assignee_role,
            status=StepStatus(self.status),
            is_required=self.is_required,
            can_skip=self.can_skip,
            auto_approve_after_days=self.auto_approve_after_days,
            condition=self.condition,
            acted_by=self.acted_by,
            acted_at=self.acted_at,
            comments=self.comments,
            activated_at=self.activated_at,
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================

_FROZEN_STEP_FIELDS = (
    "request_id",
    "step_order",
    "name",
    "approver_kind",
    "approver_role",
    "approver_person_id",
    "assignee_id",
    "assignee_role",
    "is_required",
    "can_skip",
    "auto_approve_after_days",
    "condition",
    "created_at",
)


@event.listens_for(ApprovalRequestStepModel, "before_update")
def prevent_step_snapshot_update(mapper, connection, target):
    """Step snapshots keep the shape they were created with."""
    for field in _FROZEN_STEP_FIELDS:
        if get_history(target, field).has_changes():
            raise ImmutabilityViolationError(
                entity_type="ApprovalRequestStep",
                entity_id=str(target.id),
                reason=f"Step snapshot field '{field}' is frozen -- cannot modify",
            )


@event.listens_for(ApprovalRequestModel, "before_update")
def prevent_terminal_request_update(mapper, connection, target):
    """Terminal requests are audit records and cannot change."""
    status_history = get_history(target, "status")
    if status_history.deleted:
        old_status = status_history.deleted[0]
    elif not status_history.added:
        old_status = target.status
    else:
        old_status = None

    if old_status in _TERMINAL_REQUEST_STATUS_VALUES:
        raise ImmutabilityViolationError(
            entity_type="ApprovalRequest",
            entity_id=str(target.id),
            reason=f"Request is {old_status} -- cannot modify",
        )


@event.listens_for(ApprovalRequestModel, "before_delete")
def prevent_request_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalRequest",
        entity_id=str(target.id),
        reason="Approval requests are retained as audit records -- cannot delete",
    )


@event.listens_for(ApprovalRequestStepModel, "before_delete")
def prevent_step_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalRequestStep",
        entity_id=str(target.id),
        reason="Approval request steps are retained as audit records -- cannot delete",
    )
