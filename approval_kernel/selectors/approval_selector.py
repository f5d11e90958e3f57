"""
Module: approval_kernel.selectors.approval_selector
Responsibility: Read projections over approval requests -- request status,
    activity status, approver inboxes, requestor/company listings, and the
    auto-approval due list used by the escalation sweeper.
Architecture position: Kernel > Selectors.  Read-only; returns frozen DTOs.

Invariants enforced:
    - Inbox listings contain only the *current* pending step of a pending
      request; steps of terminal requests never appear.
    - Role-assigned steps appear for every holder of the role in the
      request's company; person-assigned steps only for that person.
    - Inboxes span exactly the companies the org directory grants the
      person access to.

Failure modes:
    - RequestNotFoundError from get_request_status for unknown ids.
    - ValueError from inbox queries when no org directory was provided.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, case, false, func, or_, select
from sqlalchemy.orm import Session

from approval_kernel.domain.org import OrgDirectory
from approval_kernel.domain.workflow import (
    ApprovalRequest,
    DueAutoApproval,
    PendingApproval,
    RequestStatus,
    StepStatus,
    auto_approval_deadline,
)
from approval_kernel.exceptions import RequestNotFoundError
from approval_kernel.models.request import ApprovalRequestModel, ApprovalRequestStepModel
from approval_kernel.selectors.base import BaseSelector


class ApprovalSelector(BaseSelector[ApprovalRequestModel]):
    """Read-only queries for approval requests and steps."""

    def __init__(self, session: Session, org_directory: OrgDirectory | None = None):
        super().__init__(session)
        self._org = org_directory

    # =========================================================================
    # Request projections
    # =========================================================================

    def get_request(self, request_id: UUID) -> ApprovalRequest | None:
        model = self.session.get(ApprovalRequestModel, request_id)
        return model.to_dto() if model is not None else None

    def get_request_status(self, request_id: UUID) -> ApprovalRequest:
        """Request with its full step list.

        Raises:
            RequestNotFoundError: unknown request id.
        """
        request = self.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return request

    def get_activity_approval_status(
        self,
        activity_type: str,
        activity_id: UUID,
    ) -> ApprovalRequest | None:
        """Most recent request for an activity, or None.

        Earlier terminal requests from prior cycles are ignored.  On equal
        timestamps the pending request wins.
        """
        model = self.session.execute(
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.activity_type == activity_type,
                ApprovalRequestModel.activity_id == activity_id,
            )
            .order_by(
                ApprovalRequestModel.created_at.desc(),
                case((ApprovalRequestModel.status == RequestStatus.PENDING.value, 0), else_=1),
            )
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def get_requests_by_requestor(
        self,
        requestor_id: UUID,
        status: RequestStatus | str | None = None,
    ) -> list[ApprovalRequest]:
        """Requests raised by a person, newest first."""
        stmt = select(ApprovalRequestModel).where(
            ApprovalRequestModel.requestor_id == requestor_id,
        )
        if status is not None:
            stmt = stmt.where(ApprovalRequestModel.status == RequestStatus(status).value)
        stmt = stmt.order_by(ApprovalRequestModel.created_at.desc())
        return [m.to_dto() for m in self.session.execute(stmt).scalars().all()]

    def get_requests_by_company(
        self,
        company_id: UUID,
        status: RequestStatus | str | None = None,
        activity_type: str | None = None,
    ) -> list[ApprovalRequest]:
        """Requests of a company, newest first."""
        stmt = select(ApprovalRequestModel).where(
            ApprovalRequestModel.company_id == company_id,
        )
        if status is not None:
            stmt = stmt.where(ApprovalRequestModel.status == RequestStatus(status).value)
        if activity_type is not None:
            stmt = stmt.where(ApprovalRequestModel.activity_type == activity_type)
        stmt = stmt.order_by(ApprovalRequestModel.created_at.desc())
        return [m.to_dto() for m in self.session.execute(stmt).scalars().all()]

    # =========================================================================
    # Approver inbox
    # =========================================================================

    def get_pending_approvals_for_user(self, person_id: UUID) -> list[PendingApproval]:
        """Every current pending step the person may act on, oldest first."""
        stmt = (
            select(ApprovalRequestStepModel, ApprovalRequestModel)
            .join(ApprovalRequestModel, ApprovalRequestStepModel.request_id == ApprovalRequestModel.id)
            .where(*self._inbox_criteria(person_id))
            .order_by(
                ApprovalRequestStepModel.activated_at,
                ApprovalRequestModel.created_at,
            )
        )

        return [
            PendingApproval(
                request_id=request.id,
                step_id=step.id,
                company_id=request.company_id,
                activity_type=request.activity_type,
                activity_id=request.activity_id,
                activity_title=request.activity_title,
                requestor_id=request.requestor_id,
                step_name=step.name,
                step_order=step.step_order,
                total_steps=request.total_steps,
                requested_at=request.created_at,
                activated_at=step.activated_at,
            )
            for step, request in self.session.execute(stmt).all()
        ]

    def get_pending_approvals_count(self, person_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(ApprovalRequestStepModel)
            .join(ApprovalRequestModel, ApprovalRequestStepModel.request_id == ApprovalRequestModel.id)
            .where(*self._inbox_criteria(person_id))
        )
        return self.session.execute(stmt).scalar_one()

    def _inbox_criteria(self, person_id: UUID) -> list:
        if self._org is None:
            raise ValueError("An org directory is required for approver inbox queries")

        per_company = []
        for company_id in self._org.get_companies(person_id):
            roles = self._org.get_roles(company_id, person_id)
            assigned = [ApprovalRequestStepModel.assignee_id == person_id]
            if roles:
                assigned.append(and_(
                    ApprovalRequestStepModel.assignee_id.is_(None),
                    ApprovalRequestStepModel.assignee_role.in_(roles),
                ))
            per_company.append(and_(
                ApprovalRequestModel.company_id == company_id,
                or_(*assigned),
            ))

        return [
            ApprovalRequestModel.status == RequestStatus.PENDING.value,
            ApprovalRequestStepModel.status == StepStatus.PENDING.value,
            ApprovalRequestStepModel.step_order == ApprovalRequestModel.current_step_index + 1,
            or_(*per_company) if per_company else false(),
        ]

    # =========================================================================
    # Escalation
    # =========================================================================

    def find_steps_due_for_auto_approval(self, as_of: datetime) -> list[DueAutoApproval]:
        """Current pending steps whose auto-approval deadline is at or before ``as_of``.

        The deadline is ``activated_at + auto_approve_after_days``; it is
        computed here rather than in SQL to stay dialect-neutral.
        """
        rows = self.session.execute(
            select(
                ApprovalRequestStepModel.request_id,
                ApprovalRequestStepModel.id,
                ApprovalRequestStepModel.auto_approve_after_days,
                ApprovalRequestStepModel.activated_at,
            )
            .join(ApprovalRequestModel, ApprovalRequestStepModel.request_id == ApprovalRequestModel.id)
            .where(
                ApprovalRequestModel.status == RequestStatus.PENDING.value,
                ApprovalRequestStepModel.status == StepStatus.PENDING.value,
                ApprovalRequestStepModel.step_order == ApprovalRequestModel.current_step_index + 1,
                ApprovalRequestStepModel.auto_approve_after_days.is_not(None),
                ApprovalRequestStepModel.activated_at.is_not(None),
            )
        ).all()

        due = []
        for request_id, step_id, days, activated_at in rows:
            deadline = auto_approval_deadline(activated_at, days)
            if deadline <= as_of:
                due.append(DueAutoApproval(
                    request_id=request_id,
                    step_id=step_id,
                    auto_approve_after_days=days,
                    deadline=deadline,
                ))
        due.sort(key=lambda d: (d.deadline, str(d.step_id)))
        return due
