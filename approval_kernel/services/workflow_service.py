"""
approval_kernel.services.workflow_service -- Approval request engine.

Responsibility:
    The request state machine.  Starts workflows from a template snapshot,
    approves, rejects, cancels and auto-approves requests, and dispatches
    exactly one completion callback per terminal transition.

Architecture position:
    Kernel > Services.  May import from domain/, models/, selectors/, db/.
    Unlike the flush-only services this one owns its transactions (it takes
    a session factory): each operation commits its state change before the
    domain handler is called, so a handler failure can never roll back a
    workflow decision.

Invariants enforced:
    - At most one pending request per (activity type, activity id):
      service check plus partial unique index.
    - Request lifecycle ``pending -> {approved, rejected, cancelled}``;
      step lifecycle ``pending -> {approved, rejected, skipped}``.
    - Step transitions are a single conditional UPDATE on
      (step id, status = pending); request transitions are conditional on
      (request id, status = pending, current step index).  A caller that
      loses either race gets StepAlreadyActionedError and nothing is
      written.
    - Rejection touches only the acting step; later steps stay pending.
    - Handlers are called after commit, exactly once per terminal
      transition, and their failure never reverts the transition.

Failure modes:
    - Configuration errors (no handler, no template, empty template,
      unresolvable approver) before any state exists.
    - State errors (not found, not pending, unauthorized, not requestor,
      duplicate pending request, missing rejection reason, auto-approval
      not yet due) with state unchanged.
    - StepAlreadyActionedError when a concurrent caller won.
    - HandlerInvocationError after a committed terminal transition; it
      carries the authoritative request projection.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.org import OrgDirectory
from approval_kernel.domain.workflow import (
    ApprovableActivity,
    ApprovalRequest,
    DueAutoApproval,
    PendingApproval,
    RequestStatus,
    StepStatus,
    approver_to_fields,
    auto_approval_deadline,
    check_request_transition,
    check_step_transition,
    first_actionable_index,
    next_actionable_index,
    snapshot_attributes,
)
from approval_kernel.exceptions import (
    DuplicatePendingRequestError,
    EmptyTemplateError,
    HandlerInvocationError,
    NoActiveTemplateError,
    NotRequestorError,
    RejectionReasonRequiredError,
    RequestNotFoundError,
    RequestNotPendingError,
    StepAlreadyActionedError,
    StepNotDueError,
    UnauthorizedApproverError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.request import ApprovalRequestModel, ApprovalRequestStepModel
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.handler_registry import HandlerRegistry, HandlerResult
from approval_kernel.services.step_resolver import StepResolver
from approval_kernel.services.template_service import TemplateService

logger = get_logger("services.workflow")

SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

_requests = ApprovalRequestModel.__table__
_steps = ApprovalRequestStepModel.__table__


@dataclass(frozen=True)
class _Transition:
    """What a committed state change requires of handler dispatch."""

    request_id: UUID
    actor_id: UUID
    request_status: RequestStatus
    reason: str | None = None


class ApprovalWorkflowService:
    """Starts and advances approval requests.

    Contract:
        Every mutating operation returns a fresh ``ApprovalRequest``
        projection read after commit, or raises a typed
        ``ApprovalWorkflowError``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handler_registry: HandlerRegistry,
        org_directory: OrgDirectory,
        clock: Clock | None = None,
        system_actor_id: UUID = SYSTEM_ACTOR_ID,
        resolver: StepResolver | None = None,
    ):
        self._session_factory = session_factory
        self._handlers = handler_registry
        self._org = org_directory
        self._clock = clock or SystemClock()
        self._system_actor_id = system_actor_id
        self._resolver = resolver or StepResolver(org_directory)

    @property
    def system_actor_id(self) -> UUID:
        return self._system_actor_id

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def start_workflow(self, activity: ApprovableActivity) -> ApprovalRequest:
        """Create a request for ``activity`` from its active template.

        A template whose steps all resolve to skipped yields a request that
        is approved on creation; ``on_approved`` is called once.
        """
        with LogContext.bind(
            company_id=str(activity.company_id),
            activity_type=activity.activity_type,
            actor_id=str(activity.requestor_id),
        ):
            self._handlers.require_handler(activity.activity_type)

            with self._transaction() as session:
                transition = self._create_request(session, activity)

            with LogContext.bind(request_id=str(transition.request_id)):
                return self._complete(transition, "approval_request_started")

    def approve(
        self,
        request_id: UUID,
        approver_id: UUID,
        comments: str | None = None,
    ) -> ApprovalRequest:
        """Approve the current step and advance, or complete the request."""
        with LogContext.bind(request_id=str(request_id), actor_id=str(approver_id)):
            with self._transaction() as session:
                transition = self._decide(
                    session, request_id, approver_id, StepStatus.APPROVED, comments,
                )
            return self._complete(transition, "approval_step_approved")

    def reject(
        self,
        request_id: UUID,
        approver_id: UUID,
        reason: str,
    ) -> ApprovalRequest:
        """Reject the current step; the request is rejected immediately."""
        if not reason or not reason.strip():
            raise RejectionReasonRequiredError(str(request_id))

        with LogContext.bind(request_id=str(request_id), actor_id=str(approver_id)):
            with self._transaction() as session:
                transition = self._decide(
                    session, request_id, approver_id, StepStatus.REJECTED, reason.strip(),
                )
            return self._complete(transition, "approval_step_rejected")

    def cancel(
        self,
        request_id: UUID,
        requestor_id: UUID,
        reason: str | None = None,
    ) -> ApprovalRequest:
        """Cancel a pending request.  Only its requestor may do this."""
        with LogContext.bind(request_id=str(request_id), actor_id=str(requestor_id)):
            with self._transaction() as session:
                request = self._load_request(session, request_id)
                self._require_pending(request)
                if request.requestor_id != requestor_id:
                    raise NotRequestorError(str(request_id), str(requestor_id))

                check_request_transition(RequestStatus(request.status), RequestStatus.CANCELLED)
                self._advance_request(
                    session,
                    request,
                    status=RequestStatus.CANCELLED.value,
                    completed_at=self._clock.now(),
                )
                transition = _Transition(
                    request_id=request.id,
                    actor_id=requestor_id,
                    request_status=RequestStatus.CANCELLED,
                    reason=reason,
                )
            return self._complete(transition, "approval_request_cancelled")

    def auto_approve_step(self, request_id: UUID, step_id: UUID) -> ApprovalRequest:
        """Approve ``step_id`` as the system actor after its deadline.

        Runs the same compare-and-set path as ``approve``.  If the request
        has moved past ``step_id`` in the meantime the call loses the race
        with StepAlreadyActionedError.  A step with no auto-approval period,
        or whose deadline is still ahead, raises StepNotDueError.
        """
        with LogContext.bind(request_id=str(request_id), actor_id=str(self._system_actor_id)):
            with self._transaction() as session:
                transition = self._decide(
                    session,
                    request_id,
                    self._system_actor_id,
                    StepStatus.APPROVED,
                    comments=None,
                    expected_step_id=step_id,
                )
            return self._complete(transition, "approval_step_auto_approved")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_request_status(self, request_id: UUID) -> ApprovalRequest:
        with self._transaction() as session:
            return ApprovalSelector(session).get_request_status(request_id)

    def get_activity_approval_status(
        self,
        activity_type: str,
        activity_id: UUID,
    ) -> ApprovalRequest | None:
        with self._transaction() as session:
            return ApprovalSelector(session).get_activity_approval_status(
                activity_type, activity_id,
            )

    def get_pending_approvals_for_user(self, person_id: UUID) -> list[PendingApproval]:
        with self._transaction() as session:
            return ApprovalSelector(session, self._org).get_pending_approvals_for_user(person_id)

    def get_pending_approvals_count(self, person_id: UUID) -> int:
        with self._transaction() as session:
            return ApprovalSelector(session, self._org).get_pending_approvals_count(person_id)

    def get_requests_by_requestor(
        self,
        requestor_id: UUID,
        status: RequestStatus | str | None = None,
    ) -> list[ApprovalRequest]:
        with self._transaction() as session:
            return ApprovalSelector(session).get_requests_by_requestor(requestor_id, status)

    def get_requests_by_company(
        self,
        company_id: UUID,
        status: RequestStatus | str | None = None,
        activity_type: str | None = None,
    ) -> list[ApprovalRequest]:
        with self._transaction() as session:
            return ApprovalSelector(session).get_requests_by_company(
                company_id, status, activity_type,
            )

    def find_steps_due_for_auto_approval(self) -> list[DueAutoApproval]:
        with self._transaction() as session:
            return ApprovalSelector(session).find_steps_due_for_auto_approval(self._clock.now())

    # -------------------------------------------------------------------------
    # Internal: state changes
    # -------------------------------------------------------------------------

    def _create_request(self, session: Session, activity: ApprovableActivity) -> _Transition:
        existing_id = session.execute(
            select(ApprovalRequestModel.id).where(
                ApprovalRequestModel.activity_type == activity.activity_type,
                ApprovalRequestModel.activity_id == activity.activity_id,
                ApprovalRequestModel.status == RequestStatus.PENDING.value,
            )
        ).scalar_one_or_none()
        if existing_id is not None:
            raise DuplicatePendingRequestError(
                activity.activity_type, str(activity.activity_id), str(existing_id),
            )

        template = TemplateService(session, self._clock).get_active_template(
            activity.company_id, activity.activity_type,
        )
        if template is None:
            raise NoActiveTemplateError(str(activity.company_id), activity.activity_type)
        if not template.steps:
            raise EmptyTemplateError(str(template.template_id), template.name)

        materialized = [self._resolver.materialize(s, activity) for s in template.steps]
        first_index = first_actionable_index([m.status for m in materialized])
        now = self._clock.now()

        if first_index is None:
            status, current_index, completed_at = RequestStatus.APPROVED, len(materialized), now
        else:
            status, current_index, completed_at = RequestStatus.PENDING, first_index, None

        request = ApprovalRequestModel(
            company_id=activity.company_id,
            template_id=template.template_id,
            template_name=template.name,
            activity_type=activity.activity_type,
            activity_id=activity.activity_id,
            activity_title=activity.title,
            activity_attributes=snapshot_attributes(activity.attributes),
            requestor_id=activity.requestor_id,
            current_step_index=current_index,
            total_steps=len(materialized),
            status=status.value,
            created_at=now,
            completed_at=completed_at,
        )
        for index, step in enumerate(materialized):
            skipped = step.status == StepStatus.SKIPPED
            request.steps.append(ApprovalRequestStepModel(
                step_order=index + 1,
                name=step.name,
                assignee_id=step.assignee.person_id if step.assignee else None,
                assignee_role=step.assignee.role if step.assignee else None,
                status=step.status.value,
                is_required=step.is_required,
                can_skip=step.can_skip,
                auto_approve_after_days=step.auto_approve_after_days,
                condition=step.condition,
                acted_at=now if skipped else None,
                comments=step.skip_reason if skipped else None,
                activated_at=now if index == first_index else None,
                created_at=now,
                **approver_to_fields(step.approver),
            ))

        session.add(request)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DuplicatePendingRequestError(
                activity.activity_type, str(activity.activity_id),
            ) from exc

        return _Transition(
            request_id=request.id,
            actor_id=self._system_actor_id,
            request_status=status,
        )

    def _decide(
        self,
        session: Session,
        request_id: UUID,
        actor_id: UUID,
        decision: StepStatus,
        comments: str | None,
        expected_step_id: UUID | None = None,
    ) -> _Transition:
        """Apply an approve/reject decision to the current step."""
        request = self._load_request(session, request_id)
        self._require_pending(request)

        steps = sorted(request.steps, key=lambda s: s.step_order)
        index = request.current_step_index
        step = steps[index]

        if expected_step_id is not None:
            if step.id != expected_step_id:
                raise StepAlreadyActionedError(str(request_id), str(expected_step_id))
            deadline = auto_approval_deadline(step.activated_at, step.auto_approve_after_days)
            if deadline is None or deadline > self._clock.now():
                raise StepNotDueError(
                    str(request_id), str(step.id),
                    deadline.isoformat() if deadline else None,
                )
            comments = (
                f"Auto-approved after {step.auto_approve_after_days} day(s) without action"
            )
        else:
            roles = self._org.get_roles(request.company_id, actor_id)
            assignee = step.to_dto().assignee
            if not assignee.includes(actor_id, roles):
                raise UnauthorizedApproverError(str(request_id), step.step_order, str(actor_id))

        check_step_transition(StepStatus(step.status), decision)
        now = self._clock.now()

        claimed = session.execute(
            update(_steps)
            .where(
                _steps.c.id == step.id,
                _steps.c.status == StepStatus.PENDING.value,
            )
            .values(status=decision.value, acted_by=actor_id, acted_at=now, comments=comments)
        )
        if claimed.rowcount != 1:
            raise StepAlreadyActionedError(str(request_id), str(step.id))

        if decision == StepStatus.REJECTED:
            request_status = RequestStatus.REJECTED
            self._advance_request(
                session, request, status=request_status.value, completed_at=now,
            )
        else:
            statuses = [StepStatus(s.status) for s in steps]
            statuses[index] = decision
            next_index = next_actionable_index(statuses, index)
            if next_index is None:
                request_status = RequestStatus.APPROVED
                self._advance_request(
                    session, request, status=request_status.value, completed_at=now,
                )
            else:
                request_status = RequestStatus.PENDING
                self._advance_request(session, request, current_step_index=next_index)
                session.execute(
                    update(_steps)
                    .where(_steps.c.id == steps[next_index].id)
                    .values(activated_at=now)
                )

        if request_status != RequestStatus.PENDING:
            check_request_transition(RequestStatus.PENDING, request_status)

        logger.info(
            "approval_step_decided",
            extra={
                "step_id": str(step.id),
                "step_order": step.step_order,
                "decision": decision.value,
                "request_status": request_status.value,
                "auto": expected_step_id is not None,
            },
        )
        return _Transition(
            request_id=request.id,
            actor_id=actor_id,
            request_status=request_status,
            reason=comments if decision == StepStatus.REJECTED else None,
        )

    def _advance_request(self, session: Session, request: ApprovalRequestModel, **values) -> None:
        """Conditional UPDATE of the request row on its loaded position."""
        result = session.execute(
            update(_requests)
            .where(
                _requests.c.id == request.id,
                _requests.c.status == RequestStatus.PENDING.value,
                _requests.c.current_step_index == request.current_step_index,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            current = sorted(request.steps, key=lambda s: s.step_order)[request.current_step_index]
            raise StepAlreadyActionedError(str(request.id), str(current.id))

    # -------------------------------------------------------------------------
    # Internal: dispatch
    # -------------------------------------------------------------------------

    def _complete(self, transition: _Transition, event: str) -> ApprovalRequest:
        """Log the committed transition, read it back, dispatch if terminal."""
        request = self.get_request_status(transition.request_id)
        logger.info(
            event,
            extra={
                "request_status": request.status.value,
                "current_step_index": request.current_step_index,
                "total_steps": request.total_steps,
            },
        )

        if transition.request_status == RequestStatus.APPROVED:
            self._dispatch(request, "on_approved", transition.actor_id)
        elif transition.request_status == RequestStatus.REJECTED:
            self._dispatch(request, "on_rejected", transition.actor_id, transition.reason or "")
        elif transition.request_status == RequestStatus.CANCELLED:
            self._dispatch(request, "on_cancelled", transition.actor_id, transition.reason)
        return request

    def _dispatch(
        self,
        request: ApprovalRequest,
        callback: str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> None:
        """Call one handler callback for a committed terminal transition.

        Raises:
            HandlerInvocationError: the handler is missing, raised, or
                reported failure.  The transition stays committed.
        """
        log_extra = {
            "activity_id": str(request.activity_id),
            "callback": callback,
            "request_status": request.status.value,
        }
        handler = self._handlers.get_handler(request.activity_type)
        if handler is None:
            logger.error("approval_handler_missing", extra=log_extra)
            raise HandlerInvocationError(
                request.activity_type, str(request.activity_id), callback,
                "no handler registered", request=request,
            )

        try:
            if callback == "on_approved":
                result = handler.on_approved(request.activity_id, actor_id)
            elif callback == "on_rejected":
                result = handler.on_rejected(request.activity_id, actor_id, reason or "")
            else:
                result = handler.on_cancelled(request.activity_id, actor_id, reason)
        except Exception as exc:
            error = HandlerInvocationError(
                request.activity_type, str(request.activity_id), callback,
                str(exc) or type(exc).__name__, request=request,
            )
            logger.error(
                "approval_handler_failed",
                extra={**log_extra, "code": error.code, "reason": error.reason},
                exc_info=True,
            )
            raise error from exc

        if isinstance(result, HandlerResult) and not result.success:
            error = HandlerInvocationError(
                request.activity_type, str(request.activity_id), callback,
                result.message or "handler reported failure", request=request,
            )
            logger.error(
                "approval_handler_failed",
                extra={**log_extra, "code": error.code, "reason": error.reason},
            )
            raise error

        logger.info("approval_handler_invoked", extra=log_extra)

    # -------------------------------------------------------------------------
    # Internal: sessions
    # -------------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load_request(self, session: Session, request_id: UUID) -> ApprovalRequestModel:
        request = session.get(ApprovalRequestModel, request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return request

    @staticmethod
    def _require_pending(request: ApprovalRequestModel) -> None:
        if request.status != RequestStatus.PENDING.value:
            raise RequestNotPendingError(str(request.id), request.status)
