"""
Approval workflow domain types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the approval workflow engine: the request and step
state machines, the approver specification variant, template/step
definitions, request snapshots, and the pure progression helpers that move
the current-step pointer.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or ``selectors/``.

Invariants enforced
-------------------
* Request lifecycle: ``pending -> {approved, rejected, cancelled}``.
  Terminal statuses have no outgoing edges.
* Step lifecycle: ``pending -> {approved, rejected, skipped}``.
* Approver specification is a closed variant with three cases; after
  snapshotting, a step carries a concrete ``ResolvedAssignee`` and the
  request engine never branches on approver kind again.
* The current step is an explicit index into the frozen step tuple.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from approval_kernel.exceptions import (
    InvalidStepDefinitionError,
    InvalidTransitionError,
    StepOrderMismatchError,
)


# =========================================================================
# Lifecycles
# =========================================================================


class RequestStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Approval request step lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
        StepStatus.SKIPPED,
    }),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})


def check_request_transition(current: RequestStatus, new: RequestStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is an edge."""
    if new not in REQUEST_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError("ApprovalRequest", current.value, new.value)


def check_step_transition(current: StepStatus, new: StepStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is an edge."""
    if new not in STEP_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError("ApprovalRequestStep", current.value, new.value)


# =========================================================================
# Approver specification (closed variant)
# =========================================================================


class ApproverKind(str, Enum):
    ROLE = "role"
    SPECIFIC_PERSON = "specific_person"
    REQUESTOR_MANAGER = "requestor_manager"


@dataclass(frozen=True)
class RoleApprover:
    """Any holder of ``role`` in the request's company."""

    role: str

    @property
    def kind(self) -> ApproverKind:
        return ApproverKind.ROLE


@dataclass(frozen=True)
class PersonApprover:
    """One specific person."""

    person_id: UUID

    @property
    def kind(self) -> ApproverKind:
        return ApproverKind.SPECIFIC_PERSON


@dataclass(frozen=True)
class ManagerApprover:
    """The requestor's manager in the org hierarchy."""

    @property
    def kind(self) -> ApproverKind:
        return ApproverKind.REQUESTOR_MANAGER


ApproverSpec = RoleApprover | PersonApprover | ManagerApprover


def approver_from_fields(
    kind: ApproverKind | str,
    role: str | None = None,
    person_id: UUID | None = None,
    step_name: str = "",
) -> ApproverSpec:
    """Build the approver variant from its flat (persisted) representation.

    Raises:
        InvalidStepDefinitionError: unknown kind, or the field the kind
            needs is missing.
    """
    try:
        kind = ApproverKind(kind)
    except ValueError:
        raise InvalidStepDefinitionError(
            step_name, f"unknown approver kind {kind!r}",
        ) from None

    if kind == ApproverKind.ROLE:
        if not role or not role.strip():
            raise InvalidStepDefinitionError(step_name, "role approver requires a role")
        return RoleApprover(role=role.strip())
    if kind == ApproverKind.SPECIFIC_PERSON:
        if person_id is None:
            raise InvalidStepDefinitionError(
                step_name, "specific person approver requires a person id",
            )
        return PersonApprover(person_id=person_id)
    return ManagerApprover()


def approver_to_fields(approver: ApproverSpec) -> dict[str, Any]:
    """Flatten the approver variant into persisted column values."""
    return {
        "approver_kind": approver.kind.value,
        "approver_role": approver.role if isinstance(approver, RoleApprover) else None,
        "approver_person_id": (
            approver.person_id if isinstance(approver, PersonApprover) else None
        ),
    }


# =========================================================================
# Template definitions
# =========================================================================


@dataclass(frozen=True)
class StepDefinition:
    """One ordered step of a workflow template."""

    step_id: UUID
    template_id: UUID
    step_order: int
    name: str
    approver: ApproverSpec
    is_required: bool = True
    can_skip: bool = False
    auto_approve_after_days: int | None = None
    condition: str | None = None

    @property
    def skippable(self) -> bool:
        """Whether an unresolvable approver skips the step instead of failing."""
        return self.can_skip and not self.is_required


@dataclass(frozen=True)
class WorkflowTemplate:
    """A named, ordered workflow definition for (company, activity type)."""

    template_id: UUID
    company_id: UUID
    activity_type: str
    name: str
    description: str | None = None
    is_active: bool = True
    is_default: bool = False
    steps: tuple[StepDefinition, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def step_count(self) -> int:
        return len(self.steps)


# =========================================================================
# Activities and resolution
# =========================================================================


@dataclass(frozen=True)
class ApprovableActivity:
    """What a domain module hands the engine to start a workflow.

    ``attributes`` is the bag condition expressions are evaluated against;
    it is snapshotted onto the request at start time.
    """

    company_id: UUID
    activity_type: str
    activity_id: UUID
    title: str
    requestor_id: UUID
    attributes: Mapping[str, Any] = field(default_factory=dict)


def snapshot_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    """JSON-storable copy of an attribute bag.

    Decimals, UUIDs and enums become strings, dates and datetimes ISO 8601
    strings; mappings and sequences are copied recursively.  Conditions are
    evaluated against the live bag before this copy is taken.
    """
    return {str(key): _snapshot_value(value) for key, value in attributes.items()}


def _snapshot_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return _snapshot_value(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return snapshot_attributes(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_snapshot_value(v) for v in value]
    return str(value)


@dataclass(frozen=True)
class ResolvedAssignee:
    """Concrete assignee of a snapshotted step.

    ``person_id`` set: only that person may act.  Only ``role`` set: any
    holder of the role in the request's company may act, first action wins.
    """

    person_id: UUID | None = None
    role: str | None = None

    def includes(self, actor_id: UUID, actor_roles: Sequence[str] = ()) -> bool:
        if self.person_id is not None:
            return self.person_id == actor_id
        if self.role is not None:
            return self.role in actor_roles
        return False


@dataclass(frozen=True)
class MaterializedStep:
    """A step definition turned into a request-step snapshot at start time."""

    step_order: int
    name: str
    approver: ApproverSpec
    status: StepStatus
    assignee: ResolvedAssignee | None = None
    is_required: bool = True
    can_skip: bool = False
    auto_approve_after_days: int | None = None
    condition: str | None = None
    skip_reason: str | None = None


# =========================================================================
# Request snapshots
# =========================================================================


@dataclass(frozen=True)
class ApprovalRequestStep:
    """Immutable-shape, mutable-status snapshot of a step definition."""

    step_id: UUID
    request_id: UUID
    step_order: int
    name: str
    approver: ApproverSpec
    assignee_id: UUID | None
    assignee_role: str | None
    status: StepStatus
    is_required: bool = True
    can_skip: bool = False
    auto_approve_after_days: int | None = None
    condition: str | None = None
    acted_by: UUID | None = None
    acted_at: datetime | None = None
    comments: str | None = None
    activated_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def assignee(self) -> ResolvedAssignee:
        return ResolvedAssignee(person_id=self.assignee_id, role=self.assignee_role)


@dataclass(frozen=True)
class ApprovalRequest:
    """Read projection of one approval request with its frozen step list."""

    request_id: UUID
    company_id: UUID
    template_id: UUID
    template_name: str
    activity_type: str
    activity_id: UUID
    activity_title: str
    requestor_id: UUID
    current_step_index: int
    total_steps: int
    status: RequestStatus
    created_at: datetime | None = None
    completed_at: datetime | None = None
    activity_attributes: Mapping[str, Any] = field(default_factory=dict)
    steps: tuple[ApprovalRequestStep, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    @property
    def current_step(self) -> ApprovalRequestStep | None:
        """The step awaiting action, or None once the request is terminal."""
        if self.status != RequestStatus.PENDING:
            return None
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None


@dataclass(frozen=True)
class PendingApproval:
    """One actionable step in an approver's inbox."""

    request_id: UUID
    step_id: UUID
    company_id: UUID
    activity_type: str
    activity_id: UUID
    activity_title: str
    requestor_id: UUID
    step_name: str
    step_order: int
    total_steps: int
    requested_at: datetime | None = None
    activated_at: datetime | None = None


@dataclass(frozen=True)
class DueAutoApproval:
    """A current step whose auto-approval deadline has passed."""

    request_id: UUID
    step_id: UUID
    auto_approve_after_days: int
    deadline: datetime


# =========================================================================
# Pure progression helpers
# =========================================================================


def auto_approval_deadline(
    activated_at: datetime | None,
    auto_approve_after_days: int | None,
) -> datetime | None:
    """When an unactioned step escalates, or None if it never does."""
    if activated_at is None or auto_approve_after_days is None:
        return None
    return activated_at + timedelta(days=auto_approve_after_days)


def first_actionable_index(statuses: Sequence[StepStatus]) -> int | None:
    """Index of the first pending step, or None if every step is skipped."""
    return next_actionable_index(statuses, -1)


def next_actionable_index(statuses: Sequence[StepStatus], after: int) -> int | None:
    """Index of the first pending step strictly after ``after``."""
    for index in range(after + 1, len(statuses)):
        if statuses[index] == StepStatus.PENDING:
            return index
    return None


def compute_step_reordering(
    template_id: UUID,
    current_step_ids: Sequence[UUID],
    ordered_step_ids: Sequence[UUID],
) -> dict[UUID, int]:
    """Map each step id to its new contiguous order (1..N).

    Raises:
        StepOrderMismatchError: ``ordered_step_ids`` is not exactly a
            permutation of ``current_step_ids``.
    """
    counts = Counter(ordered_step_ids)
    duplicated = sorted(str(s) for s, n in counts.items() if n > 1)
    current = set(current_step_ids)
    missing = sorted(str(s) for s in current - counts.keys())
    unexpected = sorted(str(s) for s in counts.keys() - current)

    if duplicated or missing or unexpected:
        raise StepOrderMismatchError(str(template_id), missing, unexpected, duplicated)

    return {step_id: position for position, step_id in enumerate(ordered_step_ids, start=1)}
