"""
approval_kernel.services.template_service -- Workflow template store.

Responsibility:
    Owns workflow *definitions*: named, ordered step lists per
    (company, activity type), with one designatable default per scope.
    Administrative CRUD plus the default switch, step reordering and the
    shipped default-template seeding.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    Flush-only (``BaseService``): the caller owns the transaction.

Invariants enforced:
    - At most one default template per (company, activity type).  Setting
      a new default clears the previous one in the same flush; the partial
      unique index backs this at the database level.
    - Step orders are contiguous 1..N after every add, delete and reorder.
    - Step definitions are validated before persisting: complete approver
      specification, restricted condition grammar, positive auto-approve
      days, and never both required and skippable.
    - Template and step edits never touch approval requests; requests own
      frozen step snapshots.

Failure modes:
    - TemplateNotFoundError / StepNotFoundError for unknown ids.
    - StepOrderMismatchError when a reorder list is not exactly the
      template's current step ids.
    - DefaultTemplateDeletionError when deleting the active default.
    - InvalidStepDefinitionError / InvalidConditionError on bad steps.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.conditions import ensure_valid_condition
from approval_kernel.domain.workflow import (
    ApproverSpec,
    RoleApprover,
    StepDefinition,
    WorkflowTemplate,
    approver_from_fields,
    approver_to_fields,
    compute_step_reordering,
)
from approval_kernel.exceptions import (
    DefaultTemplateDeletionError,
    InvalidStepDefinitionError,
    StepNotFoundError,
    TemplateNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.template import WorkflowStepModel, WorkflowTemplateModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.template")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def validate_step_fields(
    name: str,
    approver: ApproverSpec,
    is_required: bool,
    can_skip: bool,
    auto_approve_after_days: int | None,
    condition: str | None,
) -> str | None:
    """Validate a step definition; return the normalised condition.

    Raises:
        InvalidStepDefinitionError: inconsistent or incomplete fields.
        InvalidConditionError: condition outside the restricted grammar.
    """
    if not name or not name.strip():
        raise InvalidStepDefinitionError(name or "", "step name is required")
    if isinstance(approver, RoleApprover) and not approver.role.strip():
        raise InvalidStepDefinitionError(name, "role approver requires a role")
    if is_required and can_skip:
        raise InvalidStepDefinitionError(
            name, "a step cannot be both required and skippable",
        )
    if auto_approve_after_days is not None and (
        isinstance(auto_approve_after_days, bool) or auto_approve_after_days <= 0
    ):
        raise InvalidStepDefinitionError(
            name,
            f"auto_approve_after_days must be a positive integer, "
            f"got {auto_approve_after_days!r}",
        )
    return ensure_valid_condition(condition)


class TemplateService(BaseService[WorkflowTemplateModel]):
    """Administrative operations on workflow templates and their steps."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_active_template(
        self,
        company_id: UUID,
        activity_type: str,
    ) -> WorkflowTemplate | None:
        """The active default template for (company, activity type), if any."""
        model = self.session.execute(
            select(WorkflowTemplateModel).where(
                WorkflowTemplateModel.company_id == company_id,
                WorkflowTemplateModel.activity_type == activity_type,
                WorkflowTemplateModel.is_default == True,  # noqa: E712
                WorkflowTemplateModel.is_active == True,  # noqa: E712
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def get_template(self, template_id: UUID) -> WorkflowTemplate:
        return self._load_template(template_id).to_dto()

    def list_templates(
        self,
        company_id: UUID,
        activity_type: str | None = None,
    ) -> list[WorkflowTemplate]:
        """Templates of a company, optionally for one activity type."""
        stmt = select(WorkflowTemplateModel).where(
            WorkflowTemplateModel.company_id == company_id,
        )
        if activity_type is not None:
            stmt = stmt.where(WorkflowTemplateModel.activity_type == activity_type)
        stmt = stmt.order_by(
            WorkflowTemplateModel.activity_type,
            WorkflowTemplateModel.is_default.desc(),
            WorkflowTemplateModel.name,
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Template commands
    # -------------------------------------------------------------------------

    def create_template(
        self,
        company_id: UUID,
        activity_type: str,
        name: str,
        description: str | None = None,
        is_active: bool = True,
        is_default: bool = False,
    ) -> WorkflowTemplate:
        """Create an empty template.  ``is_default=True`` takes over the default."""
        if not activity_type or not activity_type.strip():
            raise ValueError("activity_type is required")
        if not name or not name.strip():
            raise ValueError("template name is required")

        now = self._clock.now()
        model = WorkflowTemplateModel(
            company_id=company_id,
            activity_type=activity_type.strip(),
            name=name.strip(),
            description=description,
            is_active=is_active,
            is_default=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        if is_default:
            self._switch_default(model)

        logger.info(
            "approval_template_created",
            extra={
                "template_id": str(model.id),
                "company_id": str(company_id),
                "activity_type": model.activity_type,
                "is_default": model.is_default,
            },
        )
        return model.to_dto()

    def update_template(
        self,
        template_id: UUID,
        *,
        name: str | None = None,
        description: Any = UNSET,
        is_active: bool | None = None,
        is_default: bool | None = None,
    ) -> WorkflowTemplate:
        """Update template attributes.  Only given fields change."""
        model = self._load_template(template_id)

        if name is not None:
            if not name.strip():
                raise ValueError("template name is required")
            model.name = name.strip()
        if description is not UNSET:
            model.description = description
        if is_active is not None:
            model.is_active = is_active
        model.updated_at = self._clock.now()
        self.session.flush()

        if is_default is True and not model.is_default:
            self._switch_default(model)
        elif is_default is False and model.is_default:
            model.is_default = False
            self.session.flush()

        logger.info(
            "approval_template_updated",
            extra={
                "template_id": str(model.id),
                "is_active": model.is_active,
                "is_default": model.is_default,
            },
        )
        return model.to_dto()

    def set_as_default(self, template_id: UUID) -> WorkflowTemplate:
        """Make this the default for its (company, activity type)."""
        model = self._load_template(template_id)
        if not model.is_default:
            self._switch_default(model)
        return model.to_dto()

    def delete_template(self, template_id: UUID) -> None:
        """Delete a template and its steps.

        Requests created from it keep their own snapshots and are untouched.
        """
        model = self._load_template(template_id)
        if model.is_default and model.is_active:
            raise DefaultTemplateDeletionError(str(template_id), model.activity_type)

        self.session.delete(model)
        self.session.flush()
        logger.info(
            "approval_template_deleted",
            extra={"template_id": str(template_id), "activity_type": model.activity_type},
        )

    # -------------------------------------------------------------------------
    # Step commands
    # -------------------------------------------------------------------------

    def add_step(
        self,
        template_id: UUID,
        name: str,
        approver: ApproverSpec,
        *,
        is_required: bool = True,
        can_skip: bool = False,
        auto_approve_after_days: int | None = None,
        condition: str | None = None,
    ) -> StepDefinition:
        """Append a step after the template's last step."""
        model = self._load_template(template_id)
        condition = validate_step_fields(
            name, approver, is_required, can_skip, auto_approve_after_days, condition,
        )

        max_order = self.session.execute(
            select(func.max(WorkflowStepModel.step_order)).where(
                WorkflowStepModel.template_id == template_id,
            )
        ).scalar()

        step = WorkflowStepModel(
            template_id=template_id,
            step_order=(max_order or 0) + 1,
            name=name.strip(),
            is_required=is_required,
            can_skip=can_skip,
            auto_approve_after_days=auto_approve_after_days,
            condition=condition,
            **approver_to_fields(approver),
        )
        model.steps.append(step)
        model.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "approval_step_added",
            extra={
                "template_id": str(template_id),
                "step_id": str(step.id),
                "step_order": step.step_order,
                "approver_kind": step.approver_kind,
            },
        )
        return step.to_dto()

    def update_step(
        self,
        step_id: UUID,
        *,
        name: str | None = None,
        approver: ApproverSpec | None = None,
        is_required: bool | None = None,
        can_skip: bool | None = None,
        auto_approve_after_days: Any = UNSET,
        condition: Any = UNSET,
    ) -> StepDefinition:
        """Update a step definition.  Order changes go through ``reorder_steps``."""
        step = self._load_step(step_id)
        current = step.to_dto()

        new_name = name if name is not None else current.name
        new_approver = approver if approver is not None else current.approver
        new_required = is_required if is_required is not None else current.is_required
        new_can_skip = can_skip if can_skip is not None else current.can_skip
        new_days = (
            current.auto_approve_after_days
            if auto_approve_after_days is UNSET else auto_approve_after_days
        )
        new_condition = current.condition if condition is UNSET else condition

        new_condition = validate_step_fields(
            new_name, new_approver, new_required, new_can_skip, new_days, new_condition,
        )

        step.name = new_name.strip()
        for column, value in approver_to_fields(new_approver).items():
            setattr(step, column, value)
        step.is_required = new_required
        step.can_skip = new_can_skip
        step.auto_approve_after_days = new_days
        step.condition = new_condition
        step.template.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "approval_step_updated",
            extra={"template_id": str(step.template_id), "step_id": str(step.id)},
        )
        return step.to_dto()

    def delete_step(self, step_id: UUID) -> None:
        """Delete a step and close the gap in the remaining orders."""
        step = self._load_step(step_id)
        template = step.template

        template.steps.remove(step)
        self.session.flush()

        remaining = sorted(template.steps, key=lambda s: s.step_order)
        self._apply_orders({s.id: i for i, s in enumerate(remaining, start=1)}, remaining)
        template.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "approval_step_deleted",
            extra={
                "template_id": str(template.id),
                "step_id": str(step_id),
                "remaining_steps": len(remaining),
            },
        )

    def reorder_steps(
        self,
        template_id: UUID,
        ordered_step_ids: Sequence[UUID],
    ) -> WorkflowTemplate:
        """Assign orders 1..N following ``ordered_step_ids``.

        Raises:
            StepOrderMismatchError: the list is not exactly the template's
                current step ids.
        """
        model = self._load_template(template_id)
        new_orders = compute_step_reordering(
            template_id, [s.id for s in model.steps], list(ordered_step_ids),
        )
        self._apply_orders(new_orders, list(model.steps))
        model.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "approval_steps_reordered",
            extra={"template_id": str(template_id), "step_count": len(new_orders)},
        )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def seed_default_templates(
        self,
        company_id: UUID,
        seeds: Iterable[Any],
    ) -> list[WorkflowTemplate]:
        """Install default templates for a company that has none.

        ``seeds`` are ``approval_config.TemplateSeed``-shaped objects.
        Idempotent: a company with any template is left alone and an empty
        list is returned.
        """
        existing = self.session.execute(
            select(func.count()).select_from(WorkflowTemplateModel).where(
                WorkflowTemplateModel.company_id == company_id,
            )
        ).scalar_one()
        if existing:
            logger.info(
                "approval_template_seed_skipped",
                extra={"company_id": str(company_id), "existing_templates": existing},
            )
            return []

        created: list[WorkflowTemplate] = []
        for seed in seeds:
            template = self.create_template(
                company_id,
                seed.activity_type,
                seed.name,
                description=seed.description,
                is_default=True,
            )
            for step in seed.steps:
                self.add_step(
                    template.template_id,
                    step.name,
                    approver_from_fields(
                        step.approver_kind,
                        role=step.approver_role,
                        person_id=step.approver_person_id,
                        step_name=step.name,
                    ),
                    is_required=step.is_required,
                    can_skip=step.can_skip,
                    auto_approve_after_days=step.auto_approve_after_days,
                    condition=step.condition,
                )
            created.append(self.get_template(template.template_id))

        logger.info(
            "approval_templates_seeded",
            extra={"company_id": str(company_id), "template_count": len(created)},
        )
        return created

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _load_template(self, template_id: UUID) -> WorkflowTemplateModel:
        model = self.session.get(WorkflowTemplateModel, template_id)
        if model is None:
            raise TemplateNotFoundError(str(template_id))
        return model

    def _load_step(self, step_id: UUID) -> WorkflowStepModel:
        step = self.session.get(WorkflowStepModel, step_id)
        if step is None:
            raise StepNotFoundError(str(step_id))
        return step

    def _switch_default(self, model: WorkflowTemplateModel) -> None:
        """Clear the scope's current default and make ``model`` the default."""
        now = self._clock.now()
        previous = self.session.execute(
            update(WorkflowTemplateModel)
            .where(
                WorkflowTemplateModel.company_id == model.company_id,
                WorkflowTemplateModel.activity_type == model.activity_type,
                WorkflowTemplateModel.is_default == True,  # noqa: E712
                WorkflowTemplateModel.id != model.id,
            )
            .values(is_default=False, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        model.is_default = True
        model.updated_at = now
        self.session.flush()

        logger.info(
            "approval_template_default_set",
            extra={
                "template_id": str(model.id),
                "company_id": str(model.company_id),
                "activity_type": model.activity_type,
                "cleared_defaults": previous.rowcount,
            },
        )

    def _apply_orders(
        self,
        new_orders: dict[UUID, int],
        steps: Sequence[WorkflowStepModel],
    ) -> None:
        """Write new step orders without tripping UNIQUE(template_id, step_order).

        Orders are first parked on negative values, then set.
        """
        changed = [s for s in steps if s.step_order != new_orders[s.id]]
        if not changed:
            return
        for step in changed:
            step.step_order = -new_orders[step.id]
        self.session.flush()
        for step in changed:
            step.step_order = new_orders[step.id]
        self.session.flush()
