"""
EscalationSweeper -- In-process auto-approval sweeper.

Contract:
    Polls for current pending steps whose auto-approval deadline has
    passed and pushes each through ``ApprovalWorkflowService.auto_approve_step``
    -- the same compare-and-set path a human approval takes.

Architecture: approval_kernel/services.  Reads the due list through the
    workflow service and holds no state of its own between ticks.

Invariants enforced:
    - All timestamps come from the workflow service's injected Clock.
    - A human action racing the sweeper resolves to one winner; the
      sweeper's loss is logged and skipped.
    - Graceful shutdown: the stop signal is honoured between items.
"""

from __future__ import annotations

import threading
from uuid import UUID

from approval_kernel.exceptions import (
    ApprovalWorkflowError,
    ConflictError,
    HandlerInvocationError,
    StateError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.workflow_service import ApprovalWorkflowService

logger = get_logger("services.escalation_sweeper")


class EscalationSweeper:
    """Periodic driver for time-based auto-approval.

    Contract:
        - ``tick()`` runs one sweep and returns the auto-approved step ids.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler; running several sweepers is safe
          (compare-and-set) but wasteful.
    """

    def __init__(
        self,
        workflow_service: ApprovalWorkflowService,
        interval_seconds: float = 3600,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._service = workflow_service
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> list[UUID]:
        """Auto-approve every step that is due (public for testing)."""
        due = self._service.find_steps_due_for_auto_approval()
        approved: list[UUID] = []

        for item in due:
            if self._stop_event.is_set():
                break

            log_extra = {
                "request_id": str(item.request_id),
                "step_id": str(item.step_id),
                "auto_approve_after_days": item.auto_approve_after_days,
                "deadline": item.deadline,
            }
            try:
                self._service.auto_approve_step(item.request_id, item.step_id)
                approved.append(item.step_id)
            except (ConflictError, StateError) as exc:
                logger.info(
                    "escalation_step_skipped",
                    extra={**log_extra, "reason": exc.code},
                )
            except HandlerInvocationError:
                # The approval itself is committed.
                approved.append(item.step_id)
                logger.error("escalation_handler_failed", extra=log_extra)
            except ApprovalWorkflowError:
                logger.exception("escalation_step_failed", extra=log_extra)

        if due:
            logger.info(
                "escalation_sweep_completed",
                extra={"due": len(due), "auto_approved": len(approved)},
            )
        return approved

    def start(self) -> None:
        """Start the sweeper in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-escalation-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("escalation_sweeper_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current sweep to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("escalation_sweeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop.  Exits when the stop event is set."""
        while not self._stop_event.is_set():
            with LogContext.bind(actor_id=str(self._service.system_actor_id)):
                try:
                    self.tick()
                except Exception:
                    logger.exception("escalation_tick_exception")
            self._stop_event.wait(timeout=self._interval)
