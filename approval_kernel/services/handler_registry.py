"""
Handler registry -- activity type to completion handler lookup.

Contract:
    Domain modules register one ``ActivityApprovalHandler`` per activity
    type at process start.  The workflow service looks the handler up when
    a workflow starts (fail fast if missing) and again at the terminal
    transition to call exactly one of its three callbacks.

Architecture: approval_kernel/services.  No persistence, no discovery:
    registration is explicit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

from approval_kernel.exceptions import (
    HandlerAlreadyRegisteredError,
    HandlerNotRegisteredError,
)
from approval_kernel.logging_config import get_logger

logger = get_logger("services.handler_registry")


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler callback."""

    success: bool
    message: str | None = None

    @classmethod
    def ok(cls, message: str | None = None) -> HandlerResult:
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> HandlerResult:
        return cls(success=False, message=message)


@runtime_checkable
class ActivityApprovalHandler(Protocol):
    """Callbacks a domain module exposes for its activity type.

    Each is keyed by activity id and called at most once per request,
    after the terminal transition is committed.
    """

    def on_approved(self, activity_id: UUID, approved_by: UUID) -> HandlerResult:
        ...

    def on_rejected(self, activity_id: UUID, rejected_by: UUID, reason: str) -> HandlerResult:
        ...

    def on_cancelled(
        self,
        activity_id: UUID,
        cancelled_by: UUID,
        reason: str | None = None,
    ) -> HandlerResult:
        ...


class HandlerRegistry:
    """Registry mapping activity-type strings to completion handlers.

    Contract:
        - ``register()`` adds a handler; raises on duplicate.
        - ``get_handler()`` returns the handler or None.
        - ``require_handler()`` returns the handler or raises.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActivityApprovalHandler] = {}

    def register(self, activity_type: str, handler: ActivityApprovalHandler) -> None:
        """Register the handler for ``activity_type``.

        Raises:
            HandlerAlreadyRegisteredError: a handler is already registered.
            TypeError: ``handler`` does not implement the three callbacks.
        """
        if not activity_type or not activity_type.strip():
            raise ValueError("activity_type is required")
        if not isinstance(handler, ActivityApprovalHandler):
            raise TypeError(
                f"Handler for '{activity_type}' must implement "
                "on_approved, on_rejected and on_cancelled"
            )
        if activity_type in self._handlers:
            raise HandlerAlreadyRegisteredError(activity_type)
        self._handlers[activity_type] = handler
        logger.info(
            "approval_handler_registered",
            extra={"activity_type": activity_type, "handler": type(handler).__name__},
        )

    def get_handler(self, activity_type: str) -> ActivityApprovalHandler | None:
        return self._handlers.get(activity_type)

    def require_handler(self, activity_type: str) -> ActivityApprovalHandler:
        """Retrieve the handler for ``activity_type``.

        Raises:
            HandlerNotRegisteredError: nothing is registered for it.
        """
        try:
            return self._handlers[activity_type]
        except KeyError:
            raise HandlerNotRegisteredError(activity_type) from None

    def has_handler(self, activity_type: str) -> bool:
        return activity_type in self._handlers

    def list_activity_types(self) -> tuple[str, ...]:
        """Return all registered activity types, sorted."""
        return tuple(sorted(self._handlers.keys()))

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, activity_type: str) -> bool:
        return activity_type in self._handlers
