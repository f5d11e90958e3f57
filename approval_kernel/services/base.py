"""
BaseService -- abstract base for session-bound kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    services that operate inside a caller-owned transaction.  Subclasses
    receive a SQLAlchemy ``Session`` that they use via ``session.flush()``
    -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    ``TemplateService`` extends this class.  ``ApprovalWorkflowService``
    does not: it owns its transactions because handler dispatch must run
    after the terminal transition is committed.

Failure modes:
    - If a subclass calls ``session.commit()``, a caller composing several
      administrative edits in one transaction loses atomicity.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from approval_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for flush-only kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide request read projections -- those belong
          in ``approval_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        """
        Initialize the service.

        Preconditions:
            - ``session`` is a valid, open SQLAlchemy session.

        Args:
            session: SQLAlchemy session for database operations.
        """
        self.session = session
