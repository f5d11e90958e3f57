"""
Organisation directory (``approval_kernel.domain.org``).

Responsibility:
    The pluggable boundary through which the engine learns who manages whom,
    who holds which role, and which companies a person can act in.  The
    engine never stores org data; it asks the directory at resolution and
    authorisation time.

Architecture position:
    Kernel > Domain.  ``OrgDirectory`` is a Protocol; production wiring
    adapts the HR module, tests and embedders use ``InMemoryOrgDirectory``.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Protocol
from uuid import UUID


class OrgDirectory(Protocol):
    """Pluggable interface for organisational lookups, scoped per company."""

    def get_manager(self, company_id: UUID, person_id: UUID) -> UUID | None:
        """Return the person's manager, or None at the top of the hierarchy."""
        ...

    def get_role_holders(self, company_id: UUID, role: str) -> tuple[UUID, ...]:
        """Return everyone holding ``role`` in the company."""
        ...

    def get_roles(self, company_id: UUID, person_id: UUID) -> tuple[str, ...]:
        """Return all roles the person holds in the company."""
        ...

    def get_companies(self, person_id: UUID) -> tuple[UUID, ...]:
        """Return the companies the person has access to."""
        ...


class InMemoryOrgDirectory:
    """Dictionary-backed ``OrgDirectory``."""

    def __init__(self) -> None:
        self._managers: dict[tuple[UUID, UUID], UUID] = {}
        self._roles: dict[tuple[UUID, UUID], set[str]] = defaultdict(set)
        self._companies: dict[UUID, set[UUID]] = defaultdict(set)

    def add_member(self, company_id: UUID, person_id: UUID, *roles: str) -> None:
        """Give ``person_id`` access to the company, optionally with roles."""
        self._companies[person_id].add(company_id)
        self._roles[(company_id, person_id)].update(roles)

    def set_manager(self, company_id: UUID, person_id: UUID, manager_id: UUID | None) -> None:
        self.add_member(company_id, person_id)
        if manager_id is None:
            self._managers.pop((company_id, person_id), None)
        else:
            self.add_member(company_id, manager_id)
            self._managers[(company_id, person_id)] = manager_id

    def get_manager(self, company_id: UUID, person_id: UUID) -> UUID | None:
        return self._managers.get((company_id, person_id))

    def get_role_holders(self, company_id: UUID, role: str) -> tuple[UUID, ...]:
        holders = [
            person_id
            for (company, person_id), roles in self._roles.items()
            if company == company_id and role in roles
        ]
        return tuple(sorted(holders, key=str))

    def get_roles(self, company_id: UUID, person_id: UUID) -> tuple[str, ...]:
        return tuple(sorted(self._roles.get((company_id, person_id), ())))

    def get_companies(self, person_id: UUID) -> tuple[UUID, ...]:
        return tuple(sorted(self._companies.get(person_id, ()), key=str))
